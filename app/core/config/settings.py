from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DOCKER_DATA_DIR = Path("/var/lib/enterprise-gateway")

DEFAULT_ADMIN_PASSWORD = "admin"
DEFAULT_MODEL = "gemini-enterprise"


def _in_container() -> bool:
    return Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()


def _default_home_dir() -> Path:
    if _in_container():
        return DOCKER_DATA_DIR
    return Path.home() / ".enterprise-gateway"


DEFAULT_HOME_DIR = _default_home_dir()
DEFAULT_DB_PATH = DEFAULT_HOME_DIR / "store.db"
DEFAULT_ENCRYPTION_KEY_FILE = DEFAULT_HOME_DIR / "encryption.key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="GATEWAY_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: str = f"sqlite+aiosqlite:///{DEFAULT_DB_PATH}"
    database_pool_size: int = Field(default=15, gt=0)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_timeout_seconds: float = Field(default=30.0, gt=0)
    encryption_key_file: Path = DEFAULT_ENCRYPTION_KEY_FILE
    # Shared secret: dashboard login password and bearer API key at the same time.
    admin_password: str = DEFAULT_ADMIN_PASSWORD
    admin_session_ttl_seconds: int = Field(default=7 * 24 * 60 * 60, gt=0)
    upstream_auth_base_url: str = "https://business.gemini.google"
    upstream_api_base_url: str = "https://biz-discoveryengine.googleapis.com/v1alpha/locations/global"
    upstream_connect_timeout_seconds: float = Field(default=30.0, gt=0)
    upstream_request_timeout_seconds: float = Field(default=180.0, gt=0)
    # Upstream JWTs are short lived; refresh a little early so a token never expires mid-attempt.
    token_ttl_seconds: int = Field(default=300, gt=0)
    token_refresh_margin_seconds: int = Field(default=30, ge=0)
    session_ttl_seconds: int = Field(default=60 * 60, gt=0)
    session_cache_maxsize: int = Field(default=10_000, gt=0)
    chat_max_attempts: int = Field(default=3, gt=0)
    attempt_timeout_seconds: float = Field(default=240.0, gt=0)
    pool_select_max_attempts: int = Field(default=16, gt=0)
    default_model: str = DEFAULT_MODEL
    upload_timeout_seconds: float = Field(default=60.0, gt=0)
    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_connector_limit_per_host: int = Field(default=50, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=30.0, gt=0)
    access_log_enabled: bool = False
    startup_log_config: bool = False
    log_level: str = "INFO"

    @field_validator("database_url")
    @classmethod
    def _expand_database_url(cls, value: str) -> str:
        for prefix in ("sqlite+aiosqlite:///", "sqlite:///"):
            if value.startswith(prefix):
                path = value[len(prefix) :]
                if path.startswith("~"):
                    return f"{prefix}{Path(path).expanduser()}"
        return value

    @field_validator("encryption_key_file", mode="before")
    @classmethod
    def _expand_encryption_key_file(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("encryption_key_file must be a path")

    @field_validator("upstream_auth_base_url", "upstream_api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.strip().upper() or "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
