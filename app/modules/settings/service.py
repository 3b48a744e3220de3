from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlsplit

from app.db.models import GatewayConfig
from app.modules.settings.repository import SettingsRepository

_PROXY_SCHEMES = frozenset({"http", "https"})
_URL_SCHEMES = frozenset({"http", "https"})
_URL_FIELDS = ("image_base_url", "upload_endpoint")


@dataclass(frozen=True, slots=True)
class GatewayConfigData:
    proxy: str | None
    image_base_url: str | None
    upload_endpoint: str | None
    upload_api_token: str | None

    @property
    def upload_configured(self) -> bool:
        return bool(self.upload_endpoint and self.upload_api_token)


def config_from_row(row: GatewayConfig) -> GatewayConfigData:
    return GatewayConfigData(
        proxy=row.proxy or None,
        image_base_url=row.image_base_url or None,
        upload_endpoint=row.upload_endpoint or None,
        upload_api_token=row.upload_api_token or None,
    )


def _normalize(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_scheme(field: str, value: str | None, schemes: frozenset[str]) -> None:
    if value is None:
        return
    parts = urlsplit(value)
    if parts.scheme.lower() not in schemes or not parts.netloc:
        allowed = ", ".join(sorted(schemes))
        raise ValueError(f"{field} must be an absolute URL ({allowed})")


class SettingsService:
    def __init__(self, repository: SettingsRepository) -> None:
        self._repository = repository

    async def get_config(self) -> GatewayConfigData:
        return config_from_row(await self._repository.get_or_create())

    async def update_config(self, changes: Mapping[str, str | None]) -> GatewayConfigData:
        """Apply only the provided fields; blank strings clear a value."""
        normalized = {field: _normalize(value) for field, value in changes.items()}
        _require_scheme("proxy", normalized.get("proxy"), _PROXY_SCHEMES)
        for field in _URL_FIELDS:
            _require_scheme(field, normalized.get(field), _URL_SCHEMES)
        row = await self._repository.update(**normalized)
        return config_from_row(row)
