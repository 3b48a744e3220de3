from __future__ import annotations

import os
import tempfile
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

TEST_DB_DIR = Path(tempfile.mkdtemp(prefix="enterprise-gateway-tests-"))
TEST_DB_PATH = TEST_DB_DIR / "store.db"
TEST_ADMIN_PASSWORD = "test-admin-secret"

os.environ["GATEWAY_DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["GATEWAY_ADMIN_PASSWORD"] = TEST_ADMIN_PASSWORD
os.environ["GATEWAY_UPSTREAM_AUTH_BASE_URL"] = "https://auth.example.invalid"
os.environ["GATEWAY_UPSTREAM_API_BASE_URL"] = "https://api.example.invalid/v1alpha/locations/global"

from app.core.clients.upstream import (  # noqa: E402
    AccountCredentials,
    TokenGrant,
    UpstreamImage,
    UpstreamResult,
)
from app.core.crypto import TokenEncryptor  # noqa: E402
from app.core.openai.chat_requests import ChatMessage  # noqa: E402
from app.db.models import Base  # noqa: E402
from app.db.session import SessionLocal, engine  # noqa: E402
from app.dependencies import build_chat_service  # noqa: E402
from app.main import create_app  # noqa: E402
from app.modules.accounts.mappers import account_from_import  # noqa: E402
from app.modules.accounts.repository import AccountsRepository  # noqa: E402
from app.modules.accounts.schemas import AccountImportEntry  # noqa: E402
from app.modules.dashboard_auth.service import get_login_rate_limiter  # noqa: E402


@dataclass(slots=True)
class ChatCall:
    account_id: str
    token: str
    session: str
    model: str
    proxy: str | None
    messages: list[ChatMessage]


@dataclass
class FakeUpstreamClient:
    """Scripted upstream: per-account queues of results or exceptions, then ``default_result``."""

    default_result: UpstreamResult = field(default_factory=lambda: UpstreamResult(text="hello world"))
    chat_script: dict[str, list[UpstreamResult | Exception]] = field(default_factory=dict)
    token_errors: dict[str, Exception] = field(default_factory=dict)
    token_ttl_seconds: float = 300.0
    token_calls: list[str] = field(default_factory=list)
    session_calls: list[str] = field(default_factory=list)
    chat_calls: list[ChatCall] = field(default_factory=list)

    def script(self, account_id: str, *outcomes: UpstreamResult | Exception) -> None:
        self.chat_script.setdefault(account_id, []).extend(outcomes)

    async def exchange_token(self, credentials: AccountCredentials) -> TokenGrant:
        self.token_calls.append(credentials.account_id)
        error = self.token_errors.get(credentials.account_id)
        if error is not None:
            raise error
        value = f"token-{credentials.account_id}-{len(self.token_calls)}"
        return TokenGrant(value=value, expires_at=time.time() + self.token_ttl_seconds)

    async def create_session(self, credentials: AccountCredentials, token: str) -> str:
        self.session_calls.append(credentials.account_id)
        return f"sessions/{credentials.account_id}-{len(self.session_calls)}"

    async def chat(
        self,
        *,
        credentials: AccountCredentials,
        token: str,
        session: str,
        messages: Sequence[ChatMessage],
        model: str,
        proxy: str | None = None,
    ) -> UpstreamResult:
        self.chat_calls.append(
            ChatCall(
                account_id=credentials.account_id,
                token=token,
                session=session,
                model=model,
                proxy=proxy,
                messages=list(messages),
            )
        )
        queue = self.chat_script.get(credentials.account_id)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return self.default_result


def make_import_entry(account_id: str, **overrides) -> AccountImportEntry:
    values = {
        "id": account_id,
        "team_id": f"team-{account_id}",
        "secure_c_ses": f"secure-{account_id}",
        "host_c_oses": f"host-{account_id}",
        "csesidx": f"idx-{account_id}",
    }
    values.update(overrides)
    return AccountImportEntry(**values)


def make_image(name: str = "cat.png", mime_type: str = "image/png", data: bytes = b"\x89PNG-bytes") -> UpstreamImage:
    return UpstreamImage(data=data, mime_type=mime_type, file_name=name)


async def _reset_database() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


@pytest_asyncio.fixture
async def db_setup():
    await _reset_database()
    return True


@pytest_asyncio.fixture
async def app_instance():
    app = create_app()
    await _reset_database()
    get_login_rate_limiter.cache_clear()
    return app


@pytest_asyncio.fixture(scope="session", autouse=True)
async def dispose_engine():
    yield
    await engine.dispose()


@pytest_asyncio.fixture
async def async_client(app_instance):
    async with app_instance.router.lifespan_context(app_instance):
        transport = ASGITransport(app=app_instance)
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_ADMIN_PASSWORD}"}


@pytest.fixture
def fake_upstream(app_instance) -> FakeUpstreamClient:
    upstream = FakeUpstreamClient()
    app_instance.state.proxy_service = build_chat_service(upstream)
    return upstream


@pytest.fixture
def seed_accounts():
    async def _seed(*account_ids: str, available: bool = True) -> list[str]:
        encryptor = TokenEncryptor()
        async with SessionLocal() as session:
            repo = AccountsRepository(session)
            for account_id in account_ids:
                await repo.upsert(account_from_import(make_import_entry(account_id, available=available), encryptor))
        return list(account_ids)

    return _seed


@pytest.fixture(autouse=True)
def temp_key_file(monkeypatch):
    key_path = TEST_DB_DIR / f"encryption-{uuid4().hex}.key"
    monkeypatch.setenv("GATEWAY_ENCRYPTION_KEY_FILE", str(key_path))
    from app.core.config.settings import get_settings

    get_settings.cache_clear()
    return key_path
