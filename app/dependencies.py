from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import extract_api_key, verify_admin_secret
from app.core.clients.upstream import BusinessUpstreamClient, UpstreamClient
from app.core.config.settings import get_settings
from app.db.session import SessionLocal, _safe_close, _safe_rollback, get_session
from app.modules.accounts.pool import CredentialPool
from app.modules.accounts.repository import AccountsRepository
from app.modules.dashboard_auth.service import (
    ADMIN_SESSION_COOKIE,
    AdminAuthService,
    AdminSessionStore,
    get_admin_session_store,
    get_login_rate_limiter,
)
from app.modules.images.repository import ImageCacheRepository
from app.modules.images.resolver import ImageArtifactResolver
from app.modules.proxy.service import ChatService
from app.modules.sessions.cache import InMemorySessionCache
from app.modules.sessions.manager import SessionLifecycleManager
from app.modules.settings.repository import SettingsRepository
from app.modules.settings.service import GatewayConfigData, SettingsService


@dataclass(slots=True)
class AdminAuthContext:
    service: AdminAuthService
    session_store: AdminSessionStore


@dataclass(slots=True)
class ProxyContext:
    service: ChatService


@dataclass(slots=True)
class SettingsContext:
    session: AsyncSession
    repository: SettingsRepository
    service: SettingsService


@dataclass(slots=True)
class ImagesContext:
    session: AsyncSession
    settings: SettingsService


def get_admin_auth_context() -> AdminAuthContext:
    session_store = get_admin_session_store()
    service = AdminAuthService(session_store, get_login_rate_limiter())
    return AdminAuthContext(service=service, session_store=session_store)


def require_authenticated(request: Request) -> None:
    """Accept the admin secret as an API key or a valid admin session cookie."""
    if verify_admin_secret(extract_api_key(request.headers.get("authorization"))):
        return
    if get_admin_session_store().is_valid(request.cookies.get(ADMIN_SESSION_COOKIE)):
        return
    raise HTTPException(status_code=401, detail="Unauthorized")


@asynccontextmanager
async def _session_scope() -> AsyncIterator[AsyncSession]:
    session = SessionLocal()
    try:
        yield session
    except BaseException:
        await _safe_rollback(session)
        raise
    finally:
        if session.in_transaction():
            await _safe_rollback(session)
        await _safe_close(session)


@asynccontextmanager
async def _accounts_repo_context() -> AsyncIterator[AccountsRepository]:
    async with _session_scope() as session:
        yield AccountsRepository(session)


@asynccontextmanager
async def _images_repo_context() -> AsyncIterator[ImageCacheRepository]:
    async with _session_scope() as session:
        yield ImageCacheRepository(session)


async def _load_gateway_config() -> GatewayConfigData:
    async with _session_scope() as session:
        return await SettingsService(SettingsRepository(session)).get_config()


def build_chat_service(upstream: UpstreamClient | None = None) -> ChatService:
    settings = get_settings()
    upstream = upstream or BusinessUpstreamClient()
    return ChatService(
        pool=CredentialPool(_accounts_repo_context),
        sessions=SessionLifecycleManager(upstream, cache=InMemorySessionCache(settings.session_cache_maxsize)),
        upstream=upstream,
        resolver=ImageArtifactResolver(_images_repo_context),
        config_loader=_load_gateway_config,
    )


def get_proxy_context(request: Request) -> ProxyContext:
    service = getattr(request.app.state, "proxy_service", None)
    if service is None:
        service = build_chat_service()
        request.app.state.proxy_service = service
    return ProxyContext(service=service)


def get_settings_context(
    session: AsyncSession = Depends(get_session),
) -> SettingsContext:
    repository = SettingsRepository(session)
    service = SettingsService(repository)
    return SettingsContext(session=session, repository=repository, service=service)


def get_images_context(
    session: AsyncSession = Depends(get_session),
) -> ImagesContext:
    return ImagesContext(
        session=session,
        settings=SettingsService(SettingsRepository(session)),
    )
