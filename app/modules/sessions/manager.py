from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace

from cryptography.fernet import InvalidToken

from app.core.clients.upstream import AccountCredentials, CredentialInvalidError, UpstreamClient
from app.core.config.settings import get_settings
from app.core.crypto import TokenEncryptor
from app.db.models import Account
from app.modules.accounts.mappers import credentials_from_account
from app.modules.sessions.cache import InMemorySessionCache, SessionCache, SessionHandle, SessionRecord

logger = logging.getLogger(__name__)


class SessionLifecycleManager:
    """Lazily obtains and caches each account's upstream token and session.

    Refreshes are not serialized: two requests may refresh the same account at once and the later write wins.
    Both results are valid, so the only cost is a redundant exchange.
    """

    def __init__(
        self,
        upstream: UpstreamClient,
        *,
        cache: SessionCache | None = None,
        encryptor: TokenEncryptor | None = None,
        token_refresh_margin_seconds: float | None = None,
        session_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._upstream = upstream
        self._cache = cache if cache is not None else InMemorySessionCache(settings.session_cache_maxsize)
        self._encryptor = encryptor
        self._token_refresh_margin_seconds = (
            token_refresh_margin_seconds
            if token_refresh_margin_seconds is not None
            else settings.token_refresh_margin_seconds
        )
        self._session_ttl_seconds = session_ttl_seconds or settings.session_ttl_seconds
        self._clock = clock

    @property
    def cache(self) -> SessionCache:
        return self._cache

    def credentials_for(self, account: Account) -> AccountCredentials:
        if self._encryptor is None:
            self._encryptor = TokenEncryptor()
        try:
            return credentials_from_account(account, self._encryptor)
        except InvalidToken as exc:
            raise CredentialInvalidError("Stored account credentials cannot be decrypted") from exc

    async def ensure_token(self, account: Account) -> str:
        record = self._cache.get(account.id)
        if record is not None:
            token = record.usable_token(self._clock(), self._token_refresh_margin_seconds)
            if token is not None:
                return token

        grant = await self._upstream.exchange_token(self.credentials_for(account))
        # A new token orphans any session bound to the previous one.
        self._cache.put(account.id, SessionRecord(token=grant))
        logger.debug("Refreshed upstream token account_id=%s expires_at=%s", account.id, grant.expires_at)
        return grant.value

    async def ensure_session(self, account: Account, token: str) -> str:
        record = self._cache.get(account.id)
        if record is not None:
            session = record.usable_session(token, self._clock())
            if session is not None:
                return session

        name = await self._upstream.create_session(self.credentials_for(account), token)
        handle = SessionHandle(name=name, bound_token=token, expires_at=self._clock() + self._session_ttl_seconds)
        current = self._cache.get(account.id) or SessionRecord()
        self._cache.put(account.id, replace(current, session=handle))
        logger.debug("Established upstream session account_id=%s", account.id)
        return name

    def invalidate(self, account_id: str) -> None:
        self._cache.discard(account_id)
