from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from time import time

from cryptography.fernet import InvalidToken

from app.core.auth import verify_admin_secret
from app.core.config.settings import get_settings
from app.core.crypto import TokenEncryptor

ADMIN_SESSION_COOKIE = "session"
_LOGIN_MAX_FAILURES = 8
_LOGIN_WINDOW_SECONDS = 60


@dataclass(slots=True)
class AdminSessionState:
    expires_at: int


class AdminSessionStore:
    """Stateless admin sessions: the cookie is a Fernet token carrying only its expiry."""

    def __init__(self, ttl_seconds: int | None = None) -> None:
        self._encryptor: TokenEncryptor | None = None
        self._ttl_seconds = ttl_seconds

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds or get_settings().admin_session_ttl_seconds

    def _get_encryptor(self) -> TokenEncryptor:
        if self._encryptor is None:
            self._encryptor = TokenEncryptor()
        return self._encryptor

    def create(self) -> str:
        expires_at = int(time()) + self.ttl_seconds
        payload = json.dumps({"exp": expires_at}, separators=(",", ":"))
        return self._get_encryptor().encrypt(payload).decode("ascii")

    def get(self, session_id: str | None) -> AdminSessionState | None:
        token = (session_id or "").strip()
        if not token:
            return None
        try:
            raw = self._get_encryptor().decrypt(token.encode("ascii"))
            data = json.loads(raw)
        except (InvalidToken, UnicodeError, ValueError):
            return None
        exp = data.get("exp") if isinstance(data, dict) else None
        if not isinstance(exp, int) or exp < int(time()):
            return None
        return AdminSessionState(expires_at=exp)

    def is_valid(self, session_id: str | None) -> bool:
        return self.get(session_id) is not None


class LoginRateLimiter:
    def __init__(self, *, max_failures: int, window_seconds: int) -> None:
        if max_failures <= 0:
            raise ValueError("max_failures must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._max_failures = max_failures
        self._window_seconds = window_seconds
        self._failures: dict[str, deque[int]] = {}

    def check(self, key: str) -> int | None:
        """Seconds until the next attempt is allowed, or None when not limited."""
        now = int(time())
        failures = self._failures.get(key)
        if failures is None:
            return None
        self._prune(failures, now)
        if not failures:
            self._failures.pop(key, None)
            return None
        if len(failures) >= self._max_failures:
            return max(1, failures[0] + self._window_seconds - now)
        return None

    def record_failure(self, key: str) -> None:
        now = int(time())
        failures = self._failures.setdefault(key, deque())
        failures.append(now)
        self._prune(failures, now)

    def reset(self, key: str) -> None:
        self._failures.pop(key, None)

    def _prune(self, failures: deque[int], now: int) -> None:
        cutoff = now - self._window_seconds
        while failures and failures[0] <= cutoff:
            failures.popleft()


class InvalidPasswordError(ValueError):
    pass


class LoginRateLimitedError(Exception):
    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Too many failed login attempts; retry in {retry_after}s")
        self.retry_after = retry_after


class AdminAuthService:
    def __init__(self, session_store: AdminSessionStore, rate_limiter: LoginRateLimiter) -> None:
        self._session_store = session_store
        self._rate_limiter = rate_limiter

    def login(self, password: str, *, client_key: str) -> str:
        retry_after = self._rate_limiter.check(client_key)
        if retry_after is not None:
            raise LoginRateLimitedError(retry_after)
        if not verify_admin_secret(password):
            self._rate_limiter.record_failure(client_key)
            raise InvalidPasswordError("Invalid password")
        self._rate_limiter.reset(client_key)
        return self._session_store.create()

    def is_authenticated(self, session_id: str | None) -> bool:
        return self._session_store.is_valid(session_id)


@lru_cache(maxsize=1)
def get_admin_session_store() -> AdminSessionStore:
    return AdminSessionStore()


@lru_cache(maxsize=1)
def get_login_rate_limiter() -> LoginRateLimiter:
    return LoginRateLimiter(max_failures=_LOGIN_MAX_FAILURES, window_seconds=_LOGIN_WINDOW_SECONDS)
