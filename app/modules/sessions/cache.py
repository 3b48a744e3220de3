from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Protocol

from app.core.clients.upstream import TokenGrant


@dataclass(frozen=True, slots=True)
class SessionHandle:
    name: str
    bound_token: str
    expires_at: float


@dataclass(frozen=True, slots=True)
class SessionRecord:
    token: TokenGrant | None = None
    session: SessionHandle | None = None

    def usable_token(self, now: float, margin_seconds: float) -> str | None:
        if self.token is None or self.token.expires_at - margin_seconds <= now:
            return None
        return self.token.value

    def usable_session(self, token: str, now: float) -> str | None:
        session = self.session
        if session is None or session.bound_token != token or session.expires_at <= now:
            return None
        return session.name


class SessionCache(Protocol):
    def get(self, account_id: str) -> SessionRecord | None: ...

    def put(self, account_id: str, record: SessionRecord) -> None: ...

    def discard(self, account_id: str) -> None: ...


class InMemorySessionCache:
    """Process-local LRU of session records; entries are replaced, never mutated."""

    def __init__(self, maxsize: int = 10_000) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self._maxsize = maxsize
        self._records: OrderedDict[str, SessionRecord] = OrderedDict()

    def __len__(self) -> int:
        return len(self._records)

    def get(self, account_id: str) -> SessionRecord | None:
        record = self._records.get(account_id)
        if record is not None:
            self._records.move_to_end(account_id)
        return record

    def put(self, account_id: str, record: SessionRecord) -> None:
        self._records[account_id] = record
        self._records.move_to_end(account_id)
        while len(self._records) > self._maxsize:
            self._records.popitem(last=False)

    def discard(self, account_id: str) -> None:
        self._records.pop(account_id, None)
