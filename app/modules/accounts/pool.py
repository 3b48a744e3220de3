from __future__ import annotations

import logging
from collections.abc import Callable
from typing import AsyncContextManager

from app.core.balancer import PoolContentionError, round_robin_pick
from app.core.config.settings import get_settings
from app.core.metrics import get_metrics
from app.core.utils.request_id import get_request_id
from app.db.models import Account
from app.modules.accounts.repository import AccountsRepository

logger = logging.getLogger(__name__)

AccountsRepoFactory = Callable[[], AsyncContextManager[AccountsRepository]]


class CredentialPool:
    """Round-robin selection over available accounts.

    The cursor lives in the database next to a version counter. A selection snapshots both plus the
    available set and commits the advanced cursor only if the version is unchanged, so concurrent selections
    (in this process or another worker) never advance from the same snapshot.
    """

    def __init__(self, repo_factory: AccountsRepoFactory, *, max_select_attempts: int | None = None) -> None:
        self._repo_factory = repo_factory
        self._max_select_attempts = max_select_attempts or get_settings().pool_select_max_attempts

    async def list_available(self) -> list[Account]:
        async with self._repo_factory() as repo:
            return await repo.list_available()

    async def select_next(self) -> Account:
        async with self._repo_factory() as repo:
            for attempt in range(1, self._max_select_attempts + 1):
                snapshot = await repo.pool_snapshot()
                pick = round_robin_pick(snapshot.accounts, snapshot.cursor)
                if await repo.advance_cursor(expected_version=snapshot.version, cursor=pick.next_cursor):
                    logger.debug(
                        "Selected account request_id=%s account_id=%s index=%s available=%s attempt=%s",
                        get_request_id(),
                        pick.item.id,
                        pick.index,
                        len(snapshot.accounts),
                        attempt,
                    )
                    return pick.item
                get_metrics().observe_pool_conflict()
        logger.warning(
            "Account selection gave up after conflicts request_id=%s attempts=%s",
            get_request_id(),
            self._max_select_attempts,
        )
        raise PoolContentionError(self._max_select_attempts)

    async def mark_unavailable(self, account_id: str, reason: str | None) -> bool:
        async with self._repo_factory() as repo:
            changed = await repo.mark_unavailable(account_id, reason)
        if changed:
            logger.warning("Account marked unavailable account_id=%s reason=%s", account_id, reason)
            get_metrics().observe_account_disabled()
        return changed

    async def set_available(self, account_id: str, available: bool) -> bool:
        async with self._repo_factory() as repo:
            changed = await repo.set_available(account_id, available)
        if changed:
            logger.info("Account availability updated account_id=%s available=%s", account_id, available)
        return changed
