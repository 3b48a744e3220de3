from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import pytest

from app.core.balancer import PoolContentionError, PoolEmptyError
from app.core.metrics import get_metrics
from app.db.session import SessionLocal
from app.modules.accounts.pool import CredentialPool
from app.modules.accounts.repository import AccountsRepository

pytestmark = pytest.mark.integration


def _accounts_disabled_total() -> float:
    for line in get_metrics().render().decode().splitlines():
        if line.startswith("gateway_accounts_disabled_total "):
            return float(line.split()[1])
    return 0.0


@asynccontextmanager
async def _repo_context() -> AsyncIterator[AccountsRepository]:
    async with SessionLocal() as session:
        yield AccountsRepository(session)


@pytest.mark.asyncio
async def test_consecutive_selections_visit_each_account_once(db_setup, seed_accounts):
    await seed_accounts("acc-a", "acc-b", "acc-c")
    pool = CredentialPool(_repo_context)

    picked = [(await pool.select_next()).id for _ in range(3)]
    assert sorted(picked) == ["acc-a", "acc-b", "acc-c"]

    next_round = [(await pool.select_next()).id for _ in range(3)]
    assert next_round == picked


@pytest.mark.asyncio
async def test_mark_unavailable_excludes_account_until_reenabled(db_setup, seed_accounts):
    await seed_accounts("acc-a", "acc-b")
    pool = CredentialPool(_repo_context)

    assert await pool.mark_unavailable("acc-a", "credentials rejected") is True
    picked = {(await pool.select_next()).id for _ in range(4)}
    assert picked == {"acc-b"}

    async with _repo_context() as repo:
        account = await repo.get_account("acc-a")
    assert account is not None
    assert account.available is False
    assert account.unavailable_reason == "credentials rejected"

    assert await pool.set_available("acc-a", True) is True
    picked = {(await pool.select_next()).id for _ in range(4)}
    assert picked == {"acc-a", "acc-b"}

    async with _repo_context() as repo:
        account = await repo.get_account("acc-a")
    assert account is not None
    assert account.unavailable_reason is None


@pytest.mark.asyncio
async def test_repeated_availability_updates_are_no_ops(db_setup, seed_accounts):
    await seed_accounts("acc-a", "acc-b")
    pool = CredentialPool(_repo_context)

    assert await pool.mark_unavailable("acc-a", "first rejection") is True
    async with _repo_context() as repo:
        version = (await repo.pool_snapshot()).version
    disabled_before = _accounts_disabled_total()

    assert await pool.mark_unavailable("acc-a", "second rejection") is False
    assert await pool.set_available("acc-b", True) is False

    async with _repo_context() as repo:
        assert (await repo.pool_snapshot()).version == version
        account = await repo.get_account("acc-a")
    assert account is not None
    assert account.unavailable_reason == "first rejection"
    assert _accounts_disabled_total() == disabled_before


@pytest.mark.asyncio
async def test_mark_unavailable_unknown_account_returns_false(db_setup, seed_accounts):
    await seed_accounts("acc-a")
    pool = CredentialPool(_repo_context)

    assert await pool.mark_unavailable("missing", "gone") is False


@pytest.mark.asyncio
async def test_select_next_raises_pool_empty_without_available_accounts(db_setup, seed_accounts):
    pool = CredentialPool(_repo_context)
    with pytest.raises(PoolEmptyError):
        await pool.select_next()

    await seed_accounts("acc-a")
    await pool.mark_unavailable("acc-a", "rejected")
    with pytest.raises(PoolEmptyError):
        await pool.select_next()


@pytest.mark.asyncio
async def test_concurrent_selections_spread_evenly(db_setup, seed_accounts):
    await seed_accounts("acc-a", "acc-b", "acc-c")
    pool = CredentialPool(_repo_context, max_select_attempts=50)

    accounts = await asyncio.gather(*(pool.select_next() for _ in range(6)))

    counts = Counter(account.id for account in accounts)
    assert counts == {"acc-a": 2, "acc-b": 2, "acc-c": 2}


@pytest.mark.asyncio
async def test_select_next_gives_up_after_bounded_conflicts(db_setup, seed_accounts):
    await seed_accounts("acc-a", "acc-b")

    class _AlwaysConflicting(AccountsRepository):
        async def advance_cursor(self, *, expected_version: int, cursor: int) -> bool:
            return False

    @asynccontextmanager
    async def _conflicting_context() -> AsyncIterator[AccountsRepository]:
        async with SessionLocal() as session:
            yield _AlwaysConflicting(session)

    pool = CredentialPool(_conflicting_context, max_select_attempts=3)
    with pytest.raises(PoolContentionError) as exc_info:
        await pool.select_next()
    assert exc_info.value.attempts == 3


@pytest.mark.asyncio
async def test_availability_change_invalidates_stale_snapshot(db_setup, seed_accounts):
    await seed_accounts("acc-a", "acc-b")
    async with _repo_context() as repo:
        snapshot = await repo.pool_snapshot()
        await repo.mark_unavailable("acc-b", "rejected")
        assert await repo.advance_cursor(expected_version=snapshot.version, cursor=1) is False

        fresh = await repo.pool_snapshot()
        assert [account.id for account in fresh.accounts] == ["acc-a"]
        assert await repo.advance_cursor(expected_version=fresh.version, cursor=0) is True


@pytest.mark.asyncio
async def test_upsert_updates_credentials_without_touching_availability(db_setup, seed_accounts):
    await seed_accounts("acc-a")
    pool = CredentialPool(_repo_context)
    await pool.mark_unavailable("acc-a", "rejected")

    await seed_accounts("acc-a")

    async with _repo_context() as repo:
        accounts = await repo.list_accounts()
    assert [account.id for account in accounts] == ["acc-a"]
    assert accounts[0].available is False
