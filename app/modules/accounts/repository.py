from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import Row, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import Insert

from app.db.models import Account, PoolState

POOL_STATE_ID = 1


@dataclass(frozen=True, slots=True)
class PoolSnapshot:
    cursor: int
    version: int
    accounts: list[Account]


class AccountsRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_account(self, account_id: str) -> Account | None:
        return await self._session.get(Account, account_id)

    async def list_accounts(self) -> list[Account]:
        result = await self._session.execute(
            select(Account).order_by(Account.created_at, Account.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_available(self) -> list[Account]:
        result = await self._session.execute(
            select(Account)
            .where(Account.available.is_(True))
            .order_by(Account.created_at, Account.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def upsert(self, account: Account) -> Account:
        existing = await self._session.get(Account, account.id)
        if existing is None:
            self._session.add(account)
            await self._session.flush()
            await self._bump_version()
            await self._session.commit()
            await self._session.refresh(account)
            return account

        existing.team_id = account.team_id
        existing.secure_c_ses_encrypted = account.secure_c_ses_encrypted
        existing.host_c_oses_encrypted = account.host_c_oses_encrypted
        existing.csesidx = account.csesidx
        existing.user_agent = account.user_agent
        await self._session.commit()
        await self._session.refresh(existing)
        return existing

    async def mark_unavailable(self, account_id: str, reason: str | None) -> bool:
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account_id, Account.available.is_(True))
            .values(available=False, unavailable_reason=reason)
            .returning(Account.id)
        )
        changed = result.scalar_one_or_none() is not None
        if changed:
            await self._bump_version()
        await self._session.commit()
        return changed

    async def set_available(self, account_id: str, available: bool) -> bool:
        values: dict[str, object] = {"available": available}
        if available:
            values["unavailable_reason"] = None
        result = await self._session.execute(
            update(Account)
            .where(Account.id == account_id, Account.available != available)
            .values(**values)
            .returning(Account.id)
        )
        changed = result.scalar_one_or_none() is not None
        if changed:
            await self._bump_version()
        await self._session.commit()
        return changed

    async def pool_snapshot(self) -> PoolSnapshot:
        row = await self._read_pool_state()
        if row is None:
            await self._session.commit()
            await self._ensure_pool_state()
            await self._session.commit()
            row = await self._read_pool_state()
            if row is None:
                raise RuntimeError("Pool state row could not be created")
        accounts = await self.list_available()
        # End the read transaction so the conditional write below starts from the latest database state.
        await self._session.commit()
        return PoolSnapshot(cursor=row.cursor, version=row.version, accounts=accounts)

    async def advance_cursor(self, *, expected_version: int, cursor: int) -> bool:
        result = await self._session.execute(
            update(PoolState)
            .where(PoolState.id == POOL_STATE_ID, PoolState.version == expected_version)
            .values(cursor=cursor, version=expected_version + 1)
            .returning(PoolState.id)
        )
        advanced = result.scalar_one_or_none() is not None
        await self._session.commit()
        return advanced

    async def _read_pool_state(self) -> Row[tuple[int, int]] | None:
        result = await self._session.execute(
            select(PoolState.cursor, PoolState.version).where(PoolState.id == POOL_STATE_ID)
        )
        return result.one_or_none()

    async def _bump_version(self) -> None:
        await self._ensure_pool_state()
        await self._session.execute(
            update(PoolState).where(PoolState.id == POOL_STATE_ID).values(version=PoolState.version + 1)
        )

    async def _ensure_pool_state(self) -> None:
        await self._session.execute(self._build_pool_state_insert())

    def _build_pool_state_insert(self) -> Insert:
        dialect = self._session.get_bind().dialect.name
        if dialect == "postgresql":
            insert_fn = pg_insert
        elif dialect == "sqlite":
            insert_fn = sqlite_insert
        else:
            raise RuntimeError(f"Pool state insert unsupported for dialect={dialect!r}")
        statement = insert_fn(PoolState).values(id=POOL_STATE_ID, cursor=0, version=0)
        return statement.on_conflict_do_nothing(index_elements=[PoolState.id])
