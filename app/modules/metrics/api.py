from __future__ import annotations

import asyncio
import contextlib
import time

from fastapi import APIRouter
from starlette.responses import Response

from app.core.metrics import get_metrics
from app.db.session import SessionLocal, _safe_close, _safe_rollback
from app.modules.accounts.repository import AccountsRepository

router = APIRouter(tags=["metrics"])

_ACCOUNT_REFRESH_INTERVAL_SECONDS = 30.0
_account_refresh_lock = asyncio.Lock()
_last_account_refresh_monotonic: float = 0.0


async def _maybe_refresh_account_gauges() -> None:
    global _last_account_refresh_monotonic
    now = time.monotonic()
    if now - _last_account_refresh_monotonic < _ACCOUNT_REFRESH_INTERVAL_SECONDS:
        return
    async with _account_refresh_lock:
        now = time.monotonic()
        if now - _last_account_refresh_monotonic < _ACCOUNT_REFRESH_INTERVAL_SECONDS:
            return

        session = SessionLocal()
        try:
            accounts = await AccountsRepository(session).list_accounts()
            available = sum(1 for account in accounts if account.available)
            get_metrics().refresh_account_gauges(available=available, unavailable=len(accounts) - available)
            _last_account_refresh_monotonic = now
        finally:
            if session.in_transaction():
                await _safe_rollback(session)
            with contextlib.suppress(Exception):
                await _safe_close(session)


@router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    metrics = get_metrics()
    await _maybe_refresh_account_gauges()
    return Response(
        content=metrics.render(),
        media_type=metrics.content_type,
        headers={"Cache-Control": "no-cache"},
    )
