from __future__ import annotations

import argparse
import copy
import json
import os
from pathlib import Path

import anyio
import uvicorn
import uvicorn.config
from pydantic import TypeAdapter, ValidationError

from app.core.config.settings import Settings, get_settings
from app.modules.accounts.schemas import AccountImportEntry


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's default LOGGING_CONFIG does not attach handlers to the `app.*` logger namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["app"] = {
        "handlers": ["default"],
        "level": settings.log_level,
        "propagate": False,
    }
    return config


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the enterprise-gateway API server.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "7860")))
    parser.add_argument("--ssl-certfile", default=os.getenv("SSL_CERTFILE"))
    parser.add_argument("--ssl-keyfile", default=os.getenv("SSL_KEYFILE"))

    subparsers = parser.add_subparsers(dest="command")

    import_accounts = subparsers.add_parser(
        "import-accounts",
        help="Insert or update pooled accounts from a JSON array of account records.",
    )
    import_accounts.add_argument("path", type=Path, help="JSON file with the account records.")

    return parser.parse_args()


def _load_import_entries(path: Path) -> list[AccountImportEntry]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise SystemExit(f"Cannot read {path}: {exc}") from exc
    if isinstance(raw, dict):
        raw = [raw]
    try:
        return TypeAdapter(list[AccountImportEntry]).validate_python(raw)
    except ValidationError as exc:
        raise SystemExit(f"Invalid account records in {path}:\n{exc}") from exc


def main() -> None:
    args = _parse_args()

    if args.command is None:
        settings = get_settings()
        if bool(args.ssl_certfile) ^ bool(args.ssl_keyfile):
            raise SystemExit("Both --ssl-certfile and --ssl-keyfile must be provided together.")

        uvicorn.run(
            "app.main:app",
            host=args.host,
            port=args.port,
            ssl_certfile=args.ssl_certfile,
            ssl_keyfile=args.ssl_keyfile,
            log_config=_build_log_config(settings),
            # Controlled via `GATEWAY_ACCESS_LOG_ENABLED`.
            access_log=settings.access_log_enabled,
        )
        return

    from app.core.crypto import TokenEncryptor
    from app.db.session import SessionLocal, close_db, init_db
    from app.modules.accounts.mappers import account_from_import
    from app.modules.accounts.repository import AccountsRepository

    if args.command == "import-accounts":
        entries = _load_import_entries(args.path)

        async def _run() -> None:
            encryptor = TokenEncryptor()
            try:
                await init_db()
                async with SessionLocal() as session:
                    repo = AccountsRepository(session)
                    for entry in entries:
                        await repo.upsert(account_from_import(entry, encryptor))
                        await repo.set_available(entry.id, entry.available)
                print(f"imported_accounts={len(entries)}")
            finally:
                await close_db()

        anyio.run(_run)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
