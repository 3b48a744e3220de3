from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.clients.http import close_http_client, init_http_client
from app.core.config.startup_log import log_startup_config
from app.core.handlers.exceptions import add_exception_handlers
from app.core.middleware import add_api_unhandled_error_middleware, add_request_id_middleware
from app.db.session import close_db, init_db
from app.modules.dashboard_auth import api as dashboard_auth_api
from app.modules.health import api as health_api
from app.modules.images import api as images_api
from app.modules.metrics import api as metrics_api
from app.modules.proxy import api as proxy_api
from app.modules.settings import api as settings_api


@asynccontextmanager
async def lifespan(_: FastAPI):
    log_startup_config()
    await init_db()
    await init_http_client()

    try:
        yield
    finally:
        try:
            await close_http_client()
        finally:
            await close_db()


def create_app() -> FastAPI:
    app = FastAPI(title="enterprise-gateway", version="0.1.0", lifespan=lifespan)

    add_api_unhandled_error_middleware(app)
    # outermost, so errors are logged with the request id
    add_request_id_middleware(app)
    add_exception_handlers(app)

    app.include_router(proxy_api.router)
    app.include_router(dashboard_auth_api.router)
    app.include_router(settings_api.router)
    app.include_router(images_api.router)
    app.include_router(metrics_api.router)
    app.include_router(health_api.router)

    return app


app = create_app()
