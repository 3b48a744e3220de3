from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exception_handlers import (
    http_exception_handler,
    request_validation_exception_handler,
)
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.errors import dashboard_error, openai_error

# status -> (error type, error code) for OpenAI-style envelopes
_OPENAI_HTTP_ERRORS: dict[int, tuple[str, str]] = {
    401: ("authentication_error", "invalid_api_key"),
    403: ("permission_error", "insufficient_permissions"),
    404: ("invalid_request_error", "not_found"),
    429: ("rate_limit_error", "rate_limit_exceeded"),
}


def _openai_error_kind(status_code: int) -> tuple[str, str]:
    known = _OPENAI_HTTP_ERRORS.get(status_code)
    if known is not None:
        return known
    if status_code >= 500:
        return "server_error", "server_error"
    return "invalid_request_error", "invalid_request_error"


def _validation_param(exc: RequestValidationError) -> str | None:
    errors = exc.errors()
    if not errors:
        return None
    loc = errors[0].get("loc", [])
    if not isinstance(loc, (list, tuple)):
        return None
    param = ".".join(str(part) for part in loc if part != "body")
    return param or None


def add_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> Response:
        path = request.url.path
        if path.startswith("/api/"):
            return JSONResponse(
                status_code=422,
                content=dashboard_error("validation_error", "Invalid request payload"),
            )
        if path.startswith("/v1/"):
            error = openai_error("invalid_request_error", "Invalid request payload", error_type="invalid_request_error")
            param = _validation_param(exc)
            if param:
                error["error"]["param"] = param
            return JSONResponse(status_code=400, content=error)
        return await request_validation_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(
        request: Request,
        exc: StarletteHTTPException,
    ) -> Response:
        path = request.url.path
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if path.startswith("/api/"):
            return JSONResponse(
                status_code=exc.status_code,
                content=dashboard_error(f"http_{exc.status_code}", detail),
                headers=exc.headers,
            )
        if path.startswith("/v1/"):
            error_type, code = _openai_error_kind(exc.status_code)
            return JSONResponse(
                status_code=exc.status_code,
                content=openai_error(code, detail, error_type=error_type),
                headers=exc.headers,
            )
        return await http_exception_handler(request, exc)
