from __future__ import annotations

from fastapi import APIRouter, Body, Depends, Request
from fastapi.responses import JSONResponse

from app.core.errors import dashboard_error
from app.dependencies import AdminAuthContext, get_admin_auth_context
from app.modules.dashboard_auth.schemas import AdminLoginRequest, AdminSessionResponse
from app.modules.dashboard_auth.service import (
    ADMIN_SESSION_COOKIE,
    InvalidPasswordError,
    LoginRateLimitedError,
)

router = APIRouter(prefix="/api/auth", tags=["dashboard"])


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/login", response_model=AdminSessionResponse)
async def login(
    request: Request,
    payload: AdminLoginRequest = Body(...),
    context: AdminAuthContext = Depends(get_admin_auth_context),
) -> JSONResponse:
    try:
        session_id = context.service.login(payload.password, client_key=_client_key(request))
    except LoginRateLimitedError as exc:
        return JSONResponse(
            status_code=429,
            content=dashboard_error("login_rate_limited", str(exc)),
            headers={"Retry-After": str(exc.retry_after)},
        )
    except InvalidPasswordError as exc:
        return JSONResponse(status_code=401, content=dashboard_error("invalid_password", str(exc)))

    response = JSONResponse(content=AdminSessionResponse(authenticated=True).model_dump(by_alias=True))
    response.set_cookie(
        key=ADMIN_SESSION_COOKIE,
        value=session_id,
        max_age=context.session_store.ttl_seconds,
        httponly=True,
        secure=request.url.scheme == "https",
        samesite="lax",
        path="/",
    )
    return response


@router.post("/logout", response_model=AdminSessionResponse)
async def logout() -> JSONResponse:
    response = JSONResponse(content=AdminSessionResponse(authenticated=False).model_dump(by_alias=True))
    response.delete_cookie(key=ADMIN_SESSION_COOKIE, path="/")
    return response


@router.get("/session", response_model=AdminSessionResponse)
async def get_session_state(
    request: Request,
    context: AdminAuthContext = Depends(get_admin_auth_context),
) -> AdminSessionResponse:
    session_id = request.cookies.get(ADMIN_SESSION_COOKIE)
    return AdminSessionResponse(authenticated=context.service.is_authenticated(session_id))
