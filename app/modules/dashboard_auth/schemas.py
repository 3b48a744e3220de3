from __future__ import annotations

from app.modules.shared.schemas import DashboardModel


class AdminLoginRequest(DashboardModel):
    password: str


class AdminSessionResponse(DashboardModel):
    authenticated: bool
