from __future__ import annotations

from app.modules.shared.schemas import DashboardModel


class GatewayConfigResponse(DashboardModel):
    proxy: str | None = None
    image_base_url: str | None = None
    upload_endpoint: str | None = None
    upload_api_token: str | None = None
    upload_configured: bool


class GatewayConfigUpdateRequest(DashboardModel):
    proxy: str | None = None
    image_base_url: str | None = None
    upload_endpoint: str | None = None
    upload_api_token: str | None = None
