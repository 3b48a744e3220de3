from __future__ import annotations

from app.modules.shared.schemas import DashboardModel


class UploadTestResponse(DashboardModel):
    success: bool
    src: str
    url: str
    filename: str
    size: int
