from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

import aiohttp

from app.core.clients.http import get_http_client
from app.core.config.settings import get_settings

logger = logging.getLogger(__name__)

_UPLOAD_QUERY = {
    "uploadChannel": "telegram",
    "serverCompress": "true",
    "autoRetry": "true",
    "uploadNameType": "default",
    "returnFormat": "default",
}


class UploadError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class UploadResult:
    src: str


def derive_base_url(upload_endpoint: str) -> str:
    """Drop the last path segment: ``https://h/api/upload`` -> ``https://h/api``."""
    parts = urlsplit(upload_endpoint.strip())
    path = parts.path.rstrip("/")
    base_path = path.rsplit("/", 1)[0] if "/" in path else ""
    return urlunsplit((parts.scheme, parts.netloc, base_path, "", "")).rstrip("/")


def compose_image_url(src: str, *, upload_endpoint: str, image_base_url: str | None = None) -> str:
    if src.startswith(("http://", "https://")):
        return src
    base = (image_base_url or "").strip() or derive_base_url(upload_endpoint)
    return f"{base.rstrip('/')}/{src.lstrip('/')}"


async def upload_image(
    endpoint: str,
    api_token: str,
    data: bytes,
    filename: str,
    mime_type: str,
    *,
    timeout_seconds: float | None = None,
) -> UploadResult:
    form = aiohttp.FormData()
    form.add_field("file", data, filename=filename, content_type=mime_type)
    params = {"authCode": api_token, **_UPLOAD_QUERY}
    timeout = aiohttp.ClientTimeout(total=timeout_seconds or get_settings().upload_timeout_seconds)
    try:
        async with get_http_client().session.post(endpoint, params=params, data=form, timeout=timeout) as resp:
            body = await resp.text()
            status = resp.status
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        raise UploadError(f"Upload transport error: {exc!r}") from exc
    if status >= 400:
        raise UploadError(f"Upload failed ({status}): {body[:500]}", status_code=status)
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise UploadError("Upload service returned invalid JSON", status_code=status) from exc
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        src = payload[0].get("src")
        if isinstance(src, str) and src:
            logger.debug("Uploaded image filename=%s bytes=%s src=%s", filename, len(data), src)
            return UploadResult(src=src)
    raise UploadError("Invalid response format from upload service", status_code=status)
