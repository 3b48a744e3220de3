from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiohttp
import jwt
from aiohttp_retry import ExponentialRetry

from app.core.clients.http import get_http_client
from app.core.config.settings import get_settings
from app.core.openai.chat_requests import ChatMessage, content_prompt_text
from app.core.utils.request_id import get_request_id

logger = logging.getLogger(__name__)

_XSSI_PREFIX = ")]}'"
_RATE_LIMIT_STATUSES = frozenset({429})
_REJECTED_STATUSES = frozenset({401, 403, 404})
_RATE_LIMIT_ERROR_STATUS = "RESOURCE_EXHAUSTED"
_ERROR_BODY_PREVIEW_CHARS = 500
_DEFAULT_IMAGE_NAME = "image.png"
_DEFAULT_IMAGE_MIME = "image/png"
_XSRF_RETRY = ExponentialRetry(
    attempts=2,
    start_timeout=0.2,
    statuses={500, 502, 503, 504},
    exceptions={aiohttp.ClientConnectionError},
)


class UpstreamError(Exception):
    """Base for every classified upstream failure."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UpstreamRateLimitedError(UpstreamError):
    pass


class UpstreamAccountRejectedError(UpstreamError):
    @property
    def reason(self) -> str:
        if self.status_code is not None:
            return f"{self.status_code}: {self.message}"
        return self.message


class UpstreamTransientError(UpstreamError):
    pass


class UpstreamMalformedError(UpstreamTransientError):
    pass


class CredentialInvalidError(UpstreamAccountRejectedError):
    pass


class SessionEstablishError(UpstreamTransientError):
    pass


class SessionRejectedError(UpstreamAccountRejectedError):
    pass


@dataclass(frozen=True, slots=True)
class AccountCredentials:
    account_id: str
    team_id: str
    secure_c_ses: str
    csesidx: str
    user_agent: str
    host_c_oses: str | None = None


@dataclass(frozen=True, slots=True)
class TokenGrant:
    value: str
    expires_at: float


@dataclass(frozen=True, slots=True)
class UpstreamImage:
    data: bytes
    mime_type: str = _DEFAULT_IMAGE_MIME
    file_name: str = _DEFAULT_IMAGE_NAME


@dataclass(slots=True)
class UpstreamResult:
    text: str
    images: list[UpstreamImage] = field(default_factory=list)


class UpstreamClient(Protocol):
    async def exchange_token(self, credentials: AccountCredentials) -> TokenGrant: ...

    async def create_session(self, credentials: AccountCredentials, token: str) -> str: ...

    async def chat(
        self,
        *,
        credentials: AccountCredentials,
        token: str,
        session: str,
        messages: Sequence[ChatMessage],
        model: str,
        proxy: str | None = None,
    ) -> UpstreamResult: ...


def classify_status(status: int, body: str, *, context: str) -> UpstreamError:
    message = f"{context} failed ({status}): {body[:_ERROR_BODY_PREVIEW_CHARS]}".rstrip(": ")
    if status in _RATE_LIMIT_STATUSES or _error_status(body) == _RATE_LIMIT_ERROR_STATUS:
        return UpstreamRateLimitedError(message, status_code=status)
    if status in _REJECTED_STATUSES:
        return UpstreamAccountRejectedError(message, status_code=status)
    return UpstreamTransientError(message, status_code=status)


def _error_status(body: str) -> str | None:
    try:
        payload = json.loads(strip_xssi_prefix(body))
    except (ValueError, TypeError):
        return None
    if isinstance(payload, list) and payload:
        payload = payload[0]
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("status"), str):
        return error["status"]
    return None


def strip_xssi_prefix(body: str) -> str:
    text = body.lstrip()
    if text.startswith(_XSSI_PREFIX):
        return text[len(_XSSI_PREFIX) :].lstrip()
    return text


def build_cookie_header(credentials: AccountCredentials) -> str:
    cookies = [f"__Secure-C_SES={credentials.secure_c_ses}"]
    if credentials.host_c_oses:
        cookies.append(f"__Host-C_OSES={credentials.host_c_oses}")
    return "; ".join(cookies)


def _b64_key(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(padded)


def mint_upstream_jwt(
    *,
    key_id: str,
    xsrf_token: str,
    csesidx: str,
    issuer: str,
    audience: str,
    ttl_seconds: int,
    now: int | None = None,
) -> str:
    issued_at = int(now if now is not None else time.time())
    claims = {
        "iss": issuer,
        "aud": audience,
        "sub": f"csesidx/{csesidx}",
        "iat": issued_at,
        "nbf": issued_at,
        "exp": issued_at + ttl_seconds,
    }
    return jwt.encode(claims, _b64_key(xsrf_token), algorithm="HS256", headers={"kid": key_id})


def build_prompt(messages: Sequence[ChatMessage]) -> str:
    """Render the conversation as one query; the upstream session has no message list."""
    rendered = [(message.role, content_prompt_text(message.content)) for message in messages]
    if len(rendered) == 1:
        return rendered[0][1]
    return "\n\n".join(f"{role}: {text}" for role, text in rendered)


def build_tools_spec(model: str) -> dict[str, Any]:
    spec: dict[str, Any] = {"webGroundingSpec": {}, "toolRegistry": "default_tool_registry"}
    if "image" in model.lower():
        spec["imageGenerationSpec"] = {}
    return spec


def parse_stream_assist(body: str) -> UpstreamResult:
    try:
        payload = json.loads(strip_xssi_prefix(body))
    except ValueError as exc:
        raise UpstreamMalformedError(f"Upstream returned invalid JSON: {exc}") from exc
    items = payload if isinstance(payload, list) else [payload]
    texts: list[str] = []
    images: list[UpstreamImage] = []
    for item in items:
        if not isinstance(item, dict):
            raise UpstreamMalformedError("Upstream stream item is not an object")
        answer = (item.get("streamAssistResponse") or {}).get("answer") or {}
        for reply in answer.get("replies") or []:
            content = ((reply or {}).get("groundedContent") or {}).get("content") or {}
            if content.get("thought"):
                continue
            text = content.get("text")
            if isinstance(text, str):
                texts.append(text)
            image = _parse_inline_image(content)
            if image is not None:
                images.append(image)
    if not texts and not images:
        raise UpstreamMalformedError("Upstream response carried no answer content")
    return UpstreamResult(text="".join(texts), images=images)


def _parse_inline_image(content: Mapping[str, Any]) -> UpstreamImage | None:
    inline = content.get("inlineData") or content.get("file")
    if not isinstance(inline, dict):
        return None
    data = inline.get("data")
    if not isinstance(data, str) or not data:
        return None
    try:
        decoded = base64.b64decode(data, validate=False)
    except (binascii.Error, ValueError):
        logger.warning("Skipping undecodable upstream image payload")
        return None
    return UpstreamImage(
        data=decoded,
        mime_type=inline.get("mimeType") or _DEFAULT_IMAGE_MIME,
        file_name=inline.get("name") or inline.get("fileName") or _DEFAULT_IMAGE_NAME,
    )


class BusinessUpstreamClient:
    def __init__(
        self,
        *,
        auth_base_url: str | None = None,
        api_base_url: str | None = None,
        token_ttl_seconds: int | None = None,
        request_timeout_seconds: float | None = None,
        connect_timeout_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._auth_base_url = (auth_base_url or settings.upstream_auth_base_url).rstrip("/")
        self._api_base_url = (api_base_url or settings.upstream_api_base_url).rstrip("/")
        self._token_ttl_seconds = token_ttl_seconds or settings.token_ttl_seconds
        self._timeout = aiohttp.ClientTimeout(
            total=request_timeout_seconds or settings.upstream_request_timeout_seconds,
            sock_connect=connect_timeout_seconds or settings.upstream_connect_timeout_seconds,
        )

    async def exchange_token(self, credentials: AccountCredentials) -> TokenGrant:
        url = f"{self._auth_base_url}/auth/getoxsrf"
        headers = self._browser_headers(credentials)
        headers["cookie"] = build_cookie_header(credentials)
        try:
            async with get_http_client().retry_client.get(
                url,
                params={"csesidx": credentials.csesidx},
                headers=headers,
                timeout=self._timeout,
                retry_options=_XSRF_RETRY,
            ) as resp:
                body = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamTransientError(f"Token exchange transport error: {exc!r}") from exc
        if status >= 400:
            error = classify_status(status, body, context="Token exchange")
            if isinstance(error, UpstreamAccountRejectedError):
                raise CredentialInvalidError(error.message, status_code=status)
            raise error
        try:
            payload = json.loads(strip_xssi_prefix(body))
            xsrf_token = payload["xsrfToken"]
            key_id = payload["keyId"]
        except (ValueError, KeyError, TypeError) as exc:
            raise UpstreamMalformedError(f"Token exchange returned an unexpected body: {exc!r}") from exc
        issued_at = int(time.time())
        try:
            token = mint_upstream_jwt(
                key_id=key_id,
                xsrf_token=xsrf_token,
                csesidx=credentials.csesidx,
                issuer=self._auth_base_url,
                audience=self._api_base_url.split("/v1", 1)[0],
                ttl_seconds=self._token_ttl_seconds,
                now=issued_at,
            )
        except (binascii.Error, ValueError) as exc:
            raise CredentialInvalidError(f"Token exchange returned an unusable signing key: {exc}") from exc
        return TokenGrant(value=token, expires_at=float(issued_at + self._token_ttl_seconds))

    async def create_session(self, credentials: AccountCredentials, token: str) -> str:
        body = {
            "configId": credentials.team_id,
            "additionalParams": {"token": "-"},
            "createSessionRequest": {"session": {"name": "", "displayName": ""}},
        }
        try:
            payload = await self._post_json("widgetCreateSession", credentials, token, body, proxy=None)
        except UpstreamAccountRejectedError as exc:
            raise SessionRejectedError(exc.message, status_code=exc.status_code) from exc
        except UpstreamRateLimitedError:
            raise
        except UpstreamError as exc:
            raise SessionEstablishError(exc.message, status_code=exc.status_code) from exc
        session = payload.get("session") if isinstance(payload, dict) else None
        name = session.get("name") if isinstance(session, dict) else None
        if not isinstance(name, str) or not name:
            raise SessionEstablishError("Session establishment returned no session name")
        return name

    async def chat(
        self,
        *,
        credentials: AccountCredentials,
        token: str,
        session: str,
        messages: Sequence[ChatMessage],
        model: str,
        proxy: str | None = None,
    ) -> UpstreamResult:
        body = {
            "configId": credentials.team_id,
            "additionalParams": {"token": "-"},
            "streamAssistRequest": {
                "session": session,
                "query": {"parts": [{"text": build_prompt(messages)}]},
                "filter": "",
                "fileIds": [],
                "answerGenerationMode": "NORMAL",
                "toolsSpec": build_tools_spec(model),
                "assistSkippingMode": "REQUEST_ASSIST",
            },
        }
        raw = await self._post("widgetStreamAssist", credentials, token, body, proxy=proxy)
        return parse_stream_assist(raw)

    async def _post_json(
        self,
        method: str,
        credentials: AccountCredentials,
        token: str,
        body: Mapping[str, Any],
        *,
        proxy: str | None,
    ) -> Any:
        raw = await self._post(method, credentials, token, body, proxy=proxy)
        try:
            return json.loads(strip_xssi_prefix(raw))
        except ValueError as exc:
            raise UpstreamMalformedError(f"{method} returned invalid JSON: {exc}") from exc

    async def _post(
        self,
        method: str,
        credentials: AccountCredentials,
        token: str,
        body: Mapping[str, Any],
        *,
        proxy: str | None,
    ) -> str:
        url = f"{self._api_base_url}:{method}"
        headers = self._browser_headers(credentials)
        headers["authorization"] = f"Bearer {token}"
        headers["content-type"] = "application/json"
        request_id = get_request_id()
        if request_id:
            headers["x-request-id"] = request_id
        try:
            async with get_http_client().session.post(
                url,
                json=body,
                headers=headers,
                proxy=proxy or None,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise UpstreamTransientError(f"{method} transport error: {exc!r}") from exc
        if status >= 400:
            raise classify_status(status, text, context=method)
        return text

    def _browser_headers(self, credentials: AccountCredentials) -> dict[str, str]:
        return {
            "user-agent": credentials.user_agent,
            "origin": self._auth_base_url,
            "referer": f"{self._auth_base_url}/",
            "accept": "*/*",
        }
