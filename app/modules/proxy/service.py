from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

import anyio

from app.core.balancer import PoolContentionError, PoolEmptyError
from app.core.clients.upstream import (
    UpstreamAccountRejectedError,
    UpstreamClient,
    UpstreamRateLimitedError,
    UpstreamResult,
    UpstreamTransientError,
)
from app.core.config.settings import get_settings
from app.core.metrics import get_metrics
from app.core.openai.chat_requests import ChatCompletionsRequest, ChatMessage
from app.core.openai.chat_responses import ChatImageArtifact
from app.core.utils.request_id import get_request_id
from app.db.models import Account
from app.modules.accounts.pool import CredentialPool
from app.modules.images.resolver import ImageArtifactResolver, UploadTarget
from app.modules.sessions.manager import SessionLifecycleManager
from app.modules.settings.service import GatewayConfigData

logger = logging.getLogger(__name__)

ConfigLoader = Callable[[], Awaitable[GatewayConfigData]]


class ChatRateLimitedError(Exception):
    def __init__(self, message: str, *, account_id: str | None = None, attempts: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.account_id = account_id
        self.attempts = attempts


class ChatExhaustedError(Exception):
    def __init__(self, last_error: BaseException, *, attempts: int) -> None:
        self.last_error = last_error
        self.attempts = attempts
        self.message = f"All accounts failed: {_error_message(last_error)}"
        super().__init__(self.message)


@dataclass(frozen=True, slots=True)
class ChatOutcome:
    text: str
    artifacts: list[ChatImageArtifact]
    account_id: str
    model: str
    attempts: int


@dataclass(frozen=True, slots=True)
class _AttemptSuccess:
    result: UpstreamResult
    account: Account
    attempts: int


def _error_message(error: BaseException) -> str:
    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message
    return str(error) or type(error).__name__


class ChatService:
    """Serves one chat completion by walking the credential pool.

    Rate limiting ends the request immediately. A rejected account is disabled (the account that produced the
    rejection, not whichever the pool would pick next) and the next account is tried. Transient failures,
    attempt deadlines and lost cursor races only consume an attempt.
    """

    def __init__(
        self,
        *,
        pool: CredentialPool,
        sessions: SessionLifecycleManager,
        upstream: UpstreamClient,
        resolver: ImageArtifactResolver,
        config_loader: ConfigLoader,
        max_attempts: int | None = None,
        attempt_timeout_seconds: float | None = None,
    ) -> None:
        settings = get_settings()
        self._pool = pool
        self._sessions = sessions
        self._upstream = upstream
        self._resolver = resolver
        self._config_loader = config_loader
        self._max_attempts = max_attempts or settings.chat_max_attempts
        self._attempt_timeout_seconds = attempt_timeout_seconds or settings.attempt_timeout_seconds

    async def complete(self, payload: ChatCompletionsRequest) -> ChatOutcome:
        model = payload.resolved_model(get_settings().default_model)
        config = await self._config_loader()
        success = await self._chat_with_retry(payload.messages, model=model, proxy=config.proxy)
        target = UploadTarget.from_values(config.upload_endpoint, config.upload_api_token, config.image_base_url)
        artifacts = await self._resolver.resolve_all(success.result.images, target)
        return ChatOutcome(
            text=success.result.text,
            artifacts=artifacts,
            account_id=success.account.id,
            model=model,
            attempts=success.attempts,
        )

    async def _chat_with_retry(
        self,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        proxy: str | None,
    ) -> _AttemptSuccess:
        metrics = get_metrics()
        last_error: BaseException | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                account = await self._pool.select_next()
            except PoolEmptyError as exc:
                logger.warning(
                    "No available accounts request_id=%s attempt=%s last_error=%s",
                    get_request_id(),
                    attempt,
                    _error_message(last_error) if last_error else None,
                )
                raise ChatExhaustedError(last_error or exc, attempts=attempt - 1) from exc
            except PoolContentionError as exc:
                metrics.observe_chat_attempt("pool_contention")
                last_error = exc
                continue

            try:
                with anyio.fail_after(self._attempt_timeout_seconds):
                    result = await self._attempt(account, messages, model=model, proxy=proxy)
            except UpstreamRateLimitedError as exc:
                metrics.observe_chat_attempt("rate_limited")
                logger.warning(
                    "Upstream rate limited request_id=%s account_id=%s attempt=%s status=%s",
                    get_request_id(),
                    account.id,
                    attempt,
                    exc.status_code,
                )
                raise ChatRateLimitedError(exc.message, account_id=account.id, attempts=attempt) from exc
            except UpstreamAccountRejectedError as exc:
                metrics.observe_chat_attempt("account_rejected")
                await self._pool.mark_unavailable(account.id, exc.reason)
                self._sessions.invalidate(account.id)
                last_error = exc
                continue
            except UpstreamTransientError as exc:
                metrics.observe_chat_attempt("transient")
                logger.info(
                    "Upstream attempt failed request_id=%s account_id=%s attempt=%s status=%s error=%s",
                    get_request_id(),
                    account.id,
                    attempt,
                    exc.status_code,
                    exc.message,
                )
                last_error = exc
                continue
            except TimeoutError:
                metrics.observe_chat_attempt("timeout")
                logger.info(
                    "Upstream attempt timed out request_id=%s account_id=%s attempt=%s timeout_seconds=%s",
                    get_request_id(),
                    account.id,
                    attempt,
                    self._attempt_timeout_seconds,
                )
                last_error = UpstreamTransientError(
                    f"Attempt timed out after {self._attempt_timeout_seconds}s"
                )
                continue

            metrics.observe_chat_attempt("success")
            return _AttemptSuccess(result=result, account=account, attempts=attempt)

        exhausted = ChatExhaustedError(last_error or PoolEmptyError(), attempts=self._max_attempts)
        logger.warning(
            "All attempts failed request_id=%s attempts=%s last_error=%s",
            get_request_id(),
            self._max_attempts,
            _error_message(exhausted.last_error),
        )
        raise exhausted

    async def _attempt(
        self,
        account: Account,
        messages: Sequence[ChatMessage],
        *,
        model: str,
        proxy: str | None,
    ) -> UpstreamResult:
        token = await self._sessions.ensure_token(account)
        session = await self._sessions.ensure_session(account, token)
        return await self._upstream.chat(
            credentials=self._sessions.credentials_for(account),
            token=token,
            session=session,
            messages=messages,
            model=model,
            proxy=proxy,
        )
