from __future__ import annotations

import time

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse, Response, StreamingResponse

from app.core.config.settings import get_settings
from app.core.errors import openai_error
from app.core.metrics import get_metrics
from app.core.metrics.metrics import ChatRequestObservation, ChatRequestOutcome
from app.core.openai.chat_requests import ChatCompletionsRequest
from app.core.openai.chat_responses import build_chat_completion, dump_chat_completion, stream_chat_chunks
from app.dependencies import ProxyContext, get_proxy_context, require_authenticated
from app.modules.proxy.service import ChatExhaustedError, ChatRateLimitedError

router = APIRouter(prefix="/v1", tags=["proxy"], dependencies=[Depends(require_authenticated)])

_STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

# Requested model names are client input; only the default keeps its own label.
_CUSTOM_MODEL_LABEL = "custom"


def _model_label(model: str | None) -> str:
    default_model = get_settings().default_model
    if model is None or model == default_model:
        return default_model
    return _CUSTOM_MODEL_LABEL


def _observe(
    outcome: ChatRequestOutcome,
    *,
    model: str | None,
    stream: bool,
    started_at: float,
    attempts: int,
    account_id: str | None = None,
) -> None:
    get_metrics().observe_chat_request(
        ChatRequestObservation(
            outcome=outcome,
            model=_model_label(model),
            stream=stream,
            latency_ms=int((time.monotonic() - started_at) * 1000),
            attempts=attempts,
            account_id=account_id,
        )
    )


@router.post(
    "/chat/completions",
    responses={
        200: {
            "content": {
                "text/event-stream": {
                    "schema": {"type": "string"},
                }
            }
        }
    },
)
async def chat_completions(
    payload: ChatCompletionsRequest = Body(...),
    context: ProxyContext = Depends(get_proxy_context),
) -> Response:
    started_at = time.monotonic()
    stream = payload.is_stream
    if not payload.messages:
        _observe("invalid_request", model=payload.model, stream=stream, started_at=started_at, attempts=0)
        return JSONResponse(
            status_code=400,
            content=openai_error("invalid_request_error", "No messages provided", error_type="invalid_request_error"),
        )

    try:
        outcome = await context.service.complete(payload)
    except ChatRateLimitedError as exc:
        _observe(
            "rate_limited",
            model=payload.model,
            stream=stream,
            started_at=started_at,
            attempts=exc.attempts,
            account_id=exc.account_id,
        )
        return JSONResponse(
            status_code=429,
            content=openai_error("rate_limit_exceeded", exc.message, error_type="rate_limit_error"),
        )
    except ChatExhaustedError as exc:
        _observe("exhausted", model=payload.model, stream=stream, started_at=started_at, attempts=exc.attempts)
        return JSONResponse(status_code=500, content=openai_error("server_error", exc.message))

    _observe(
        "success",
        model=outcome.model,
        stream=stream,
        started_at=started_at,
        attempts=outcome.attempts,
        account_id=outcome.account_id,
    )
    if stream:
        return StreamingResponse(
            stream_chat_chunks(outcome.text, model=outcome.model, images=outcome.artifacts),
            media_type="text/event-stream",
            headers=_STREAM_HEADERS,
        )
    completion = build_chat_completion(
        outcome.text,
        model=outcome.model,
        prompt_text=payload.prompt_text(),
        images=outcome.artifacts,
    )
    return JSONResponse(content=dump_chat_completion(completion))
