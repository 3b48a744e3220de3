from __future__ import annotations

import logging
import math
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from app.core.utils.sse import SSE_DONE, format_sse_data

logger = logging.getLogger(__name__)

IMAGES_APPENDIX_HEADER = "\n\n[Generated Images]\n"


class ChatImageArtifact(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    filename: str
    mime_type: str
    url: str | None = None

    @property
    def reference(self) -> str:
        return self.url or f"/api/images/{self.id}"


class ChatChunkDelta(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str | None = None
    content: str | None = None


class ChatChunkChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    index: int
    delta: ChatChunkDelta
    finish_reason: str | None = None


class ChatCompletionChunk(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    object: str = "chat.completion.chunk"
    created: int
    model: str
    choices: list[ChatChunkChoice]
    images: list[ChatImageArtifact] | None = None


class ChatCompletionMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: str
    content: str | None = None


class ChatCompletionChoice(BaseModel):
    model_config = ConfigDict(extra="forbid")

    index: int
    message: ChatCompletionMessage
    finish_reason: str | None = None


class ChatCompletionUsage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatCompletion(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    object: str = "chat.completion"
    created: int
    model: str
    choices: list[ChatCompletionChoice]
    usage: ChatCompletionUsage
    images: list[ChatImageArtifact]


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def new_completion_id() -> str:
    return f"chatcmpl-{uuid4()}"


def split_stream_chunks(text: str) -> list[str]:
    """Split on single spaces, keeping each separator on the fragment before it.

    ``"".join(split_stream_chunks(text)) == text`` for every input.
    """
    if not text:
        return []
    words = text.split(" ")
    last = len(words) - 1
    chunks = [word if index == last else f"{word} " for index, word in enumerate(words)]
    return [chunk for chunk in chunks if chunk]


def render_images_appendix(images: Sequence[ChatImageArtifact]) -> str:
    if not images:
        return ""
    lines = [f"- {image.filename} ({image.mime_type}): {image.reference}\n" for image in images]
    return IMAGES_APPENDIX_HEADER + "".join(lines)


def build_chat_completion(
    text: str,
    *,
    model: str,
    prompt_text: str,
    images: Sequence[ChatImageArtifact] = (),
    completion_id: str | None = None,
    created: int | None = None,
) -> ChatCompletion:
    prompt_tokens = estimate_tokens(prompt_text)
    completion_tokens = estimate_tokens(text)
    return ChatCompletion(
        id=completion_id or new_completion_id(),
        created=created if created is not None else int(time.time()),
        model=model,
        choices=[
            ChatCompletionChoice(
                index=0,
                message=ChatCompletionMessage(role="assistant", content=text + render_images_appendix(images)),
                finish_reason="stop",
            )
        ],
        usage=ChatCompletionUsage(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        ),
        images=list(images),
    )


def dump_chat_completion(completion: ChatCompletion) -> dict[str, Any]:
    return completion.model_dump(mode="json", exclude_none=True)


def _dump_chunk(chunk: ChatCompletionChunk) -> str:
    payload = chunk.model_dump(mode="json", exclude_none=True)
    # finish_reason is part of every chunk, null until the terminal one
    for choice in payload["choices"]:
        choice.setdefault("finish_reason", None)
    return format_sse_data(payload)


def iter_chat_chunks(
    text: str,
    *,
    model: str,
    images: Sequence[ChatImageArtifact] = (),
    completion_id: str | None = None,
    created: int | None = None,
) -> list[str]:
    completion_id = completion_id or new_completion_id()
    created = created if created is not None else int(time.time())
    frames = [
        _dump_chunk(
            ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=model,
                choices=[ChatChunkChoice(index=0, delta=ChatChunkDelta(content=chunk))],
            )
        )
        for chunk in split_stream_chunks(text)
    ]
    frames.append(
        _dump_chunk(
            ChatCompletionChunk(
                id=completion_id,
                created=created,
                model=model,
                choices=[ChatChunkChoice(index=0, delta=ChatChunkDelta(), finish_reason="stop")],
                images=list(images) or None,
            )
        )
    )
    frames.append(SSE_DONE)
    return frames


async def stream_chat_chunks(
    text: str,
    *,
    model: str,
    images: Sequence[ChatImageArtifact] = (),
    completion_id: str | None = None,
    created: int | None = None,
) -> AsyncIterator[str]:
    frames = iter_chat_chunks(text, model=model, images=images, completion_id=completion_id, created=created)
    sent = 0
    try:
        for frame in frames:
            sent += 1
            yield frame
    finally:
        if sent < len(frames):
            logger.info("Chat stream closed early sent_frames=%s total_frames=%s", sent, len(frames))
