from __future__ import annotations

import json
import logging

import pytest

from app.core.openai.chat_requests import ChatCompletionsRequest
from app.core.openai.chat_responses import (
    ChatImageArtifact,
    build_chat_completion,
    dump_chat_completion,
    estimate_tokens,
    iter_chat_chunks,
    render_images_appendix,
    split_stream_chunks,
    stream_chat_chunks,
)
from app.core.utils.sse import SSE_DONE, extract_sse_data

pytestmark = pytest.mark.unit


def _payloads(frames: list[str]) -> list[dict]:
    return [json.loads(extract_sse_data(frame)) for frame in frames if frame != SSE_DONE]


def test_split_stream_chunks_keeps_separators():
    assert split_stream_chunks("hello world") == ["hello ", "world"]


@pytest.mark.parametrize("text", ["", "one", "a  b", " leading", "trailing ", "x y z  "])
def test_split_stream_chunks_reconstructs_text(text):
    chunks = split_stream_chunks(text)
    assert "".join(chunks) == text
    assert all(chunks)


def test_iter_chat_chunks_hello_world():
    frames = iter_chat_chunks("hello world", model="gemini-enterprise", completion_id="chatcmpl-1", created=1)

    assert frames[-1] == SSE_DONE
    assert all(frame.startswith("data: ") and frame.endswith("\n\n") for frame in frames)
    payloads = _payloads(frames)
    assert [payload["choices"][0]["delta"].get("content") for payload in payloads] == ["hello ", "world", None]
    assert all(payload["object"] == "chat.completion.chunk" for payload in payloads)
    assert all(payload["id"] == "chatcmpl-1" for payload in payloads)
    assert [payload["choices"][0]["finish_reason"] for payload in payloads] == [None, None, "stop"]
    assert payloads[-1]["choices"][0]["delta"] == {}
    assert "images" not in payloads[-1]


def test_iter_chat_chunks_terminal_chunk_carries_images():
    artifact = ChatImageArtifact(id="img_1", filename="cat.png", mime_type="image/png")
    frames = iter_chat_chunks("done", model="m", images=[artifact])

    terminal = _payloads(frames)[-1]
    assert terminal["images"] == [{"id": "img_1", "filename": "cat.png", "mime_type": "image/png"}]


def test_iter_chat_chunks_empty_text_sends_only_terminal_chunk():
    frames = iter_chat_chunks("", model="m")
    assert len(frames) == 2
    assert frames[-1] == SSE_DONE


def test_estimate_tokens_rounds_up():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcdefghijkl") == 3
    assert estimate_tokens("abcdefghijklm") == 4


def test_build_chat_completion_usage_and_shape():
    completion = build_chat_completion("abcdefghijkl", model="gemini-enterprise", prompt_text="hi there")
    payload = dump_chat_completion(completion)

    assert payload["object"] == "chat.completion"
    assert payload["id"].startswith("chatcmpl-")
    assert payload["choices"][0]["message"] == {"role": "assistant", "content": "abcdefghijkl"}
    assert payload["choices"][0]["finish_reason"] == "stop"
    assert payload["usage"] == {"prompt_tokens": 2, "completion_tokens": 3, "total_tokens": 5}
    assert payload["images"] == []


def test_build_chat_completion_appends_image_references():
    images = [
        ChatImageArtifact(id="/f/1", filename="cat.png", mime_type="image/png", url="https://x/f/1"),
        ChatImageArtifact(id="img_abc", filename="dog.jpg", mime_type="image/jpeg"),
    ]
    completion = build_chat_completion("abcdefghijkl", model="m", prompt_text="", images=images)
    content = completion.choices[0].message.content

    assert content == (
        "abcdefghijkl"
        "\n\n[Generated Images]\n"
        "- cat.png (image/png): https://x/f/1\n"
        "- dog.jpg (image/jpeg): /api/images/img_abc\n"
    )
    # the appendix is not counted as completion text
    assert completion.usage.completion_tokens == 3


def test_render_images_appendix_empty():
    assert render_images_appendix([]) == ""


def test_prompt_text_serializes_structured_content():
    request = ChatCompletionsRequest.model_validate(
        {
            "messages": [
                {"role": "system", "content": "be brief"},
                {"role": "user", "content": [{"type": "text", "text": "hé"}]},
            ]
        }
    )
    assert request.prompt_text() == 'be brief[{"type":"text","text":"hé"}]'
    assert request.resolved_model("gemini-enterprise") == "gemini-enterprise"
    assert request.is_stream is False


@pytest.mark.asyncio
async def test_stream_chat_chunks_stops_when_client_disconnects(caplog):
    stream = stream_chat_chunks("one two three", model="gemini-enterprise", completion_id="chatcmpl-1", created=1)

    with caplog.at_level(logging.INFO, logger="app.core.openai.chat_responses"):
        first = await stream.__anext__()
        await stream.aclose()

    assert _payloads([first])[0]["choices"][0]["delta"]["content"] == "one "
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()
    assert "Chat stream closed early sent_frames=1 total_frames=5" in caplog.text


@pytest.mark.asyncio
async def test_stream_chat_chunks_full_read_logs_nothing(caplog):
    with caplog.at_level(logging.INFO, logger="app.core.openai.chat_responses"):
        frames = [frame async for frame in stream_chat_chunks("one two", model="gemini-enterprise")]

    assert frames[-1] == SSE_DONE
    assert len(frames) == 4
    assert "closed early" not in caplog.text
