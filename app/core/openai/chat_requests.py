from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, Field, JsonValue


def content_as_text(content: JsonValue) -> str:
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    return json.dumps(content, ensure_ascii=False, separators=(",", ":"))


def content_prompt_text(content: JsonValue) -> str:
    """Flatten OpenAI content parts to plain text; non-text parts are dropped."""
    if isinstance(content, list):
        texts: list[str] = []
        for part in content:
            if isinstance(part, str):
                texts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                texts.append(part["text"])
        return "\n".join(texts)
    return content_as_text(content)


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "user"
    content: JsonValue = None


class ChatCompletionsRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = None
    messages: list[ChatMessage] = Field(default_factory=list)
    stream: bool | None = None

    @property
    def is_stream(self) -> bool:
        return bool(self.stream)

    def resolved_model(self, default: str) -> str:
        if self.model and self.model.strip():
            return self.model.strip()
        return default

    def prompt_text(self) -> str:
        return "".join(content_as_text(message.content) for message in self.messages)
