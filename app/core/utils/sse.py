from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

SSE_DONE = "data: [DONE]\n\n"


def format_sse_data(payload: Mapping[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"))
    return f"data: {data}\n\n"


def extract_sse_data(event_block: str) -> str | None:
    data_lines: list[str] = []
    for raw_line in event_block.splitlines():
        if not raw_line or raw_line.startswith(":"):
            continue
        field, _, value = raw_line.partition(":")
        if field != "data":
            continue
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    return "\n".join(data_lines)
