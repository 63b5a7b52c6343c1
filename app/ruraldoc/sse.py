"""Server-sent event framing for consultation event streams."""

from __future__ import annotations

import json
from typing import Any

KEEP_ALIVE = ": keep-alive\n\n"


def format_sse(event: str, payload: dict[str, Any], *, event_id: int | None = None) -> str:
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"), default=str)
    id_line = f"id: {event_id}\n" if event_id is not None else ""
    return f"{id_line}event: {event}\ndata: {data}\n\n"
