"""Common utility helpers."""

from __future__ import annotations

import base64
import binascii
import threading
import time
from datetime import datetime, timezone
from time import perf_counter


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> float:
    return perf_counter() * 1000.0


def elapsed_ms(start_ms: float) -> int:
    return int(perf_counter() * 1000.0 - start_ms)


def display_date(moment: datetime | None = None) -> str:
    return (moment or utc_now()).strftime("%Y-%m-%d")


class _MonotonicMillis:
    """Wall-clock milliseconds that never repeat or go backwards within a process."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            current = max(int(time.time() * 1000), self._last + 1)
            self._last = current
            return current


next_timestamp_ms = _MonotonicMillis()


def time_id() -> str:
    return str(next_timestamp_ms())


def decode_image_b64(value: str) -> bytes:
    if "," in value and value.strip().startswith("data:"):
        _, _, value = value.partition(",")
    try:
        return base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("image_b64 is not valid base64") from exc


def encode_image_b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")
