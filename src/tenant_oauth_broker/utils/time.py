"""Time helpers."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]


def utc_now() -> datetime:
    return datetime.now(tz=timezone.utc)


def epoch_seconds() -> float:
    return time.time()


def to_iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
