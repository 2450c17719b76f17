from __future__ import annotations

import time
from typing import Callable

Clock = Callable[[], float]


def now_ms() -> float:
    """Wall-clock time in milliseconds."""
    return time.time() * 1000.0
