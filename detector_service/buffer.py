from __future__ import annotations

from typing import Optional

import numpy as np


class ChunkBuffer:
    """Accumulates sample windows for the span currently being recorded."""

    def __init__(self) -> None:
        self._windows: list[np.ndarray] = []
        self._start_time: Optional[float] = None
        self.sample_rate: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self._start_time is not None

    @property
    def start_time(self) -> Optional[float]:
        return self._start_time

    def open(self, start_time: float) -> None:
        self._windows = []
        self._start_time = start_time

    def append(self, window: Optional[np.ndarray], sample_rate: Optional[int] = None) -> None:
        if not self.is_open:
            return
        if sample_rate is not None:
            self.sample_rate = sample_rate
        if window is not None and len(window) > 0:
            self._windows.append(window)

    def duration(self, now: float) -> float:
        if self._start_time is None:
            return 0.0
        return max(0.0, now - self._start_time)

    def merged(self) -> np.ndarray:
        """Concatenate the buffered windows into one read-only float32 array."""
        if not self._windows:
            merged = np.array([], dtype=np.float32)
        else:
            merged = np.concatenate(self._windows).astype(np.float32, copy=False)
        merged.setflags(write=False)
        return merged

    def clear(self) -> None:
        self._windows = []
        self._start_time = None
