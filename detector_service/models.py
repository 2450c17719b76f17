"""Internal models for speech activity detection."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

import numpy as np


class DetectorStatus(str, Enum):
    idle = "idle"
    buffering = "buffering"
    sending = "sending"


@dataclass
class DetectorState:
    is_speaking: bool = False
    speech_duration: float = 0.0
    silence_duration: float = 0.0
    buffer_duration: float = 0.0
    chunks_sent: int = 0
    total_speech_time: float = 0.0
    total_silence_time: float = 0.0
    confidence: float = 0.0
    status: DetectorStatus = DetectorStatus.idle

    def snapshot(self) -> DetectorState:
        return replace(self)


@dataclass(frozen=True)
class Chunk:
    """A span of buffered audio judged ready to send. Times are milliseconds."""

    id: str
    start_time: float
    end_time: float
    speech_duration: float
    samples: np.ndarray = field(repr=False, compare=False)
    sample_rate: Optional[int] = None

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @property
    def speech_ratio(self) -> float:
        return self.speech_duration / max(1.0, self.duration)


@dataclass(frozen=True)
class DetectorStats:
    total_speech_time: float
    total_silence_time: float
    speech_ratio: float
    chunks_sent: int
    avg_chunk_duration: float
