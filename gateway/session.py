from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from common.storage import Storage
from detector_service.detector import SpeechActivityDetector
from detector_service.models import Chunk

logger = logging.getLogger(__name__)


class StreamClock:
    """Milliseconds of audio received so far on one stream.

    Frames that arrive in bursts over the network still advance detector
    time by their real length.
    """

    def __init__(self) -> None:
        self.ms = 0.0

    def advance(self, samples: int, sample_rate: int) -> None:
        self.ms += samples * 1000.0 / sample_rate

    def __call__(self) -> float:
        return self.ms


@dataclass
class Session:
    stream_id: str
    detector: SpeechActivityDetector
    clock: StreamClock
    sample_rate: int = 16000
    channels: int = 1
    encoding: str = "pcm_s16le"
    pending: list[Chunk] = field(default_factory=list)
    unsubscribe: Callable[[], None] | None = None

    def feed(self, audio: np.ndarray) -> list[Chunk]:
        """Advance the stream clock by one frame and return chunks it completed."""
        self.clock.advance(len(audio), self.sample_rate)
        self.detector.process(audio, self.sample_rate)
        return self.take_pending()

    def take_pending(self) -> list[Chunk]:
        chunks = list(self.pending)
        self.pending.clear()
        return chunks


class SessionManager:
    def __init__(self, max_sessions: int = 10, storage: Storage | None = None) -> None:
        self._max = max_sessions
        self._storage = storage
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def create(self, stream_id: str, **kwargs) -> Session:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if stream_id in self._sessions:
                raise RuntimeError(f"Session {stream_id} already exists")
            clock = StreamClock()
            detector = SpeechActivityDetector(storage=self._storage, clock=clock)
            session = Session(stream_id=stream_id, detector=detector, clock=clock, **kwargs)
            session.unsubscribe = detector.on_chunk(session.pending.append)
            detector.start()
            self._sessions[stream_id] = session
            logger.info("Session created: %s (%d active)", stream_id, len(self._sessions))
            return session

    async def remove(self, stream_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(stream_id, None)
            if session is not None:
                session.detector.stop()
                dropped = session.take_pending()
                if dropped:
                    logger.warning("Dropped %d unsent chunks for %s", len(dropped), stream_id)
                if session.unsubscribe is not None:
                    session.unsubscribe()
            logger.info("Session removed: %s (%d active)", stream_id, len(self._sessions))

    def get(self, stream_id: str) -> Session | None:
        return self._sessions.get(stream_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)
