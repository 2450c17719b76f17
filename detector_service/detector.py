from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Callable, Optional

import numpy as np
from pydantic import ValidationError

from common.clock import Clock, now_ms
from common.config import DetectorSettings
from common.schemas import DetectorConfig
from common.storage import Storage
from detector_service.buffer import ChunkBuffer
from detector_service.fillers import detect_filler_words, strip_filler_words
from detector_service.models import Chunk, DetectorState, DetectorStats, DetectorStatus

logger = logging.getLogger(__name__)

CONFIG_KEY = "vad_config"

StateListener = Callable[[DetectorState], None]
ChunkListener = Callable[[Chunk], None]


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(np.square(samples, dtype=np.float64))))


def _reduce(sample: Any) -> tuple[float, Optional[np.ndarray]]:
    """Return (amplitude, window) for a scalar volume or a raw sample window.

    Anything that cannot be read as audio counts as silence.
    """
    if sample is None:
        return 0.0, None
    if isinstance(sample, (int, float, np.number)):
        amplitude = float(sample)
        window = None
    else:
        try:
            window = np.array(sample, dtype=np.float32).ravel()
        except (TypeError, ValueError):
            logger.debug("Unreadable sample of type %s treated as silence", type(sample).__name__)
            return 0.0, None
        window = np.nan_to_num(window, nan=0.0, posinf=0.0, neginf=0.0)
        amplitude = rms(window)
    if not math.isfinite(amplitude) or amplitude < 0:
        amplitude = 0.0
    return amplitude, window


class SpeechActivityDetector:
    """Turns a stream of volume levels or sample windows into Chunk events.

    Durations are milliseconds measured against the injected clock. Samples
    must be delivered in arrival order: the time between two process() calls
    is what accrues as speech or silence.
    """

    def __init__(
        self,
        storage: Storage | None = None,
        config: DetectorConfig | None = None,
        clock: Clock = now_ms,
        settings: DetectorSettings | None = None,
    ) -> None:
        self._storage = storage
        self._clock = clock
        self._config = config or self._load_config(settings or DetectorSettings())
        self._state = DetectorState()
        self._buffer = ChunkBuffer()
        self._last_tick: Optional[float] = None
        self._chunk_time_total = 0.0
        self._listeners: list[StateListener] = []
        self._chunk_listeners: list[ChunkListener] = []

    # --- configuration ---

    def _load_config(self, settings: DetectorSettings) -> DetectorConfig:
        config = DetectorConfig(**settings.model_dump())
        if self._storage is None:
            return config
        stored = self._storage.get(CONFIG_KEY)
        if not stored:
            return config
        try:
            return DetectorConfig.model_validate_json(stored)
        except ValidationError:
            logger.warning("Ignoring invalid stored detector config", exc_info=True)
            return config

    def _save_config(self) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set(CONFIG_KEY, self._config.model_dump_json())
        except OSError:
            logger.warning("Failed to persist detector config", exc_info=True)

    def configure(self, **changes: Any) -> DetectorConfig:
        unknown = set(changes) - set(DetectorConfig.model_fields)
        if unknown:
            raise ValueError(f"Unknown detector settings: {', '.join(sorted(unknown))}")
        self._config = DetectorConfig.model_validate({**self._config.model_dump(), **changes})
        self._save_config()
        return self.get_config()

    def get_config(self) -> DetectorConfig:
        return self._config.model_copy(deep=True)

    # --- processing ---

    def process(self, sample: Any, sample_rate: Optional[int] = None) -> bool:
        """Classify one capture tick and emit a chunk when the span is complete."""
        now = self._clock()
        delta = 0.0 if self._last_tick is None else max(0.0, now - self._last_tick)
        self._last_tick = now

        amplitude, window = _reduce(sample)
        cfg = self._config
        st = self._state
        st.is_speaking = amplitude > cfg.silence_threshold
        st.confidence = self._confidence(amplitude)

        if st.is_speaking:
            st.speech_duration += delta
            st.total_speech_time += delta
            st.silence_duration = 0.0
            if not self._buffer.is_open:
                # The span covers the tick interval in which speech was heard
                self._buffer.open(now - delta)
            self._buffer.append(window, sample_rate)
            st.buffer_duration = self._buffer.duration(now)
            st.status = DetectorStatus.buffering
        else:
            st.silence_duration += delta
            st.total_silence_time += delta
            if self._buffer.is_open:
                self._buffer.append(window, sample_rate)
                st.buffer_duration = self._buffer.duration(now)

        self._check_send()
        self._notify()
        return st.is_speaking

    def _confidence(self, amplitude: float) -> float:
        threshold = self._config.silence_threshold
        if threshold <= 0:
            return 1.0 if amplitude > 0 else 0.0
        return min(1.0, amplitude / (threshold * 3))

    def _check_send(self) -> None:
        if not self._buffer.is_open:
            return
        cfg = self._config
        st = self._state
        end_of_utterance = (
            st.speech_duration >= cfg.min_speech_duration
            and st.silence_duration >= cfg.silence_duration
        )
        too_long = st.buffer_duration >= cfg.max_chunk_duration
        if (end_of_utterance or too_long) and st.buffer_duration >= cfg.min_chunk_duration:
            self._emit()

    def _emit(self) -> Chunk:
        st = self._state
        start = self._buffer.start_time
        if start is None:
            raise RuntimeError("Cannot emit a chunk without an open buffer")
        chunk = Chunk(
            id=f"chunk_{uuid.uuid4().hex[:12]}",
            start_time=start,
            end_time=start + st.buffer_duration,
            speech_duration=st.speech_duration,
            samples=self._buffer.merged(),
            sample_rate=self._buffer.sample_rate,
        )
        st.chunks_sent += 1
        st.status = DetectorStatus.sending
        self._chunk_time_total += chunk.duration

        for listener in list(self._chunk_listeners):
            try:
                listener(chunk)
            except Exception:
                logger.exception("Chunk listener failed for %s", chunk.id)

        self._reset_buffer()
        logger.info(
            "Chunk sent: %.1fs, speech ratio: %.0f%%",
            chunk.duration / 1000,
            chunk.speech_ratio * 100,
        )
        return chunk

    def _reset_buffer(self) -> None:
        self._buffer.clear()
        st = self._state
        st.buffer_duration = 0.0
        st.speech_duration = 0.0
        st.silence_duration = 0.0
        st.status = DetectorStatus.idle

    # --- session control ---

    def start(self) -> None:
        self.reset()
        logger.info("Detector started")

    def stop(self) -> Optional[Chunk]:
        """Flush a buffer long enough to send, then go idle."""
        chunk = self._flush()
        if self._buffer.is_open:
            logger.info("Discarding %.0fms buffer below minimum chunk length", self._state.buffer_duration)
        self._reset_buffer()
        self._last_tick = None
        self._notify()
        logger.info(
            "Detector stopped. Total speech: %.1fs, chunks sent: %d",
            self._state.total_speech_time / 1000,
            self._state.chunks_sent,
        )
        return chunk

    def force_flush(self) -> Optional[Chunk]:
        chunk = self._flush()
        if chunk is not None:
            self._notify()
        return chunk

    def _flush(self) -> Optional[Chunk]:
        if self._buffer.is_open and self._state.buffer_duration >= self._config.min_chunk_duration:
            return self._emit()
        return None

    def reset(self) -> None:
        self._buffer.clear()
        self._state = DetectorState()
        self._last_tick = None
        self._chunk_time_total = 0.0

    # --- observers ---

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; it is called now and after every tick."""
        self._listeners.append(listener)
        listener(self._state.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_chunk(self, listener: ChunkListener) -> Callable[[], None]:
        self._chunk_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._chunk_listeners:
                self._chunk_listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state.snapshot())
            except Exception:
                logger.exception("State listener failed")

    # --- queries ---

    def get_state(self) -> DetectorState:
        return self._state.snapshot()

    def get_stats(self) -> DetectorStats:
        st = self._state
        return DetectorStats(
            total_speech_time=st.total_speech_time,
            total_silence_time=st.total_silence_time,
            speech_ratio=st.total_speech_time / max(1.0, st.total_speech_time + st.total_silence_time),
            chunks_sent=st.chunks_sent,
            avg_chunk_duration=self._chunk_time_total / st.chunks_sent if st.chunks_sent else 0.0,
        )

    # --- transcript cleanup ---

    def strip_filler_words(self, text: str) -> str:
        if not self._config.enable_filler_detection:
            return text
        return strip_filler_words(text, self._config.filler_words)

    def detect_filler_words(self, text: str) -> list[str]:
        return detect_filler_words(text, self._config.filler_words)
