from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


DEFAULT_FILLER_WORDS = [
    "um", "uh", "uhh", "umm", "er", "err", "ah", "ahh",
    "like", "you know", "basically", "actually", "literally",
    "i mean", "sort of", "kind of", "right", "okay so",
]


# --- Detector configuration (persisted) ---

class DetectorConfig(BaseModel):
    min_speech_duration: float = Field(1000.0, ge=0)
    silence_threshold: float = Field(0.0001, ge=0)
    silence_duration: float = Field(2000.0, ge=0)
    min_chunk_duration: float = Field(1000.0, ge=0)
    max_chunk_duration: float = Field(30000.0, ge=0)
    enable_filler_detection: bool = True
    filler_words: list[str] = Field(default_factory=lambda: list(DEFAULT_FILLER_WORDS))

    model_config = {"validate_assignment": True}


# --- Key pool state (persisted) ---

class ErrorKind(str, Enum):
    rate_limited = "rate_limited"
    quota_exhausted = "quota_exhausted"
    auth_rejected = "auth_rejected"
    server_error = "server_error"
    network_timeout = "network_timeout"
    unknown = "unknown"


class DisabledReason(str, Enum):
    rate_limit = "rate_limit"
    quota = "quota"
    failures = "failures"
    auth = "auth"


class ApiKey(BaseModel):
    id: str
    secret: str
    name: str
    is_active: bool = False
    is_primary: bool = False
    last_used: Optional[float] = None
    rate_limited: bool = False
    rate_limited_until: Optional[float] = None
    fail_count: int = 0
    is_disabled: bool = False
    disabled_reason: Optional[DisabledReason] = None
    usage_count: int = 0
    last_error: Optional[str] = None


class RotationCounters(BaseModel):
    current_index: int = 0
    shuffle_mode: bool = False
    total_calls: int = 0


class KeyPoolState(BaseModel):
    keys: list[ApiKey] = []
    current_index: int = 0
    shuffle_mode: bool = False
    total_calls: int = 0
    last_error: Optional[str] = None
    last_rotation_reason: Optional[str] = None


# --- Rotation / probe outcomes ---

class RequestOutcome(BaseModel):
    ok: bool
    status_code: Optional[int] = None
    message: str = ""


class RotationResult(BaseModel):
    switched: bool
    new_key: Optional[ApiKey] = None
    message: str
    kind: ErrorKind = ErrorKind.unknown


class ProbeResult(BaseModel):
    success: bool
    message: str
    status_code: Optional[int] = None
    timed_out: bool = False


class ProbeFailure(str, Enum):
    no_keys = "no_keys"
    all_rate_limited = "all_rate_limited"
    all_failed = "all_failed"


class WorkingKeyResult(BaseModel):
    success: bool
    key: Optional[ApiKey] = None
    message: str
    failure: Optional[ProbeFailure] = None


# --- Gateway REST bodies ---

class AddKeyRequest(BaseModel):
    secret: str = Field(min_length=1)
    name: Optional[str] = None


class ShuffleRequest(BaseModel):
    enabled: bool


class KeyView(BaseModel):
    id: str
    name: str
    masked: str
    is_active: bool
    is_primary: bool
    is_disabled: bool
    disabled_reason: Optional[DisabledReason] = None
    rate_limited: bool
    rate_limited_until: Optional[float] = None
    fail_count: int
    usage_count: int
    last_error: Optional[str] = None


class ValidationView(BaseModel):
    success: bool
    key: Optional[KeyView] = None
    message: str
    failure: Optional[ProbeFailure] = None


class ReportView(BaseModel):
    switched: bool = False
    key: Optional[KeyView] = None
    message: str
    kind: Optional[ErrorKind] = None


# --- WebSocket messages: client <-> gateway ---

class ClientMessageType(str, Enum):
    start = "start"
    end = "end"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    stream_id: str
    sample_rate: int = Field(16000, gt=0)
    encoding: str = "pcm_s16le"
    channels: int = Field(1, ge=1)


class EndMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.end
    stream_id: str


class ServerMessageType(str, Enum):
    chunk = "chunk"
    session_complete = "session_complete"
    error = "error"


class ChunkInfo(BaseModel):
    id: str
    start_time: float
    end_time: float
    duration: float
    speech_ratio: float
    sample_count: int
    sample_rate: Optional[int] = None


class ChunkMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.chunk
    stream_id: str
    chunk: ChunkInfo


class SessionStats(BaseModel):
    total_speech_time: float
    total_silence_time: float
    speech_ratio: float
    chunks_sent: int
    avg_chunk_duration: float


class SessionCompleteMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.session_complete
    stream_id: str
    stats: SessionStats


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    stream_id: str
    detail: str
