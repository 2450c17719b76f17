from pydantic_settings import BaseSettings


class GatewaySettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    max_sessions: int = 10
    sample_rate: int = 16000
    state_path: str = "speech_relay_state.json"

    model_config = {"env_prefix": "GATEWAY_"}


class DetectorSettings(BaseSettings):
    min_speech_duration: float = 1000.0
    silence_threshold: float = 0.0001
    silence_duration: float = 2000.0
    min_chunk_duration: float = 1000.0
    max_chunk_duration: float = 30000.0
    enable_filler_detection: bool = True

    model_config = {"env_prefix": "VAD_"}


class RotationSettings(BaseSettings):
    rate_limit_cooldown_ms: float = 60_000.0
    quota_cooldown_ms: float = 3_600_000.0
    max_fail_count: int = 3
    probe_timeout_s: float = 3.0
    probe_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    probe_model: str = "gemini-2.5-flash"

    model_config = {"env_prefix": "KEYS_"}
