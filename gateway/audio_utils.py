from __future__ import annotations

import numpy as np

_DTYPES = {
    "pcm_s16le": np.dtype("<i2"),
    "pcm_f32le": np.dtype("<f4"),
}
SUPPORTED_ENCODINGS = frozenset(_DTYPES)


def decode_pcm(data: bytes, encoding: str = "pcm_s16le", channels: int = 1) -> np.ndarray:
    """Decode a raw PCM frame to mono float32 in [-1, 1].

    Trailing bytes that do not form a whole sample are dropped.
    """
    dtype = _pcm_dtype(encoding)
    usable = len(data) - len(data) % dtype.itemsize
    audio = np.frombuffer(data[:usable], dtype=dtype)
    if dtype.kind == "i":
        audio = audio.astype(np.float32) / 32768.0
    else:
        audio = audio.astype(np.float32)

    if channels > 1:
        frames = len(audio) // channels
        audio = audio[: frames * channels].reshape(frames, channels).mean(axis=1)
    return audio


def _pcm_dtype(encoding: str) -> np.dtype:
    try:
        return _DTYPES[encoding]
    except KeyError:
        raise ValueError(f"Unsupported encoding: {encoding}") from None
