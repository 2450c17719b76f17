from __future__ import annotations

import uuid
from typing import Optional

from common.schemas import ApiKey, KeyPoolState

MASK = "••••••••"


def mask_key(secret: str) -> str:
    """Show the first and last four characters with a fixed-length mask between."""
    if len(secret) <= 8:
        return MASK
    return secret[:4] + MASK + secret[-4:]


def is_rate_limited(key: ApiKey, now: float) -> bool:
    """A cooldown in the past reads as expired without touching the key."""
    if not key.rate_limited or key.rate_limited_until is None:
        return False
    return now < key.rate_limited_until


def is_eligible(key: ApiKey, now: float) -> bool:
    return not key.is_disabled and not is_rate_limited(key, now)


class KeyPool:
    """Ordered credentials plus the round-robin pointer and call counters."""

    def __init__(self, keys: list[ApiKey] | None = None) -> None:
        self.keys: list[ApiKey] = list(keys or [])
        self.current_index = 0
        self.shuffle_mode = False
        self.total_calls = 0
        self.last_error: Optional[str] = None
        self.last_rotation_reason: Optional[str] = None

    def __len__(self) -> int:
        return len(self.keys)

    def add(self, secret: str, name: Optional[str] = None) -> ApiKey:
        first = not self.keys
        key = ApiKey(
            id=f"key_{uuid.uuid4().hex}",
            secret=secret.strip(),
            name=(name or "").strip() or f"Key {len(self.keys) + 1}",
            is_active=first,
            is_primary=first,
        )
        self.keys.append(key)
        return key

    def remove(self, key_id: str) -> Optional[ApiKey]:
        index = self.index_of(key_id)
        if index is None:
            return None
        removed = self.keys.pop(index)

        if index < self.current_index:
            self.current_index -= 1
        if self.current_index >= len(self.keys):
            self.current_index = max(0, len(self.keys) - 1)

        if self.keys:
            if removed.is_primary:
                self.keys[0].is_primary = True
            if removed.is_active:
                primary = self.primary()
                self.activate(self.keys.index(primary) if primary else 0)
        return removed

    def index_of(self, key_id: str) -> Optional[int]:
        for i, key in enumerate(self.keys):
            if key.id == key_id:
                return i
        return None

    def get(self, key_id: str) -> Optional[ApiKey]:
        index = self.index_of(key_id)
        return None if index is None else self.keys[index]

    def primary(self) -> Optional[ApiKey]:
        return next((k for k in self.keys if k.is_primary), None)

    def eligible(self, now: float) -> list[tuple[int, ApiKey]]:
        return [(i, k) for i, k in enumerate(self.keys) if is_eligible(k, now)]

    def next_eligible_from(self, start: int, now: float) -> Optional[int]:
        """Scan forward from start, wrapping, for the first eligible index."""
        n = len(self.keys)
        for offset in range(n):
            index = (start + offset) % n
            if is_eligible(self.keys[index], now):
                return index
        return None

    def activate(self, index: int) -> ApiKey:
        for i, key in enumerate(self.keys):
            key.is_active = i == index
        return self.keys[index]

    def clamp_index(self) -> None:
        if self.current_index < 0 or self.current_index >= len(self.keys):
            self.current_index = 0

    def snapshot(self) -> KeyPoolState:
        return KeyPoolState(
            keys=[k.model_copy(deep=True) for k in self.keys],
            current_index=self.current_index,
            shuffle_mode=self.shuffle_mode,
            total_calls=self.total_calls,
            last_error=self.last_error,
            last_rotation_reason=self.last_rotation_reason,
        )
