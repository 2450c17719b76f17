from __future__ import annotations

import json
import logging
import math
import random
from typing import Callable, Optional

from pydantic import TypeAdapter, ValidationError

from common.clock import Clock, now_ms
from common.config import RotationSettings
from common.schemas import (
    ApiKey,
    DisabledReason,
    ErrorKind,
    KeyPoolState,
    ProbeFailure,
    RotationCounters,
    RotationResult,
    WorkingKeyResult,
)
from common.storage import Storage
from keys_service.pool import KeyPool, is_rate_limited, mask_key
from keys_service.probe import ConnectionProbe, Probe

logger = logging.getLogger(__name__)

STORAGE_KEY = "api_keys_v2"
STATE_KEY = "key_manager_state"
LEGACY_KEY = "api_keys"

_keys_adapter = TypeAdapter(list[ApiKey])

PoolListener = Callable[[KeyPoolState], None]


def classify_error(code: Optional[int], message: Optional[str] = None) -> ErrorKind:
    """Map a failed request to an error kind, first match wins."""
    text = (message or "").lower()
    if code == 429 or "rate limit" in text:
        return ErrorKind.rate_limited
    if "quota" in text:
        return ErrorKind.quota_exhausted
    if code in (401, 403):
        return ErrorKind.auth_rejected
    if code is not None and 500 <= code < 600:
        return ErrorKind.server_error
    if "timeout" in text or "timed out" in text:
        return ErrorKind.network_timeout
    return ErrorKind.unknown


_DISABLE_REASONS = {
    ErrorKind.rate_limited: DisabledReason.rate_limit,
    ErrorKind.quota_exhausted: DisabledReason.quota,
    ErrorKind.auth_rejected: DisabledReason.auth,
}


class KeyRotationManager:
    """Round-robin (or shuffled) selection over a pool of API credentials.

    Failures reported through handle_error put keys on cooldown or disable
    them; expired cooldowns are swept at the top of every selection. All
    state changes are written to storage and pushed to subscribers as
    snapshots. Keys handed out are copies.
    """

    def __init__(
        self,
        storage: Storage | None = None,
        probe: Probe | None = None,
        clock: Clock = now_ms,
        settings: RotationSettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings or RotationSettings()
        self._storage = storage
        self._probe = probe or ConnectionProbe(self.settings)
        self._clock = clock
        self._rng = rng or random.Random()
        self._pool = KeyPool()
        self._listeners: list[PoolListener] = []
        self._load_state()

    # --- persistence ---

    def _load_state(self) -> None:
        if self._storage is None:
            return
        stored = self._storage.get(STORAGE_KEY)
        if stored:
            try:
                self._pool.keys = _keys_adapter.validate_json(stored)
            except ValidationError:
                logger.warning("Ignoring invalid stored key list", exc_info=True)

        legacy = self._storage.get(LEGACY_KEY)
        if legacy and not self._pool.keys:
            self._migrate_legacy(legacy)

        counters = self._storage.get(STATE_KEY)
        if counters:
            try:
                parsed = RotationCounters.model_validate_json(counters)
            except ValidationError:
                logger.warning("Ignoring invalid stored rotation counters", exc_info=True)
            else:
                self._pool.current_index = parsed.current_index
                self._pool.shuffle_mode = parsed.shuffle_mode
                self._pool.total_calls = parsed.total_calls
        self._pool.clamp_index()

    def _migrate_legacy(self, raw: str) -> None:
        try:
            entries = json.loads(raw)
            keys = [
                ApiKey(
                    id=entry.get("id") or f"key_legacy_{i}",
                    secret=entry["key"].strip(),
                    name=entry.get("name") or f"Key {i + 1}",
                    is_active=i == 0,
                    is_primary=i == 0,
                    usage_count=0,
                )
                for i, entry in enumerate(entries)
            ]
        except (ValueError, TypeError, KeyError, AttributeError):
            logger.warning("Could not migrate legacy key list", exc_info=True)
            return
        self._pool.keys = keys
        self._save()
        self._storage.delete(LEGACY_KEY)
        logger.info("Migrated %d legacy keys", len(keys))

    def _save(self) -> None:
        if self._storage is None:
            return
        counters = RotationCounters(
            current_index=self._pool.current_index,
            shuffle_mode=self._pool.shuffle_mode,
            total_calls=self._pool.total_calls,
        )
        try:
            self._storage.set(STORAGE_KEY, _keys_adapter.dump_json(self._pool.keys).decode())
            self._storage.set(STATE_KEY, counters.model_dump_json())
        except OSError:
            logger.warning("Failed to persist key state", exc_info=True)

    def _changed(self) -> None:
        self._save()
        self._notify()

    # --- key management ---

    def add_key(self, secret: str, name: Optional[str] = None) -> ApiKey:
        if not secret or not secret.strip():
            raise ValueError("API key must not be empty")
        key = self._pool.add(secret, name)
        self._changed()
        logger.info("Added key: %s (%d total)", key.name, len(self._pool))
        return key.model_copy()

    def remove_key(self, key_id: str) -> bool:
        removed = self._pool.remove(key_id)
        if removed is None:
            return False
        self._changed()
        logger.info("Removed key: %s (%d left)", removed.name, len(self._pool))
        return True

    def get_keys(self) -> list[ApiKey]:
        return [k.model_copy() for k in self._pool.keys]

    @property
    def key_count(self) -> int:
        return len(self._pool)

    @property
    def active_key_count(self) -> int:
        return len(self._pool.eligible(self._clock()))

    # --- selection ---

    def get_next_key(self) -> Optional[ApiKey]:
        """Pick the key for the next request and record the call."""
        self.refresh_key_states()
        if not self._pool.keys:
            return None

        now = self._clock()
        candidates = self._pool.eligible(now)
        if not candidates:
            primary = self._pool.primary()
            if primary is not None and not primary.is_disabled:
                logger.warning("All keys rate-limited, using primary %s as fallback", primary.name)
                # failures on the fallback are charged to the primary; no call is counted
                self._pool.activate(self._pool.keys.index(primary))
                self._changed()
                return primary.model_copy()
            logger.error("No available keys")
            return None

        if self._pool.shuffle_mode:
            index, _ = self._rng.choice(candidates)
        else:
            index = self._pool.next_eligible_from(self._pool.current_index, now)
            if index is None:
                index = candidates[0][0]

        key = self._select(index, now)
        logger.info("Using key: %s (%d/%d)", key.name, index + 1, len(self._pool))
        return key.model_copy()

    def _select(self, index: int, now: float) -> ApiKey:
        pool = self._pool
        pool.current_index = (index + 1) % len(pool)
        key = pool.activate(index)
        key.usage_count += 1
        key.last_used = now
        pool.total_calls += 1
        self._changed()
        return key

    def _current(self) -> Optional[ApiKey]:
        for key in self._pool.keys:
            if key.is_active and not key.is_disabled:
                return key
        now = self._clock()
        eligible = self._pool.eligible(now)
        return eligible[0][1] if eligible else None

    def get_current_key(self) -> Optional[ApiKey]:
        current = self._current()
        return current.model_copy() if current else None

    def get_current_key_info(self) -> Optional[tuple[str, int, int]]:
        """Return (name, 1-based position, pool size) of the current key."""
        current = self._current()
        if current is None:
            return None
        return current.name, self._pool.keys.index(current) + 1, len(self._pool)

    def rotate_to_next_key(self) -> Optional[ApiKey]:
        """Move to the next eligible key after the current one without counting a call."""
        now = self._clock()
        available = self._pool.eligible(now)
        if len(available) <= 1:
            return available[0][1].model_copy() if available else None

        current = self._current()
        start = self._pool.keys.index(current) + 1 if current else self._pool.current_index
        index = self._pool.next_eligible_from(start % len(self._pool), now)
        if index is None:
            return None
        key = self._pool.activate(index)
        self._pool.current_index = index
        self._changed()
        logger.info("Rotated to: %s (%d/%d)", key.name, index + 1, len(self._pool))
        return key.model_copy()

    # --- error handling ---

    def handle_error(self, code: Optional[int], message: Optional[str] = None) -> RotationResult:
        """Classify a failed request against the current key and move to another one."""
        kind = classify_error(code, message)
        current = self._current()
        if current is None:
            return RotationResult(switched=False, message="No keys available", kind=kind)

        now = self._clock()
        cfg = self.settings
        current.last_error = message or f"Error {code}"

        if kind is ErrorKind.rate_limited:
            current.rate_limited = True
            current.rate_limited_until = now + cfg.rate_limit_cooldown_ms
            current.fail_count += 1
            self._pool.last_rotation_reason = f"Rate limit on {current.name}"
            logger.warning(
                "Rate limit on %s, cooldown for %.0fs", current.name, cfg.rate_limit_cooldown_ms / 1000
            )
        elif kind is ErrorKind.quota_exhausted:
            current.rate_limited = True
            current.rate_limited_until = now + cfg.quota_cooldown_ms
            current.fail_count += 1
            self._pool.last_rotation_reason = f"Quota exhausted on {current.name}"
            logger.warning(
                "Quota exhausted on %s, cooldown for %.0fs", current.name, cfg.quota_cooldown_ms / 1000
            )
        elif kind is ErrorKind.auth_rejected:
            current.is_disabled = True
            current.disabled_reason = DisabledReason.auth
            current.fail_count = cfg.max_fail_count
            self._pool.last_rotation_reason = f"Auth error on {current.name}"
            logger.warning("Auth error on %s, key disabled", current.name)
        elif kind in (ErrorKind.server_error, ErrorKind.network_timeout):
            current.fail_count += 1
            self._pool.last_rotation_reason = f"Server error on {current.name}"

        if current.fail_count >= cfg.max_fail_count and not current.is_primary and not current.is_disabled:
            current.is_disabled = True
            current.disabled_reason = _DISABLE_REASONS.get(kind, DisabledReason.failures)
            logger.warning("Key %s disabled after %d failures", current.name, current.fail_count)

        self._pool.last_error = f"{code}: {message or 'Unknown error'}"
        self._save()

        next_key = self.get_next_key()
        if next_key is not None and next_key.id != current.id:
            if kind is ErrorKind.rate_limited:
                text = f"Rate limit hit on {current.name} - switching to {next_key.name}"
            elif kind is ErrorKind.quota_exhausted:
                text = f"Quota exhausted on {current.name} - switching to {next_key.name}"
            else:
                text = f"Error on {current.name} - switching to {next_key.name}"
            self._notify()
            return RotationResult(switched=True, new_key=next_key, message=text, kind=kind)

        self._notify()
        return RotationResult(switched=False, message="All keys exhausted or unavailable", kind=kind)

    def report_success(self) -> None:
        current = self._current()
        if current is None:
            return
        current.fail_count = 0
        current.rate_limited = False
        current.rate_limited_until = None
        self._changed()

    def refresh_key_states(self) -> None:
        """Clear expired cooldowns and re-enable keys that were only cooling down."""
        now = self._clock()
        changed = False
        for key in self._pool.keys:
            if key.rate_limited_until is not None and now >= key.rate_limited_until:
                key.rate_limited = False
                key.rate_limited_until = None
                if key.disabled_reason is not DisabledReason.auth:
                    key.fail_count = 0
                    if key.is_disabled:
                        key.is_disabled = False
                        key.disabled_reason = None
                        logger.info("%s cooldown expired - re-enabled", key.name)
                changed = True
            elif key.rate_limited and key.rate_limited_until is None:
                key.rate_limited = False
                changed = True
        if changed:
            self._changed()

    def reset_all_cooldowns(self) -> None:
        for key in self._pool.keys:
            key.rate_limited = False
            key.rate_limited_until = None
            key.is_disabled = False
            key.disabled_reason = None
            key.fail_count = 0
        self._changed()
        logger.info("All key cooldowns reset")

    # --- settings & observers ---

    def set_shuffle_mode(self, enabled: bool) -> None:
        self._pool.shuffle_mode = enabled
        self._changed()

    @property
    def shuffle_mode(self) -> bool:
        return self._pool.shuffle_mode

    def subscribe(self, listener: PoolListener) -> Callable[[], None]:
        self._listeners.append(listener)
        listener(self._pool.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._pool.snapshot())
            except Exception:
                logger.exception("Key pool listener failed")

    def get_state(self) -> KeyPoolState:
        return self._pool.snapshot()

    @staticmethod
    def mask_key(secret: str) -> str:
        return mask_key(secret)

    def reset(self) -> None:
        self._pool = KeyPool()
        self._changed()

    # --- probing ---

    async def get_next_working_key_fast(self) -> WorkingKeyResult:
        """Probe eligible keys in pool order and activate the first that answers."""
        self.refresh_key_states()
        if not self._pool.keys:
            return WorkingKeyResult(success=False, message="No API keys configured", failure=ProbeFailure.no_keys)

        now = self._clock()
        candidates = [key for _, key in self._pool.eligible(now)]
        if not candidates:
            return self._no_candidates(now)

        logger.info("Fast-checking %d keys...", len(candidates))
        changed = False
        try:
            for i, key in enumerate(candidates, start=1):
                logger.info("Trying key %d/%d: %s", i, len(candidates), key.name)
                result = await self._probe.test_connection(key.secret)
                index = self._pool.index_of(key.id)

                if result.success and index is not None:
                    self._pool.activate(index)
                    self._pool.current_index = index
                    changed = True
                    logger.info("Found working key: %s", key.name)
                    return WorkingKeyResult(success=True, key=key.model_copy(), message=f"Connected via {key.name}")

                now = self._clock()
                key.last_error = result.message
                changed = True
                if result.status_code == 429:
                    key.rate_limited = True
                    key.rate_limited_until = now + self.settings.rate_limit_cooldown_ms
                    key.fail_count += 1
                    logger.info("%s rate-limited, trying next...", key.name)
                elif result.status_code == 403 or "quota" in result.message.lower():
                    key.rate_limited = True
                    key.rate_limited_until = now + self.settings.quota_cooldown_ms
                    logger.info("%s quota exhausted, skipping for %.0fs", key.name, self.settings.quota_cooldown_ms / 1000)
        finally:
            if changed:
                self._changed()

        now = self._clock()
        if all(is_rate_limited(key, now) for key in candidates):
            return self._no_candidates(now)
        return WorkingKeyResult(
            success=False,
            message="All keys failed - check quota/rate limits",
            failure=ProbeFailure.all_failed,
        )

    def _no_candidates(self, now: float) -> WorkingKeyResult:
        limited = [k for k in self._pool.keys if not k.is_disabled and is_rate_limited(k, now)]
        if not limited:
            return WorkingKeyResult(success=False, message="No enabled keys", failure=ProbeFailure.all_failed)
        soonest = min(k.rate_limited_until for k in limited)
        wait_s = max(1, math.ceil((soonest - now) / 1000))
        return WorkingKeyResult(
            success=False,
            message=f"All {len(limited)} keys rate-limited. Retry in {wait_s}s.",
            failure=ProbeFailure.all_rate_limited,
        )

    async def validate_on_startup(self) -> WorkingKeyResult:
        """Probe the primary first, then every other enabled key."""
        keys = [k for k in self._pool.keys if not k.is_disabled]
        if not keys:
            failure = ProbeFailure.all_failed if self._pool.keys else ProbeFailure.no_keys
            return WorkingKeyResult(success=False, message="No keys found", failure=failure)

        primary = next((k for k in keys if k.is_primary), keys[0])
        ordered = [primary] + [k for k in keys if k.id != primary.id]
        for key in ordered:
            logger.info("Validating key: %s", key.name)
            result = await self._probe.test_connection(key.secret)
            index = self._pool.index_of(key.id)
            if result.success and index is not None:
                self._pool.activate(index)
                self._changed()
                message = "Primary key connected" if key is primary else f"Connected to {key.name}"
                return WorkingKeyResult(success=True, key=key.model_copy(), message=message)

        return WorkingKeyResult(success=False, message="All keys failed validation", failure=ProbeFailure.all_failed)
