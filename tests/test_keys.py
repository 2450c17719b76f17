import json
import random

import pytest

from common.config import RotationSettings
from common.schemas import DisabledReason, ErrorKind, ProbeFailure, ProbeResult
from keys_service.manager import LEGACY_KEY, STATE_KEY, STORAGE_KEY, KeyRotationManager, classify_error
from keys_service.pool import mask_key


@pytest.fixture
def settings():
    return RotationSettings(rate_limit_cooldown_ms=60_000, quota_cooldown_ms=3_600_000, max_fail_count=3)


@pytest.fixture
def manager(storage, probe, clock, settings):
    return KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)


@pytest.fixture
def three_keys(manager):
    return [manager.add_key(f"secret-{i}-abcdefgh", f"Key {i}") for i in (1, 2, 3)]


def by_id(manager, key_id):
    return next(k for k in manager.get_keys() if k.id == key_id)


class TestPoolManagement:
    def test_first_key_is_primary_and_active(self, manager):
        first = manager.add_key("  first-secret-123  ")
        second = manager.add_key("second-secret-456", "Backup")
        assert first.is_primary and first.is_active
        assert first.secret == "first-secret-123"
        assert first.name == "Key 1"
        assert not second.is_primary and not second.is_active
        assert second.name == "Backup"

    def test_empty_secret_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.add_key("   ")

    def test_removing_primary_promotes_next(self, manager, three_keys):
        assert manager.remove_key(three_keys[0].id)
        keys = manager.get_keys()
        assert [k.id for k in keys] == [three_keys[1].id, three_keys[2].id]
        assert keys[0].is_primary
        assert sum(k.is_active for k in keys) == 1

    def test_removing_last_key_empties_pool(self, manager):
        key = manager.add_key("only-secret-abc")
        assert manager.remove_key(key.id)
        assert manager.key_count == 0
        assert manager.get_next_key() is None

    def test_remove_unknown_key(self, manager, three_keys):
        assert manager.remove_key("nope") is False
        assert manager.key_count == 3

    def test_removing_indexed_key_clamps_index(self, manager, three_keys):
        manager.get_next_key()
        manager.get_next_key()
        assert manager.get_state().current_index == 2
        manager.remove_key(three_keys[2].id)
        assert manager.get_state().current_index == 1

    def test_mask_key(self):
        masked = mask_key("AIzaSyABCDEFGHIJK")
        assert masked == "AIza••••••••HIJK"
        assert len(mask_key("AIza" + "x" * 40 + "HIJK")) == len(masked)
        assert mask_key("short") == "••••••••"
        assert KeyRotationManager.mask_key("12345678") == "••••••••"


class TestSelection:
    def test_round_robin_in_registration_order(self, manager, three_keys):
        picked = [manager.get_next_key().id for _ in range(4)]
        assert picked == [three_keys[0].id, three_keys[1].id, three_keys[2].id, three_keys[0].id]

    def test_selection_records_usage(self, manager, three_keys, clock):
        key = manager.get_next_key()
        state = manager.get_state()
        assert state.total_calls == 1
        assert key.usage_count == 1
        assert key.last_used == clock.now
        assert [k.is_active for k in state.keys] == [True, False, False]

        manager.get_next_key()
        assert [k.is_active for k in manager.get_state().keys] == [False, True, False]

    def test_get_current_key_does_not_rotate(self, manager, three_keys):
        manager.get_next_key()
        assert manager.get_current_key().id == three_keys[0].id
        assert manager.get_current_key().id == three_keys[0].id
        assert manager.get_state().total_calls == 1
        assert manager.get_current_key_info() == ("Key 1", 1, 3)

    def test_returned_keys_are_copies(self, manager, three_keys):
        key = manager.get_next_key()
        key.is_disabled = True
        assert not by_id(manager, key.id).is_disabled

    def test_shuffle_only_picks_eligible(self, storage, probe, clock, settings, three_keys, manager):
        manager.get_next_key()
        manager.get_next_key()
        manager.handle_error(429, "rate limit")
        manager.set_shuffle_mode(True)
        seeded = KeyRotationManager(
            storage=storage, probe=probe, clock=clock, settings=settings, rng=random.Random(1)
        )
        assert seeded.shuffle_mode
        picks = {seeded.get_next_key().id for _ in range(30)}
        assert picks == {three_keys[0].id, three_keys[2].id}

    def test_all_limited_falls_back_to_primary(self, manager, clock):
        first = manager.add_key("secret-one-abcdef")
        manager.add_key("secret-two-abcdef")
        manager.get_next_key()
        manager.handle_error(429)
        manager.handle_error(429)
        assert manager.active_key_count == 0

        calls = manager.get_state().total_calls
        assert manager.get_next_key().id == first.id
        assert manager.get_state().total_calls == calls

    def test_failure_on_primary_fallback_is_charged_to_primary(self, manager, clock):
        first = manager.add_key("secret-one-abcdef", "A")
        second = manager.add_key("secret-two-abcdef", "B")
        manager.get_next_key()
        manager.handle_error(429)
        fallback = manager.handle_error(429)
        assert fallback.switched
        assert fallback.new_key.id == first.id
        assert manager.get_current_key().id == first.id

        retry = manager.handle_error(429)
        assert not retry.switched
        assert retry.message == "All keys exhausted or unavailable"
        assert by_id(manager, first.id).fail_count == 2
        assert by_id(manager, first.id).rate_limited_until == clock() + 60_000
        assert by_id(manager, second.id).fail_count == 1
        assert not by_id(manager, second.id).is_disabled

    def test_no_key_when_primary_disabled(self, manager):
        manager.add_key("secret-one-abcdef")
        manager.handle_error(401, "invalid key")
        assert manager.get_next_key() is None


class TestErrorHandling:
    def test_classification_priority(self):
        assert classify_error(429) is ErrorKind.rate_limited
        assert classify_error(400, "Rate limit exceeded") is ErrorKind.rate_limited
        assert classify_error(403, "Quota exceeded for project") is ErrorKind.quota_exhausted
        assert classify_error(401) is ErrorKind.auth_rejected
        assert classify_error(403, "forbidden") is ErrorKind.auth_rejected
        assert classify_error(503) is ErrorKind.server_error
        assert classify_error(None, "Request timed out") is ErrorKind.network_timeout
        assert classify_error(400, "bad request") is ErrorKind.unknown

    def test_rate_limit_switches_and_sets_cooldown(self, manager, three_keys, clock):
        failed = manager.get_next_key()
        result = manager.handle_error(429, "rate limit")

        assert result.switched
        assert result.kind is ErrorKind.rate_limited
        assert result.new_key.id == three_keys[1].id
        assert "Key 1" in result.message and "Key 2" in result.message

        stored = by_id(manager, failed.id)
        assert stored.rate_limited
        assert stored.rate_limited_until == clock.now + 60_000
        assert stored.fail_count == 1
        assert manager.get_next_key().id != failed.id

    def test_cooldown_expiry_re_enables(self, manager, three_keys, clock):
        failed = manager.get_next_key()
        manager.handle_error(429, "rate limit")
        clock.advance(60_000)
        manager.refresh_key_states()

        stored = by_id(manager, failed.id)
        assert not stored.rate_limited
        assert stored.rate_limited_until is None
        assert stored.fail_count == 0
        assert not stored.is_disabled
        picked = {manager.get_next_key().id for _ in range(3)}
        assert failed.id in picked

    def test_expired_cooldown_reads_as_eligible_before_refresh(self, manager, three_keys, clock):
        manager.get_next_key()
        manager.handle_error(429)
        clock.advance(60_001)
        assert manager.active_key_count == 3
        assert manager.get_state().keys[0].rate_limited

    def test_quota_uses_long_cooldown(self, manager, three_keys, clock):
        failed = manager.get_next_key()
        result = manager.handle_error(None, "Quota exhausted for today")
        assert result.kind is ErrorKind.quota_exhausted
        assert by_id(manager, failed.id).rate_limited_until == clock.now + 3_600_000

    def test_auth_error_disables_without_expiry(self, manager, three_keys, clock):
        failed = manager.get_next_key()
        result = manager.handle_error(401, "API key not valid")
        stored = by_id(manager, failed.id)
        assert result.kind is ErrorKind.auth_rejected
        assert stored.is_disabled
        assert stored.disabled_reason is DisabledReason.auth
        assert stored.fail_count == 3

        clock.advance(10 * 3_600_000)
        manager.refresh_key_states()
        assert by_id(manager, failed.id).is_disabled

    @pytest.mark.asyncio
    async def test_auth_disable_survives_earlier_cooldown_expiry(self, manager, three_keys, clock):
        primary = manager.get_next_key()
        manager.handle_error(429, "rate limit")
        assert by_id(manager, primary.id).rate_limited

        # startup validation re-activates the primary while it is still cooling down
        await manager.validate_on_startup()
        assert manager.get_current_key().id == primary.id
        manager.handle_error(401, "API key revoked")

        clock.advance(60_000)
        manager.refresh_key_states()

        stored = by_id(manager, primary.id)
        assert not stored.rate_limited
        assert stored.rate_limited_until is None
        assert stored.is_disabled
        assert stored.disabled_reason is DisabledReason.auth

    def test_repeated_server_errors_disable_non_primary_only(self, manager, clock):
        primary = manager.add_key("secret-one-abcdef")
        backup = manager.add_key("secret-two-abcdef")
        manager.get_next_key()
        manager.get_next_key()

        results = [manager.handle_error(500, "internal") for _ in range(6)]

        assert by_id(manager, backup.id).is_disabled
        assert by_id(manager, backup.id).disabled_reason is DisabledReason.failures
        assert not by_id(manager, primary.id).is_disabled
        assert by_id(manager, primary.id).fail_count == 3
        assert results[4].switched
        assert not results[5].switched
        assert results[5].message == "All keys exhausted or unavailable"

        clock.advance(3_600_000)
        manager.refresh_key_states()
        assert by_id(manager, backup.id).is_disabled

        manager.reset_all_cooldowns()
        assert not by_id(manager, backup.id).is_disabled
        assert manager.active_key_count == 2

    def test_handle_error_without_keys(self, manager):
        result = manager.handle_error(429)
        assert not result.switched
        assert result.new_key is None
        assert result.message == "No keys available"

    def test_report_success_clears_failures(self, manager, clock):
        manager.add_key("secret-one-abcdef")
        manager.get_next_key()
        manager.handle_error(500)
        assert manager.get_current_key().fail_count == 1
        manager.report_success()
        current = manager.get_current_key()
        assert current.fail_count == 0
        assert not current.rate_limited

    def test_last_error_recorded(self, manager, three_keys):
        manager.get_next_key()
        manager.handle_error(503, "backend unavailable")
        state = manager.get_state()
        assert state.last_error == "503: backend unavailable"
        assert state.keys[0].last_error == "backend unavailable"
        assert state.last_rotation_reason == "Server error on Key 1"


class TestRotation:
    def test_rotate_to_next_key(self, manager, three_keys):
        manager.get_next_key()
        rotated = manager.rotate_to_next_key()
        assert rotated.id == three_keys[1].id
        assert manager.get_current_key().id == three_keys[1].id
        assert manager.get_state().total_calls == 1

    def test_rotate_with_single_eligible_key(self, manager):
        only = manager.add_key("secret-one-abcdef")
        assert manager.rotate_to_next_key().id == only.id


class TestObserversAndPersistence:
    def test_subscribe_receives_snapshots(self, manager):
        states = []
        unsubscribe = manager.subscribe(states.append)
        assert len(states) == 1
        manager.add_key("secret-one-abcdef")
        assert len(states[-1].keys) == 1

        states[-1].keys[0].is_disabled = True
        assert not manager.get_keys()[0].is_disabled

        unsubscribe()
        manager.add_key("secret-two-abcdef")
        assert len(states[-1].keys) == 1

    def test_state_survives_restart(self, manager, three_keys, storage, probe, clock, settings):
        manager.get_next_key()
        manager.handle_error(429)
        manager.set_shuffle_mode(True)

        restored = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        state = restored.get_state()
        assert [k.id for k in state.keys] == [k.id for k in three_keys]
        assert state.keys[0].rate_limited_until == clock.now + 60_000
        assert state.shuffle_mode
        assert state.total_calls == 2
        assert state.current_index == 2

    def test_out_of_range_index_is_clamped_on_load(self, storage, probe, clock, settings, manager, three_keys):
        storage.set(STATE_KEY, json.dumps({"current_index": 9, "shuffle_mode": False, "total_calls": 4}))
        restored = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        assert restored.get_state().current_index == 0
        assert restored.get_state().total_calls == 4

    def test_invalid_stored_state_is_ignored(self, storage, probe, clock, settings):
        storage.set(STORAGE_KEY, "[{broken")
        restored = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        assert restored.key_count == 0

    def test_legacy_keys_are_migrated(self, storage, probe, clock, settings):
        storage.set(LEGACY_KEY, json.dumps([
            {"id": "a", "key": "legacy-one-abcdef", "name": "Old 1"},
            {"id": "b", "key": "legacy-two-abcdef", "name": "Old 2"},
        ]))
        restored = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        keys = restored.get_keys()
        assert [k.name for k in keys] == ["Old 1", "Old 2"]
        assert keys[0].is_primary and not keys[1].is_primary
        assert LEGACY_KEY not in storage
        assert storage.get(STORAGE_KEY)

    def test_storage_failure_does_not_lose_decision(self, probe, clock, settings):
        class FailingStorage:
            def get(self, key):
                return None

            def set(self, key, value):
                raise OSError("disk full")

            def delete(self, key):
                pass

        manager = KeyRotationManager(storage=FailingStorage(), probe=probe, clock=clock, settings=settings)
        key = manager.add_key("secret-one-abcdef")
        assert manager.get_next_key().id == key.id


class TestWorkingKeyProbe:
    @pytest.mark.asyncio
    async def test_finds_first_working_key(self, storage, clock, settings, probe_factory):
        probe = probe_factory({"secret-1": ProbeResult(success=False, message="Rate limited", status_code=429)})
        manager = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        first = manager.add_key("secret-1")
        second = manager.add_key("secret-2")

        result = await manager.get_next_working_key_fast()

        assert result.success
        assert result.key.id == second.id
        assert result.message == "Connected via Key 2"
        assert probe.calls == ["secret-1", "secret-2"]
        assert manager.get_current_key().id == second.id
        assert manager.get_state().current_index == 1
        limited = by_id(manager, first.id)
        assert limited.rate_limited_until == clock.now + 60_000
        assert limited.fail_count == 1

    @pytest.mark.asyncio
    async def test_stops_at_first_success(self, manager, three_keys, probe):
        result = await manager.get_next_working_key_fast()
        assert result.success and result.key.id == three_keys[0].id
        assert probe.calls == ["secret-1-abcdefgh"]

    @pytest.mark.asyncio
    async def test_no_keys_configured(self, manager):
        result = await manager.get_next_working_key_fast()
        assert not result.success
        assert result.failure is ProbeFailure.no_keys

    @pytest.mark.asyncio
    async def test_all_rate_limited_before_probing(self, manager, clock, probe):
        manager.add_key("secret-1")
        manager.add_key("secret-2")
        manager.get_next_key()
        manager.handle_error(429)
        manager.handle_error(429)

        result = await manager.get_next_working_key_fast()
        assert result.failure is ProbeFailure.all_rate_limited
        assert "Retry in 60s" in result.message
        assert probe.calls == []

    @pytest.mark.asyncio
    async def test_quota_probe_results_count_as_rate_limited(self, storage, clock, settings, probe_factory):
        quota = ProbeResult(success=False, message="Quota exhausted", status_code=403)
        probe = probe_factory({"secret-1": quota, "secret-2": quota})
        manager = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        manager.add_key("secret-1")
        manager.add_key("secret-2")

        result = await manager.get_next_working_key_fast()
        assert result.failure is ProbeFailure.all_rate_limited
        assert all(k.rate_limited_until == clock.now + 3_600_000 for k in manager.get_keys())
        assert all(k.fail_count == 0 for k in manager.get_keys())

    @pytest.mark.asyncio
    async def test_all_failed_validation(self, storage, clock, settings, probe_factory):
        probe = probe_factory({
            "secret-1": ProbeResult(success=False, message="Timeout (3s)", timed_out=True),
            "secret-2": ProbeResult(success=False, message="HTTP 500", status_code=500),
        })
        manager = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        manager.add_key("secret-1")
        manager.add_key("secret-2")

        result = await manager.get_next_working_key_fast()
        assert result.failure is ProbeFailure.all_failed
        keys = manager.get_keys()
        assert all(k.fail_count == 0 and not k.rate_limited for k in keys)
        assert keys[0].last_error == "Timeout (3s)"

    @pytest.mark.asyncio
    async def test_validate_on_startup_prefers_primary(self, storage, clock, settings, probe_factory):
        probe = probe_factory({"secret-1": ProbeResult(success=False, message="HTTP 500", status_code=500)})
        manager = KeyRotationManager(storage=storage, probe=probe, clock=clock, settings=settings)
        manager.add_key("secret-1")
        second = manager.add_key("secret-2")

        result = await manager.validate_on_startup()
        assert result.success
        assert result.key.id == second.id
        assert probe.calls == ["secret-1", "secret-2"]
        assert manager.get_current_key().id == second.id

    @pytest.mark.asyncio
    async def test_validate_on_startup_without_keys(self, manager):
        result = await manager.validate_on_startup()
        assert result.failure is ProbeFailure.no_keys
