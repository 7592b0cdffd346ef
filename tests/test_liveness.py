"""Tests for scanwatch/liveness.py"""

import asyncio

import pytest

from scanwatch.auth import authorize_sweep
from scanwatch.errors import AuthorizationError, StoreTimeoutError, TransientStoreError
from scanwatch.events import DEVICE_STATUS_CHANGED
from scanwatch.liveness import (
    DeviceRegistry,
    LivenessClassifier,
    classify,
    compute_transitions,
    summarize_devices,
)
from scanwatch.models import Device, DeviceStatus
from conftest import T0, CRON_SECRET

TIMEOUT = 30_000


class TestClassify:
    def test_never_reported_is_offline(self):
        assert classify(None, None, T0) == DeviceStatus.OFFLINE
        assert classify(0, 0, T0) == DeviceStatus.OFFLINE

    def test_recent_heartbeat_is_online(self):
        assert classify(T0 - 1000, None, T0) == DeviceStatus.ONLINE

    def test_boundary_is_offline(self):
        """Exactly OFFLINE_TIMEOUT old counts as offline."""
        assert classify(T0 - TIMEOUT, None, T0, TIMEOUT) == DeviceStatus.OFFLINE
        assert classify(T0 - TIMEOUT + 1, None, T0, TIMEOUT) == DeviceStatus.ONLINE

    def test_most_recent_of_both_signals_wins(self):
        assert classify(T0 - 60_000, T0 - 5_000, T0) == DeviceStatus.ONLINE
        assert classify(T0 - 5_000, T0 - 60_000, T0) == DeviceStatus.ONLINE

    def test_units_do_not_change_result(self):
        at = T0 - 10_000
        results = {classify(v, None, T0) for v in (at, at / 1000, str(at))}
        assert results == {DeviceStatus.ONLINE}

    def test_signal_at_now_is_online(self):
        assert classify(T0, None, T0) == DeviceStatus.ONLINE


class TestComputeTransitions:
    def test_only_changed_devices(self):
        devices = [
            Device("a", status=DeviceStatus.ONLINE, last_heartbeat_at=T0 - 1000),
            Device("b", status=DeviceStatus.ONLINE, last_heartbeat_at=T0 - 60_000),
            Device("c", status=None, last_heartbeat_at=T0 - 1000),
            Device("d", status=DeviceStatus.OFFLINE),
        ]
        transitions = compute_transitions(devices, T0)
        assert {t.device_id: t.current for t in transitions} == {
            "b": DeviceStatus.OFFLINE,
            "c": DeviceStatus.ONLINE,
        }

    def test_unknown_status_with_no_signal_becomes_offline(self):
        transitions = compute_transitions([Device("x")], T0)
        assert transitions[0].previous is None
        assert transitions[0].current == DeviceStatus.OFFLINE


class TestSummarize:
    def test_uses_looser_window(self):
        devices = [
            Device("a", last_heartbeat_at=T0 - 60_000),
            Device("b", last_heartbeat_at=T0 - 200_000),
        ]
        assert summarize_devices(devices, T0) == {"total": 2, "online": 1, "offline": 1}


class TestDeviceRegistry:
    def test_late_signal_never_moves_backwards(self):
        registry = DeviceRegistry()
        registry.observe("D1", T0, heartbeat=True)
        registry.observe("D1", T0 - 20_000, heartbeat=True)
        assert registry.get("D1").last_heartbeat_at == T0

    def test_merge_keeps_newer_local_signal(self):
        registry = DeviceRegistry()
        registry.observe("D1", T0, heartbeat=True)
        merged = registry.merge({
            "D1": Device("D1", status=DeviceStatus.OFFLINE, last_heartbeat_at=T0 - 40_000),
        })
        assert merged[0].last_heartbeat_at == T0
        assert merged[0].status == DeviceStatus.OFFLINE

    def test_snapshot_is_a_copy(self):
        registry = DeviceRegistry()
        registry.observe("D1", T0)
        registry.snapshot()[0].last_seen_at = 0
        assert registry.get("D1").last_seen_at == T0


class TestLivenessClassifier:
    async def test_no_devices(self, store, clock):
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        result = await classifier.sweep()
        assert result.total_devices == 0
        assert result.updated == 0
        assert store.batch_calls == []

    async def test_heartbeat_then_silence(self, store, clock):
        """Online at 25s after a heartbeat at 0, offline at 31s."""
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        await store.record_heartbeat("D1", clock())
        await store.batch_update_device_status({"D1": "offline"})

        clock.advance(25_000)
        result = await classifier.sweep()
        assert result.updated == 1
        assert result.went_online == 1
        assert store.devices["D1"].status == DeviceStatus.ONLINE

        clock.advance(6_000)
        result = await classifier.sweep()
        assert result.updated == 1
        assert result.went_offline == 1
        assert result.online == 0
        assert result.offline == 1
        assert store.devices["D1"].status == DeviceStatus.OFFLINE

    async def test_sweep_is_idempotent(self, store, clock):
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        await store.record_heartbeat("D1", clock())
        await store.record_heartbeat("D2", clock() - 90_000)

        first = await classifier.sweep()
        second = await classifier.sweep()
        assert first.updated == 2
        assert second.updated == 0
        assert len(store.batch_calls) == 1

    async def test_single_batch_write(self, store, clock):
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        for i in range(5):
            await store.record_heartbeat(f"D{i}", clock())
        result = await classifier.sweep()
        assert result.updated == 5
        assert len(store.batch_calls) == 1
        assert store.batch_calls[0] == {f"D{i}": "online" for i in range(5)}

    async def test_mixed_units_in_store(self, store, clock):
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        store.devices["sec"] = Device.from_raw("sec", {"lastHeartbeat": (clock() - 5_000) // 1000})
        store.devices["iso"] = Device.from_raw("iso", {"lastSeen": "2024-01-15T09:59:50Z"})
        result = await classifier.sweep()
        assert result.online == 2

    async def test_read_failure_writes_nothing(self, store, clock):
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        await store.record_heartbeat("D1", clock())
        store.fail_reads = True
        with pytest.raises(TransientStoreError):
            await classifier.sweep()
        assert store.batch_calls == []

    async def test_write_failure_leaves_state_for_next_sweep(self, store, clock):
        registry = DeviceRegistry()
        classifier = LivenessClassifier(store, registry, clock=clock)
        await store.record_heartbeat("D1", clock())
        store.fail_writes = True
        with pytest.raises(TransientStoreError):
            await classifier.sweep()
        assert store.devices["D1"].status is None

        store.fail_writes = False
        result = await classifier.sweep()
        assert result.updated == 1

    async def test_store_timeout(self, store, clock):
        class SlowStore(type(store)):
            async def read_devices(self):
                await asyncio.sleep(1)
                return {}

        classifier = LivenessClassifier(SlowStore(), DeviceRegistry(), clock=clock, store_timeout_ms=10)
        with pytest.raises(StoreTimeoutError):
            await classifier.sweep()

    async def test_publishes_transitions(self, store, clock, services):
        seen = []
        services.bus.subscribe(DEVICE_STATUS_CHANGED, seen.append)
        await store.record_heartbeat("D1", clock())
        await services.classifier.sweep()
        assert [t.device_id for t in seen] == ["D1"]
        assert seen[0].current == DeviceStatus.ONLINE

    async def test_overlapping_sweeps_apply_transition_once(self, store, clock, services):
        seen = []
        services.bus.subscribe(DEVICE_STATUS_CHANGED, seen.append)
        await store.record_heartbeat("D1", clock())

        first, second = await asyncio.gather(
            services.classifier.sweep(), services.classifier.sweep()
        )
        assert first.updated + second.updated == 1
        assert len(store.batch_calls) == 1
        assert len(seen) == 1

    async def test_failing_observer_does_not_fail_sweep(self, store, clock, services):
        def explode(_):
            raise RuntimeError("toast failed")

        services.bus.subscribe(DEVICE_STATUS_CHANGED, explode)
        await store.record_heartbeat("D1", clock())
        result = await services.classifier.sweep()
        assert result.updated == 1
        assert store.devices["D1"].status == DeviceStatus.ONLINE


class TestSweepAuthorization:
    def test_bearer_secret(self):
        authorize_sweep(auth_token="s3cret", secret="s3cret")

    def test_internal_header(self):
        authorize_sweep(internal=True, secret="s3cret", trust_internal=True)

    def test_internal_header_not_trusted(self):
        with pytest.raises(AuthorizationError):
            authorize_sweep(internal=True, secret="s3cret", trust_internal=False)

    def test_wrong_token(self):
        with pytest.raises(AuthorizationError):
            authorize_sweep(auth_token="nope", secret="s3cret")

    def test_no_secret_configured_is_open(self):
        authorize_sweep(secret="")

    async def test_unauthorized_never_reads_store(self, store, clock):
        store.fail_reads = True
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        with pytest.raises(AuthorizationError):
            await classifier.trigger_sweep(auth_token="wrong")

    async def test_authorized_trigger(self, store, clock):
        classifier = LivenessClassifier(store, DeviceRegistry(), clock=clock)
        result = await classifier.trigger_sweep(auth_token=CRON_SECRET)
        assert result.total_devices == 0
