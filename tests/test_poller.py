"""Tests for scanwatch/poller.py"""

import asyncio

import httpx
import pytest

from scanwatch.errors import AuthorizationError, StoreTimeoutError, TransientStoreError
from scanwatch.events import POLLER_STATE_CHANGED, EventBus
from scanwatch.models import SweepResult
from scanwatch.poller import AdaptivePoller, BackoffPolicy, HttpSweepClient, PollerState


class FakeSweep:
    """Sweep callable that succeeds, fails or hangs on demand."""

    def __init__(self, clock):
        self.clock = clock
        self.calls = 0
        self.error = None
        self.hang = False

    async def __call__(self) -> SweepResult:
        self.calls += 1
        if self.hang:
            await asyncio.sleep(1)
        if self.error is not None:
            raise self.error
        return SweepResult(total_devices=1, updated=0, online=1, offline=0, timestamp_ms=self.clock())


def make_poller(sweep, clock, **kwargs):
    kwargs.setdefault("timeout_ms", 20)
    return AdaptivePoller(sweep, interval_ms=7_000, clock=clock, **kwargs)


class TestBackoffPolicy:
    def test_delays(self):
        policy = BackoffPolicy(base_ms=2_000, factor=1.5, cap_ms=8_000)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4, 5)] == [2_000, 3_000, 4_500, 6_750, 8_000]


class TestTick:
    async def test_success_schedules_next_interval(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock)
        assert await poller.tick() == 7_000
        assert poller.state == PollerState.CONNECTED
        assert poller.last_success_ms == clock()

    async def test_three_failures_enter_cooldown(self, clock):
        sweep = FakeSweep(clock)
        sweep.error = TransientStoreError("unreachable")
        poller = make_poller(sweep, clock)

        assert await poller.tick() == 2_000
        assert await poller.tick() == 3_000
        assert poller.state == PollerState.BACKOFF
        assert await poller.tick() == 30_000
        assert poller.cooling_down is True
        assert sweep.calls == 3

        # No attempts while cooling down
        clock.advance(10_000)
        assert await poller.tick() == 20_000
        assert sweep.calls == 3

        clock.advance(20_000)
        sweep.error = None
        assert await poller.tick() == 7_000
        assert sweep.calls == 4
        assert poller.retry_count == 0
        assert poller.state == PollerState.CONNECTED

    async def test_success_resets_retry_count(self, clock):
        sweep = FakeSweep(clock)
        sweep.error = TransientStoreError("unreachable")
        poller = make_poller(sweep, clock)
        await poller.tick()
        await poller.tick()
        assert poller.retry_count == 2

        sweep.error = None
        await poller.tick()
        assert poller.retry_count == 0

    async def test_timeout_after_recent_success_keeps_connected(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock)
        await poller.tick()

        clock.advance(7_000)
        sweep.hang = True
        assert await poller.tick() == 7_000
        assert poller.state == PollerState.CONNECTED
        assert poller.retry_count == 0
        assert poller.last_error == "timeout"

    async def test_timeout_without_recent_success_disconnects(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock)
        await poller.tick()

        clock.advance(20_000)
        sweep.hang = True
        assert await poller.tick() == 7_000
        assert poller.state == PollerState.DISCONNECTED
        assert poller.retry_count == 0

    async def test_hidden_pauses_polling(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock)
        poller.set_visible(False)
        assert await poller.tick() is None
        assert sweep.calls == 0

        poller.set_visible(True)
        assert await poller.tick() == 7_000
        assert sweep.calls == 1

    async def test_state_changes_are_published(self, clock):
        bus = EventBus()
        states = []
        bus.subscribe(POLLER_STATE_CHANGED, states.append)
        poller = make_poller(FakeSweep(clock), clock, bus=bus)
        await poller.tick()
        assert states == [PollerState.CONNECTING, PollerState.CONNECTED]


class TestNetworkSignals:
    async def test_offline_halts_after_debounce(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock, offline_debounce_ms=10, online_debounce_ms=10)

        poller.set_network(False)
        assert poller.state == PollerState.DISCONNECTED
        await asyncio.sleep(0.05)
        assert poller.network_online is False
        assert await poller.tick() is None

        poller.set_network(True)
        await asyncio.sleep(0.05)
        assert poller.network_online is True
        assert poller.running is True
        await poller.stop()
        assert poller.state == PollerState.IDLE

    async def test_flapping_is_debounced(self, clock):
        poller = make_poller(FakeSweep(clock), clock, offline_debounce_ms=30, online_debounce_ms=30)
        poller.set_network(False)
        poller.set_network(True)
        poller.set_network(False)
        await asyncio.sleep(0.01)
        assert poller.network_online is True
        await asyncio.sleep(0.06)
        assert poller.network_online is False

    async def test_reconnect_clears_cooldown(self, clock):
        sweep = FakeSweep(clock)
        sweep.error = TransientStoreError("unreachable")
        poller = make_poller(sweep, clock, online_debounce_ms=10)
        for _ in range(3):
            await poller.tick()
        assert poller.cooling_down is True

        sweep.error = None
        poller.set_network(True)
        await asyncio.sleep(0.03)
        assert poller.cooling_down is False
        assert poller.retry_count == 0
        await poller.stop()


class TestRunLoop:
    async def test_start_and_stop(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock)
        poller.start()
        await asyncio.sleep(0.02)
        assert sweep.calls == 1
        assert poller.running is True

        await poller.stop()
        assert poller.running is False

    async def test_visibility_wakes_loop_immediately(self, clock):
        sweep = FakeSweep(clock)
        poller = make_poller(sweep, clock)
        poller.set_visible(False)
        poller.start()
        await asyncio.sleep(0.02)
        assert sweep.calls == 0

        poller.set_visible(True)
        await asyncio.sleep(0.02)
        assert sweep.calls == 1
        await poller.stop()


class TestRefresh:
    async def test_refresh_ignores_cooldown(self, clock):
        sweep = FakeSweep(clock)
        sweep.error = TransientStoreError("unreachable")
        poller = make_poller(sweep, clock)
        for _ in range(3):
            await poller.tick()
        assert poller.cooling_down is True

        sweep.error = None
        result = await poller.refresh()
        assert result.total_devices == 1
        assert poller.cooling_down is True

    async def test_refresh_failure_raises(self, clock):
        sweep = FakeSweep(clock)
        sweep.error = TransientStoreError("unreachable")
        poller = make_poller(sweep, clock)
        with pytest.raises(TransientStoreError):
            await poller.refresh()
        assert poller.retry_count == 0

    async def test_refresh_timeout(self, clock):
        sweep = FakeSweep(clock)
        sweep.hang = True
        poller = make_poller(sweep, clock)
        with pytest.raises(StoreTimeoutError):
            await poller.refresh()


class TestHttpSweepClient:
    def make_client(self, handler, **kwargs):
        return HttpSweepClient(
            "http://scanwatch.test/", transport=httpx.MockTransport(handler), **kwargs
        )

    async def test_success(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "status": "success",
                "data": {
                    "total_devices": 3,
                    "updated": 1,
                    "online": 2,
                    "offline": 1,
                    "went_online": 0,
                    "went_offline": 1,
                    "timestamp": "2024-01-15T10:00:00+00:00",
                },
            })

        client = self.make_client(handler, auth_token="abc", internal=True)
        result = await client()

        assert result.total_devices == 3
        assert result.went_offline == 1
        assert result.timestamp_ms == 1_705_312_800_000
        assert requests[0].url.path == "/devices/check-status"
        assert requests[0].headers["Authorization"] == "Bearer abc"
        assert requests[0].headers["X-Internal-Call"] == "true"

    async def test_unauthorized(self):
        client = self.make_client(lambda request: httpx.Response(401, json={"status": "error"}))
        with pytest.raises(AuthorizationError):
            await client()

    async def test_server_error(self):
        client = self.make_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(TransientStoreError):
            await client()

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        client = self.make_client(handler)
        with pytest.raises(StoreTimeoutError):
            await client()

    async def test_non_json_body(self):
        client = self.make_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(TransientStoreError):
            await client()

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = self.make_client(handler)
        with pytest.raises(TransientStoreError):
            await client()
