"""
Adaptive Poller
===============
Periodically triggers the device status sweep through a request/response
boundary, pausing while backgrounded or offline and backing off on
failure.

    Idle -> Connecting -> Connected <-> Disconnected -> Backoff -> Connecting

Timeouts are kept apart from other failures: a lone timeout shortly after
a successful sweep does not flip the state to Disconnected, and never
counts toward the retry budget.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import httpx

from scanwatch.config import (
    BACKOFF_BASE_MS,
    BACKOFF_CAP_MS,
    BACKOFF_FACTOR,
    COOLDOWN_MS,
    INTERNAL_CALL_HEADER,
    MAX_CONSECUTIVE_FAILURES,
    OFFLINE_DEBOUNCE_MS,
    ONLINE_DEBOUNCE_MS,
    POLL_GRACE_MS,
    POLL_INTERVAL_MS,
    POLL_TIMEOUT_MS,
)
from scanwatch.errors import AuthorizationError, StoreTimeoutError, TransientStoreError
from scanwatch.events import POLLER_STATE_CHANGED, EventBus
from scanwatch.models import SweepResult
from scanwatch.timeutil import iso_from_ms, now_ms

logger = logging.getLogger(__name__)

SweepCall = Callable[[], Awaitable[SweepResult]]


class PollerState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    BACKOFF = "backoff"


@dataclass
class BackoffPolicy:
    base_ms: int = BACKOFF_BASE_MS
    factor: float = BACKOFF_FACTOR
    cap_ms: int = BACKOFF_CAP_MS
    max_failures: int = MAX_CONSECUTIVE_FAILURES
    cooldown_ms: int = COOLDOWN_MS

    def delay_for(self, retry_count: int) -> int:
        """Delay before retry number `retry_count` (1-based)."""
        exponent = max(0, retry_count - 1)
        return int(min(self.base_ms * self.factor ** exponent, self.cap_ms))


class AdaptivePoller:
    def __init__(
        self,
        sweep: SweepCall,
        interval_ms: int = POLL_INTERVAL_MS,
        timeout_ms: int = POLL_TIMEOUT_MS,
        grace_ms: int = POLL_GRACE_MS,
        policy: Optional[BackoffPolicy] = None,
        bus: Optional[EventBus] = None,
        clock: Callable[[], int] = now_ms,
        online_debounce_ms: int = ONLINE_DEBOUNCE_MS,
        offline_debounce_ms: int = OFFLINE_DEBOUNCE_MS,
    ):
        self._sweep = sweep
        self.interval_ms = interval_ms
        self.timeout_ms = timeout_ms
        self.grace_ms = grace_ms
        self.policy = policy or BackoffPolicy()
        self.bus = bus
        self._clock = clock
        self.online_debounce_ms = online_debounce_ms
        self.offline_debounce_ms = offline_debounce_ms

        self.state = PollerState.IDLE
        self.retry_count = 0
        self.attempts = 0
        self.last_success_ms: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_result: Optional[SweepResult] = None
        self.cooldown_until: Optional[int] = None
        self.visible = True
        self.network_online = True

        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._network_handle: Optional[asyncio.TimerHandle] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def cooling_down(self) -> bool:
        return self.cooldown_until is not None and self._clock() < self.cooldown_until

    def _set_state(self, state: PollerState) -> None:
        if state == self.state:
            return
        logger.debug(f"Poller {self.state.value} -> {state.value}")
        self.state = state
        if self.bus is not None:
            self.bus.publish(POLLER_STATE_CHANGED, state)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def tick(self) -> Optional[int]:
        """Run one scheduling step.

        Returns milliseconds until the next step, or None when polling is
        paused (backgrounded or offline) until something wakes it.
        """
        if not self.visible or not self.network_online:
            return None

        if self.cooldown_until is not None:
            remaining = self.cooldown_until - self._clock()
            if remaining > 0:
                return remaining
            logger.info("Cool-down elapsed, resuming normal polling")
            self.cooldown_until = None
            self.retry_count = 0

        try:
            await self._attempt()
        except StoreTimeoutError:
            return self.interval_ms
        except Exception:
            return self._on_failure()
        return self.interval_ms

    async def _attempt(self) -> SweepResult:
        self.attempts += 1
        self._set_state(PollerState.CONNECTING)
        try:
            result = await asyncio.wait_for(self._sweep(), timeout=self.timeout_ms / 1000)
        except (asyncio.TimeoutError, StoreTimeoutError) as e:
            self.last_error = "timeout"
            recent = (
                self.last_success_ms is not None
                and self._clock() - self.last_success_ms < self.grace_ms
            )
            if recent:
                logger.info(f"Sweep timed out after {self.timeout_ms}ms, recent success keeps state")
                self._set_state(PollerState.CONNECTED)
            else:
                logger.warning(f"Sweep timed out after {self.timeout_ms}ms")
                self._set_state(PollerState.DISCONNECTED)
            if isinstance(e, StoreTimeoutError):
                raise
            raise StoreTimeoutError(f"Sweep timed out after {self.timeout_ms}ms") from e
        except Exception as e:
            self.last_error = str(e) or type(e).__name__
            self._set_state(PollerState.DISCONNECTED)
            logger.warning(f"Sweep failed: {self.last_error}")
            raise

        self.retry_count = 0
        self.last_error = None
        self.last_success_ms = self._clock()
        self.last_result = result
        self._set_state(PollerState.CONNECTED)
        if result.updated:
            logger.info(
                f"Device status updates: {result.updated} devices "
                f"({result.online} online, {result.offline} offline)"
            )
        return result

    def _on_failure(self) -> int:
        self.retry_count += 1
        self._set_state(PollerState.BACKOFF)
        if self.retry_count >= self.policy.max_failures:
            self.cooldown_until = self._clock() + self.policy.cooldown_ms
            logger.error(
                f"{self.retry_count} consecutive sweep failures, "
                f"pausing polling for {self.policy.cooldown_ms}ms"
            )
            return self.policy.cooldown_ms
        delay = self.policy.delay_for(self.retry_count)
        logger.warning(
            f"Retrying sweep in {delay}ms (attempt {self.retry_count}/{self.policy.max_failures})"
        )
        return delay

    async def _run(self):
        while True:
            self._wake.clear()
            delay = await self.tick()
            try:
                if delay is None:
                    await self._wake.wait()
                else:
                    await asyncio.wait_for(self._wake.wait(), timeout=delay / 1000)
            except asyncio.TimeoutError:
                pass

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Poller started (checking every {self.interval_ms}ms)")
        return self._task

    async def stop(self) -> None:
        if self._network_handle is not None:
            self._network_handle.cancel()
            self._network_handle = None
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_state(PollerState.IDLE)

    def _wake_up(self) -> None:
        if self._wake is not None:
            self._wake.set()

    # ------------------------------------------------------------------
    # Host signals
    # ------------------------------------------------------------------

    def set_visible(self, visible: bool) -> None:
        """Foreground resumes with an immediate out-of-cycle check."""
        if visible == self.visible:
            return
        self.visible = visible
        if visible:
            logger.info("Host visible, resuming polling")
            self._wake_up()
        else:
            logger.info("Host hidden, pausing polling")

    def set_network(self, online: bool) -> None:
        loop = asyncio.get_running_loop()
        if self._network_handle is not None:
            self._network_handle.cancel()
        if online:
            self._network_handle = loop.call_later(self.online_debounce_ms / 1000, self._on_network_online)
        else:
            self._set_state(PollerState.DISCONNECTED)
            self._network_handle = loop.call_later(self.offline_debounce_ms / 1000, self._on_network_offline)

    def _on_network_online(self) -> None:
        self._network_handle = None
        logger.info("Network restored, checking device status")
        self.network_online = True
        self.retry_count = 0
        self.cooldown_until = None
        if self.running:
            self._wake_up()
        else:
            self.start()

    def _on_network_offline(self) -> None:
        self._network_handle = None
        logger.warning("Network lost, halting polling")
        self.network_online = False
        self._wake_up()

    # ------------------------------------------------------------------
    # Manual refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> SweepResult:
        """Immediate sweep that ignores backoff and cool-down.

        Raises on failure; the background loop's retry state is untouched.
        """
        try:
            result = await asyncio.wait_for(self._sweep(), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise StoreTimeoutError(f"Refresh timed out after {self.timeout_ms}ms") from e
        self.last_result = result
        self.last_success_ms = self._clock()
        return result

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "running": self.running,
            "visible": self.visible,
            "network_online": self.network_online,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "cooling_down": self.cooling_down,
            "last_error": self.last_error,
            "last_success": iso_from_ms(self.last_success_ms) if self.last_success_ms else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }


class HttpSweepClient:
    """Calls a remote `/devices/check-status` endpoint as a SweepCall."""

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        internal: bool = True,
        timeout_ms: int = POLL_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = f"{base_url.rstrip('/')}/devices/check-status"
        self.auth_token = auth_token
        self.internal = internal
        self.timeout_ms = timeout_ms
        self.transport = transport

    async def __call__(self) -> SweepResult:
        headers = {"Content-Type": "application/json"}
        if self.internal:
            headers[INTERNAL_CALL_HEADER] = "true"
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_ms / 1000, transport=self.transport) as client:
                response = await client.post(self.url, headers=headers)
        except httpx.TimeoutException as e:
            raise StoreTimeoutError(f"Status check timed out: {e}") from e
        except httpx.HTTPError as e:
            raise TransientStoreError(f"Status check failed: {e}") from e

        if response.status_code == 401:
            raise AuthorizationError("Status check rejected (401)")
        if response.status_code >= 400:
            raise TransientStoreError(
                f"Status check returned {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
            data = body.get("data") or {}
            return SweepResult.from_dict(data)
        except (ValueError, AttributeError, TypeError) as e:
            raise TransientStoreError(f"Malformed status check response: {response.text[:200]}") from e
