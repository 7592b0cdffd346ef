"""
Device Liveness
===============
Turns sparse, out-of-order heartbeat timestamps into online/offline
states and writes back only the devices whose state changed.
"""

import asyncio
import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

from scanwatch.auth import authorize_sweep
from scanwatch.config import OFFLINE_TIMEOUT_MS, STORE_TIMEOUT_MS, SUMMARY_OFFLINE_TIMEOUT_MS
from scanwatch.events import DEVICE_STATUS_CHANGED, EventBus
from scanwatch.models import Device, DeviceStatus, StatusTransition, SweepResult
from scanwatch.store.base import EventStore, with_deadline
from scanwatch.timeutil import normalize_timestamp, now_ms

logger = logging.getLogger(__name__)


def classify(
    last_heartbeat_at: Any,
    last_seen_at: Any,
    now: int,
    timeout_ms: int = OFFLINE_TIMEOUT_MS,
) -> DeviceStatus:
    """Online iff the most recent signal is strictly younger than `timeout_ms`.

    Timestamps may be seconds, milliseconds or strings. A device that never
    reported is offline.
    """
    most_recent = max(normalize_timestamp(last_heartbeat_at), normalize_timestamp(last_seen_at))
    if most_recent == 0 or now - most_recent >= timeout_ms:
        return DeviceStatus.OFFLINE
    return DeviceStatus.ONLINE


def compute_transitions(
    devices: Iterable[Device],
    now: int,
    timeout_ms: int = OFFLINE_TIMEOUT_MS,
) -> list[StatusTransition]:
    """Transitions for devices whose computed status differs from the stored one."""
    transitions = []
    for device in devices:
        current = classify(device.last_heartbeat_at, device.last_seen_at, now, timeout_ms)
        if current != device.status:
            transitions.append(StatusTransition(
                device_id=device.device_id,
                previous=device.status,
                current=current,
                most_recent_at=device.most_recent_at,
                at_ms=now,
            ))
    return transitions


def summarize_devices(
    devices: Iterable[Device],
    now: int,
    timeout_ms: int = SUMMARY_OFFLINE_TIMEOUT_MS,
) -> dict:
    """Approximate online/offline counts for listings.

    Uses the looser presentation window. Never written back as status.
    """
    devices = list(devices)
    online = sum(
        1 for d in devices
        if classify(d.last_heartbeat_at, d.last_seen_at, now, timeout_ms) == DeviceStatus.ONLINE
    )
    return {"total": len(devices), "online": online, "offline": len(devices) - online}


class DeviceRegistry:
    """Process-wide view of the device table, shared by the classifier and
    the scan processor.

    Signals are merged "latest timestamp wins": a late signal carrying an
    older timestamp never moves a device backwards.
    """

    def __init__(self):
        self._devices: dict[str, Device] = {}
        self._lock = threading.Lock()

    def observe(
        self,
        device_id: str,
        at_ms: int,
        heartbeat: bool = False,
        ip_address: Optional[str] = None,
    ) -> Device:
        with self._lock:
            device = self._devices.setdefault(device_id, Device(device_id=device_id))
            device.observe(at_ms, heartbeat=heartbeat)
            if ip_address:
                device.ip_address = ip_address
            return replace(device, metadata=dict(device.metadata))

    def merge(self, snapshot: dict[str, Device]) -> list[Device]:
        """Fold a store snapshot in and return the merged devices.

        Stored status is kept as reported by the store so transitions are
        computed against what is actually persisted.
        """
        merged = []
        with self._lock:
            for device_id, stored in snapshot.items():
                known = self._devices.get(device_id)
                if known is None:
                    known = replace(stored, metadata=dict(stored.metadata))
                    self._devices[device_id] = known
                else:
                    known.last_heartbeat_at = max(known.last_heartbeat_at, stored.last_heartbeat_at)
                    known.last_seen_at = max(known.last_seen_at, stored.last_seen_at)
                    known.status = stored.status
                    known.ip_address = stored.ip_address or known.ip_address
                    known.metadata.update(stored.metadata)
                merged.append(replace(known, metadata=dict(known.metadata)))
        return merged

    def set_status(self, device_id: str, status: DeviceStatus) -> None:
        with self._lock:
            if device_id in self._devices:
                self._devices[device_id].status = status

    def get(self, device_id: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(device_id)
            return replace(device, metadata=dict(device.metadata)) if device else None

    def snapshot(self) -> list[Device]:
        with self._lock:
            return [replace(d, metadata=dict(d.metadata)) for d in self._devices.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)


class LivenessClassifier:
    def __init__(
        self,
        store: EventStore,
        registry: DeviceRegistry,
        bus: Optional[EventBus] = None,
        clock: Callable[[], int] = now_ms,
        offline_timeout_ms: int = OFFLINE_TIMEOUT_MS,
        store_timeout_ms: int = STORE_TIMEOUT_MS,
    ):
        self.store = store
        self.registry = registry
        self.bus = bus
        self._clock = clock
        self.offline_timeout_ms = offline_timeout_ms
        self.store_timeout_ms = store_timeout_ms
        self._lock = asyncio.Lock()

    async def sweep(self) -> SweepResult:
        """One full pass over all known devices.

        Sweeps are serialized so overlapping triggers never write or announce
        the same transition twice. Store failures propagate; nothing is
        assumed changed when they do.
        """
        async with self._lock:
            return await self._sweep()

    async def _sweep(self) -> SweepResult:
        snapshot = await with_deadline(self.store.read_devices(), self.store_timeout_ms, "read_devices")
        now = self._clock()
        devices = self.registry.merge(snapshot)
        transitions = compute_transitions(devices, now, self.offline_timeout_ms)

        if transitions:
            updates = {t.device_id: t.current.value for t in transitions}
            await with_deadline(
                self.store.batch_update_device_status(updates),
                self.store_timeout_ms,
                "batch_update_device_status",
            )
            for t in transitions:
                self.registry.set_status(t.device_id, t.current)
                previous = t.previous.value if t.previous else "unknown"
                age = f"{now - t.most_recent_at}ms ago" if t.most_recent_at else "never"
                logger.info(f"Device {t.device_id}: {previous} -> {t.current.value} (last signal {age})")
                if self.bus is not None:
                    self.bus.publish(DEVICE_STATUS_CHANGED, t)

        statuses = {d.device_id: d.status for d in devices}
        statuses.update({t.device_id: t.current for t in transitions})
        online = sum(1 for s in statuses.values() if s == DeviceStatus.ONLINE)

        result = SweepResult(
            total_devices=len(devices),
            updated=len(transitions),
            online=online,
            offline=len(devices) - online,
            timestamp_ms=now,
            went_online=sum(1 for t in transitions if t.current == DeviceStatus.ONLINE),
            went_offline=sum(1 for t in transitions if t.current == DeviceStatus.OFFLINE),
            transitions=transitions,
        )
        logger.debug(
            f"Checked {result.total_devices} devices, updated {result.updated} "
            f"({result.online} online, {result.offline} offline)"
        )
        return result

    async def trigger_sweep(self, internal: bool = False, auth_token: Optional[str] = None) -> SweepResult:
        """Authorize the caller, then sweep. Unauthorized callers never reach the store."""
        authorize_sweep(internal=internal, auth_token=auth_token)
        return await self.sweep()
