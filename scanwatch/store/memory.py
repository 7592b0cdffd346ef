"""
In-Memory Event Store
=====================
Process-local store used for development and tests. Mirrors the document
layout of the hosted store: devices keyed by id, a bounded scan log,
transaction records.
"""

import asyncio
import uuid
from collections import deque
from dataclasses import replace
from typing import Optional

from scanwatch.config import MEMORY_SCAN_RETENTION
from scanwatch.errors import TransientStoreError
from scanwatch.models import Device, DeviceStatus, ScanEvent, ScanMode, TransactionRecord
from scanwatch.store.base import EventStore, Subscription


class InMemoryEventStore(EventStore):
    def __init__(self, max_scans: int = MEMORY_SCAN_RETENTION):
        self.devices: dict[str, Device] = {}
        self.scans: deque[ScanEvent] = deque(maxlen=max_scans)
        self.transactions: dict[str, TransactionRecord] = {}
        self._subscriptions: list[Subscription] = []
        self._lock = asyncio.Lock()

    async def read_devices(self) -> dict[str, Device]:
        async with self._lock:
            return {device_id: _copy(d) for device_id, d in self.devices.items()}

    async def batch_update_device_status(self, updates: dict[str, str]) -> None:
        async with self._lock:
            # Validate the whole batch before touching anything
            parsed = {}
            for device_id, status in updates.items():
                value = DeviceStatus.parse(status)
                if value is None:
                    raise TransientStoreError(f"Invalid status {status!r} for {device_id}")
                parsed[device_id] = value
            for device_id, value in parsed.items():
                device = self.devices.setdefault(device_id, Device(device_id=device_id))
                device.status = value

    def subscribe_scans(self) -> Subscription:
        subscription = Subscription(on_close=self._detach)
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def publish_scan(self, event: ScanEvent) -> str:
        async with self._lock:
            if not event.source_id:
                event = replace(event, source_id=uuid.uuid4().hex)
            self.scans.append(event)
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.push(event)
        return event.source_id

    async def write_transaction(self, record: TransactionRecord) -> str:
        async with self._lock:
            self.transactions[record.record_id] = record
            return record.record_id

    async def find_transactions(self, mode: ScanMode, payload: str, since_ms: int) -> list[TransactionRecord]:
        async with self._lock:
            return [
                r for r in self.transactions.values()
                if r.mode == mode and r.payload == payload and r.timestamp_ms >= since_ms
            ]

    async def record_heartbeat(
        self,
        device_id: str,
        at_ms: int,
        ip_address: Optional[str] = None,
        metadata: Optional[dict] = None,
        heartbeat: bool = True,
    ) -> Device:
        async with self._lock:
            device = self.devices.setdefault(device_id, Device(device_id=device_id))
            device.observe(at_ms, heartbeat=heartbeat)
            if ip_address:
                device.ip_address = ip_address
            if metadata:
                device.metadata.update({str(k): str(v) for k, v in metadata.items()})
            return _copy(device)


def _copy(device: Device) -> Device:
    return replace(device, metadata=dict(device.metadata))
