"""
SQL Event Store
===============
EventStore over `databases` + SQLAlchemy Core. Scan subscriptions poll the
scans table past a sequence cursor and push new rows to the subscriber.
"""

import asyncio
import json
import logging
import uuid
from typing import Optional

import databases
import sqlalchemy
from sqlalchemy import func

from scanwatch.config import DATABASE_URL, SCAN_POLL_INTERVAL_MS
from scanwatch.database import create_schema, devices, scans, transactions
from scanwatch.errors import TransientStoreError
from scanwatch.models import Device, DeviceStatus, ScanEvent, ScanMode, TransactionRecord
from scanwatch.store.base import EventStore, Subscription

logger = logging.getLogger(__name__)


class SqlEventStore(EventStore):
    def __init__(self, database_url: str = DATABASE_URL, poll_interval_ms: int = SCAN_POLL_INTERVAL_MS):
        self.database_url = database_url
        self.database = databases.Database(database_url)
        self.poll_interval_ms = poll_interval_ms
        self._pollers: dict[Subscription, asyncio.Task] = {}

    async def connect(self) -> None:
        create_schema(self.database_url)
        if not self.database.is_connected:
            await self.database.connect()

    async def disconnect(self) -> None:
        for subscription in list(self._pollers):
            subscription.close()
        if self.database.is_connected:
            await self.database.disconnect()

    async def _guard(self, awaitable, operation: str):
        try:
            return await awaitable
        except Exception as e:
            raise TransientStoreError(f"{operation} failed: {e}") from e

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    @staticmethod
    def _device_from_row(row) -> Device:
        return Device(
            device_id=row["device_id"],
            status=DeviceStatus.parse(row["status"]),
            last_heartbeat_at=int(row["last_heartbeat_at"] or 0),
            last_seen_at=int(row["last_seen_at"] or 0),
            ip_address=row["ip_address"] or "",
            metadata=json.loads(row["metadata_json"] or "{}"),
        )

    async def read_devices(self) -> dict[str, Device]:
        rows = await self._guard(self.database.fetch_all(sqlalchemy.select(devices)), "read_devices")
        return {row["device_id"]: self._device_from_row(row) for row in rows}

    async def batch_update_device_status(self, updates: dict[str, str]) -> None:
        for device_id, status in updates.items():
            if DeviceStatus.parse(status) is None:
                raise TransientStoreError(f"Invalid status {status!r} for {device_id}")

        async def _apply():
            async with self.database.transaction():
                for device_id, status in updates.items():
                    await self.database.execute(
                        devices.update().where(devices.c.device_id == device_id).values(status=status)
                    )

        await self._guard(_apply(), "batch_update_device_status")

    async def record_heartbeat(
        self,
        device_id: str,
        at_ms: int,
        ip_address: Optional[str] = None,
        metadata: Optional[dict] = None,
        heartbeat: bool = True,
    ) -> Device:
        async def _upsert() -> Device:
            async with self.database.transaction():
                row = await self.database.fetch_one(
                    sqlalchemy.select(devices).where(devices.c.device_id == device_id)
                )
                device = self._device_from_row(row) if row else Device(device_id=device_id)
                device.observe(at_ms, heartbeat=heartbeat)
                if ip_address:
                    device.ip_address = ip_address
                if metadata:
                    device.metadata.update({str(k): str(v) for k, v in metadata.items()})

                values = dict(
                    last_heartbeat_at=device.last_heartbeat_at,
                    last_seen_at=device.last_seen_at,
                    ip_address=device.ip_address,
                    metadata_json=json.dumps(device.metadata),
                )
                if row:
                    query = devices.update().where(devices.c.device_id == device_id).values(**values)
                else:
                    query = devices.insert().values(device_id=device_id, status=None, **values)
                await self.database.execute(query)
                return device

        return await self._guard(_upsert(), "record_heartbeat")

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    @staticmethod
    def _scan_from_row(row) -> ScanEvent:
        return ScanEvent(
            payload=row["payload"],
            device_id=row["device_id"],
            observed_at_ms=int(row["observed_at"] or 0),
            mode=ScanMode.parse(row["mode"]),
            source_id=row["id"],
            location=row["location"] or "",
        )

    async def publish_scan(self, event: ScanEvent) -> str:
        scan_id = event.source_id or uuid.uuid4().hex
        query = scans.insert().values(
            id=scan_id,
            payload=event.payload,
            device_id=event.device_id,
            observed_at=event.observed_at_ms,
            mode=event.mode.value,
            location=event.location,
        )
        await self._guard(self.database.execute(query), "publish_scan")
        return scan_id

    def subscribe_scans(self) -> Subscription:
        subscription = Subscription(on_close=self._detach)
        self._pollers[subscription] = asyncio.create_task(self._poll_scans(subscription))
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        task = self._pollers.pop(subscription, None)
        if task is not None:
            task.cancel()

    async def _poll_scans(self, subscription: Subscription):
        cursor = None
        while not subscription.closed:
            try:
                if cursor is None:
                    cursor = await self.database.fetch_val(sqlalchemy.select(func.max(scans.c.seq))) or 0
                rows = await self.database.fetch_all(
                    sqlalchemy.select(scans).where(scans.c.seq > cursor).order_by(scans.c.seq.asc())
                )
                for row in rows:
                    cursor = row["seq"]
                    subscription.push(self._scan_from_row(row))
            except Exception as e:
                logger.warning(f"Scan subscription poll failed: {e}")
            await asyncio.sleep(self.poll_interval_ms / 1000)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def write_transaction(self, record: TransactionRecord) -> str:
        query = transactions.insert().values(
            id=record.record_id,
            mode=record.mode.value,
            payload=record.payload,
            device_id=record.device_id,
            event_key=record.event_key,
            timestamp_ms=record.timestamp_ms,
            details_json=json.dumps(record.details),
        )
        await self._guard(self.database.execute(query), "write_transaction")
        return record.record_id

    async def find_transactions(self, mode: ScanMode, payload: str, since_ms: int) -> list[TransactionRecord]:
        query = sqlalchemy.select(transactions).where(
            transactions.c.mode == mode.value,
            transactions.c.payload == payload,
            transactions.c.timestamp_ms >= since_ms,
        )
        rows = await self._guard(self.database.fetch_all(query), "find_transactions")
        return [
            TransactionRecord(
                mode=ScanMode.parse(row["mode"]),
                payload=row["payload"],
                device_id=row["device_id"],
                timestamp_ms=int(row["timestamp_ms"]),
                event_key=row["event_key"] or "",
                details=json.loads(row["details_json"] or "{}"),
                record_id=row["id"],
            )
            for row in rows
        ]
