"""
Scan Event Processor
====================
Consumes the live scan stream and commits at most one downstream record
per logical scan.

Per event, in order:
    1. mode filter          - scans for another consumer are dropped
    2. recency filter       - replayed history older than FRESHNESS_WINDOW_MS
    3. debounce             - same payload committed within DEBOUNCE_WINDOW_MS
    4. dedup cache          - derived event key or (device, payload) still live
    5. domain validation    - rejected with a message, dedup keys released
    6. business duplicate   - rejected with a message, dedup keys kept
    7. commit               - write record, mark debounce, notify observers
    8. settle               - busy flag cleared after PROCESSING_SETTLE_MS

Silent discards (1-4) are terminal and never retried.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from scanwatch.config import (
    BUSINESS_TIMEZONE,
    FRESHNESS_WINDOW_MS,
    MIN_ATTENDANCE_PAYLOAD_LENGTH,
    PROCESSING_SETTLE_MS,
    STORE_TIMEOUT_MS,
)
from scanwatch.dedup import DedupCache, Debouncer
from scanwatch.errors import DuplicateError, StoreTimeoutError, TransientStoreError, ValidationError
from scanwatch.events import SCAN_PROCESSED, SCAN_REJECTED, EventBus
from scanwatch.liveness import DeviceRegistry
from scanwatch.models import ScanEvent, ScanMode, TransactionRecord
from scanwatch.store.base import EventStore, with_deadline
from scanwatch.timeutil import iso_from_ms, now_ms, start_of_day_ms

logger = logging.getLogger(__name__)


class ScanOutcome(str, Enum):
    COMMITTED = "committed"
    DISCARDED = "discarded"   # silent: mode, stale, debounced, duplicate
    REJECTED = "rejected"     # user-visible: invalid or already recorded
    FAILED = "failed"         # store failure, retry allowed


@dataclass
class ScanResult:
    outcome: ScanOutcome
    event: ScanEvent
    reason: str = ""
    message: str = ""
    record_id: Optional[str] = None

    @property
    def committed(self) -> bool:
        return self.outcome == ScanOutcome.COMMITTED

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "reason": self.reason,
            "message": self.message,
            "record_id": self.record_id,
            "payload": self.event.payload,
            "device_id": self.event.device_id,
            "observed_at": iso_from_ms(self.event.observed_at_ms),
        }


# ----------------------------------------------------------------------
# Mode-specific business rules
# ----------------------------------------------------------------------

class ScanHandler(ABC):
    mode: ScanMode

    @abstractmethod
    def validate(self, payload: str) -> str:
        """Return the normalized payload or raise ValidationError."""

    async def check_duplicate(self, store: EventStore, payload: str, now: int) -> None:
        """Raise DuplicateError if the business object already has a record."""

    @abstractmethod
    def build_record(self, event: ScanEvent, payload: str, now: int) -> TransactionRecord:
        ...


class AttendanceHandler(ScanHandler):
    """Attendee check-in. The payload is the attendee id (NIM)."""
    mode = ScanMode.ATTENDANCE

    def __init__(
        self,
        min_length: int = MIN_ATTENDANCE_PAYLOAD_LENGTH,
        timezone: str = BUSINESS_TIMEZONE,
        store_timeout_ms: int = STORE_TIMEOUT_MS,
    ):
        self.min_length = min_length
        self.timezone = timezone
        self.store_timeout_ms = store_timeout_ms

    def validate(self, payload: str) -> str:
        nim = (payload or "").strip()
        if not nim or len(nim) < self.min_length:
            raise ValidationError(f"Invalid attendee id: {nim!r}")
        return nim

    async def check_duplicate(self, store: EventStore, payload: str, now: int) -> None:
        since = start_of_day_ms(now, self.timezone)
        existing = await with_deadline(
            store.find_transactions(self.mode, payload, since),
            self.store_timeout_ms,
            "find_transactions",
        )
        if existing:
            first = min(existing, key=lambda r: r.timestamp_ms)
            raise DuplicateError(f"{payload} already checked in today at {iso_from_ms(first.timestamp_ms)}")

    def build_record(self, event: ScanEvent, payload: str, now: int) -> TransactionRecord:
        return TransactionRecord(
            mode=self.mode,
            payload=payload,
            device_id=event.device_id,
            timestamp_ms=now,
            event_key=event.event_key,
            details={"scanned": True, "location": event.location},
        )


class InventoryHandler(ScanHandler):
    """Inbound stock movement, one unit per scan."""
    mode = ScanMode.INVENTORY

    def validate(self, payload: str) -> str:
        barcode = (payload or "").strip()
        if not barcode:
            raise ValidationError("Empty barcode")
        return barcode

    def build_record(self, event: ScanEvent, payload: str, now: int) -> TransactionRecord:
        return TransactionRecord(
            mode=self.mode,
            payload=payload,
            device_id=event.device_id,
            timestamp_ms=now,
            event_key=event.event_key,
            details={"type": "in", "quantity": 1, "location": event.location},
        )


HANDLERS = {
    ScanMode.ATTENDANCE: AttendanceHandler,
    ScanMode.INVENTORY: InventoryHandler,
}


# ----------------------------------------------------------------------
# Processor
# ----------------------------------------------------------------------

class ScanEventProcessor:
    def __init__(
        self,
        store: EventStore,
        dedup: DedupCache,
        debouncer: Debouncer,
        handler: ScanHandler,
        bus: Optional[EventBus] = None,
        registry: Optional[DeviceRegistry] = None,
        clock: Callable[[], int] = now_ms,
        freshness_ms: int = FRESHNESS_WINDOW_MS,
        settle_ms: int = PROCESSING_SETTLE_MS,
        store_timeout_ms: int = STORE_TIMEOUT_MS,
    ):
        self.store = store
        self.dedup = dedup
        self.debouncer = debouncer
        self.handler = handler
        self.bus = bus
        self.registry = registry
        self._clock = clock
        self.freshness_ms = freshness_ms
        self.settle_ms = settle_ms
        self.store_timeout_ms = store_timeout_ms

        self.busy = False
        self.processed_count = 0
        self.last_processed: Optional[str] = None
        self._settle_handle: Optional[asyncio.TimerHandle] = None

    @property
    def mode(self) -> ScanMode:
        return self.handler.mode

    def _discard(self, event: ScanEvent, reason: str) -> ScanResult:
        logger.debug(f"Discarded scan {event.payload!r} from {event.device_id}: {reason}")
        return ScanResult(ScanOutcome.DISCARDED, event, reason=reason)

    def _reject(self, event: ScanEvent, outcome: ScanOutcome, reason: str, message: str) -> ScanResult:
        result = ScanResult(outcome, event, reason=reason, message=message)
        if self.bus is not None:
            self.bus.publish(SCAN_REJECTED, result)
        return result

    async def process(self, event: ScanEvent) -> ScanResult:
        now = self._clock()

        if event.mode != self.mode:
            return self._discard(event, "mode_mismatch")

        if now - event.observed_at_ms >= self.freshness_ms:
            return self._discard(event, "stale")

        if self.registry is not None:
            self.registry.observe(event.device_id, event.observed_at_ms)

        if self.debouncer.is_debounced(event.payload):
            return self._discard(event, "debounced")

        # Both keys are claimed before the first await so a concurrent
        # consumer delivering the same scan sees them as live.
        if self.dedup.seen(event.event_key) or not self.dedup.claim(event.payload_key):
            return self._discard(event, "duplicate")
        self.dedup.mark(event.event_key)

        self.busy = True
        try:
            return await self._handle(event, now)
        finally:
            self._schedule_settle()

    async def _handle(self, event: ScanEvent, now: int) -> ScanResult:
        try:
            payload = self.handler.validate(event.payload)
        except ValidationError as e:
            self._release(event)
            logger.info(f"Rejected scan from {event.device_id}: {e}")
            return self._reject(event, ScanOutcome.REJECTED, "invalid", str(e))

        try:
            await self.handler.check_duplicate(self.store, payload, now)
            record = self.handler.build_record(event, payload, now)
            record_id = await with_deadline(
                self.store.write_transaction(record), self.store_timeout_ms, "write_transaction"
            )
        except DuplicateError as e:
            logger.info(f"Rejected scan from {event.device_id}: {e}")
            return self._reject(event, ScanOutcome.REJECTED, "already_recorded", str(e))
        except (TransientStoreError, StoreTimeoutError) as e:
            self._release(event)
            logger.warning(f"Store failure while committing {payload!r}: {e}")
            return self._reject(event, ScanOutcome.FAILED, "store_error", str(e))

        self.debouncer.touch(event.payload)
        self.processed_count += 1
        self.last_processed = payload
        logger.info(f"Committed {self.mode.value} scan {payload!r} from {event.device_id} as {record_id}")

        result = ScanResult(ScanOutcome.COMMITTED, event, record_id=record_id)
        if self.bus is not None:
            self.bus.publish(SCAN_PROCESSED, result)
        return result

    def _release(self, event: ScanEvent) -> None:
        self.dedup.release(event.event_key)
        self.dedup.release(event.payload_key)

    def _schedule_settle(self) -> None:
        if self._settle_handle is not None:
            self._settle_handle.cancel()
        loop = asyncio.get_running_loop()
        self._settle_handle = loop.call_later(self.settle_ms / 1000, self._settle)

    def _settle(self) -> None:
        self.busy = False
        self._settle_handle = None

    def stats(self) -> dict:
        return {
            "mode": self.mode.value,
            "busy": self.busy,
            "processed_count": self.processed_count,
            "last_processed": self.last_processed,
            "live_dedup_entries": len(self.dedup),
        }


class ScanConsumer:
    """Drives a processor from the store's live scan subscription."""

    def __init__(self, store: EventStore, processor: ScanEventProcessor):
        self.store = store
        self.processor = processor
        self._task: Optional[asyncio.Task] = None
        self._subscription = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def run(self):
        self._subscription = self.store.subscribe_scans()
        logger.info(f"Scan consumer started in {self.processor.mode.value} mode")
        async with self._subscription as subscription:
            async for event in subscription:
                try:
                    await self.processor.process(event)
                except Exception as e:
                    logger.exception(f"Unexpected error processing scan {event.payload!r}: {e}")

    async def stop(self):
        if self._subscription is not None:
            self._subscription.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
