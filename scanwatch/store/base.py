"""
Event Store Contract
====================
Read/write boundary to the eventually-consistent document store that
holds devices, scans and transaction records.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, TypeVar

from scanwatch.errors import StoreTimeoutError
from scanwatch.models import Device, ScanEvent, ScanMode, TransactionRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


async def with_deadline(awaitable: Awaitable[T], timeout_ms: int, operation: str) -> T:
    """Await `awaitable`, raising StoreTimeoutError once `timeout_ms` elapses."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        raise StoreTimeoutError(f"{operation} timed out after {timeout_ms}ms") from exc


class Subscription:
    """Push-based stream of scan events.

    Iterate with `async for`. `close()` is the cancellation handle: it
    ends iteration and detaches from the store.
    """

    def __init__(self, on_close: Optional[Callable[["Subscription"], None]] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self.closed = False

    def push(self, event: ScanEvent) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSED)
        if self._on_close is not None:
            self._on_close(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ScanEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()


class EventStore(ABC):
    """Adapters raise TransientStoreError for backend failures."""

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def read_devices(self) -> dict[str, Device]:
        ...

    @abstractmethod
    async def batch_update_device_status(self, updates: dict[str, str]) -> None:
        """Apply `{device_id: status}` all-or-nothing."""

    @abstractmethod
    def subscribe_scans(self) -> Subscription:
        ...

    @abstractmethod
    async def write_transaction(self, record: TransactionRecord) -> str:
        ...

    @abstractmethod
    async def find_transactions(self, mode: ScanMode, payload: str, since_ms: int) -> list[TransactionRecord]:
        ...

    @abstractmethod
    async def record_heartbeat(
        self,
        device_id: str,
        at_ms: int,
        ip_address: Optional[str] = None,
        metadata: Optional[dict] = None,
        heartbeat: bool = True,
    ) -> Device:
        """Create the device on first signal and move its timestamps forward."""

    @abstractmethod
    async def publish_scan(self, event: ScanEvent) -> str:
        """Append a scan and push it to live subscriptions. Returns its id."""
