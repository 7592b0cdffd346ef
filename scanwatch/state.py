"""
Shared Service State
====================
One explicitly owned container for the store, the shared device registry
and dedup structures, and the components wired on top of them. Built by
the app lifespan, or directly by tests with a fake clock and store.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from scanwatch import config
from scanwatch.dedup import DedupCache, Debouncer, run_sweeper
from scanwatch.events import EventBus
from scanwatch.liveness import DeviceRegistry, LivenessClassifier
from scanwatch.models import ScanMode
from scanwatch.poller import AdaptivePoller
from scanwatch.processor import HANDLERS, ScanConsumer, ScanEventProcessor
from scanwatch.store.base import EventStore
from scanwatch.timeutil import now_ms

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: EventStore
    registry: DeviceRegistry
    dedup: DedupCache
    debouncer: Debouncer
    bus: EventBus
    classifier: LivenessClassifier
    processor: ScanEventProcessor
    consumer: ScanConsumer
    poller: AdaptivePoller
    clock: Callable[[], int] = now_ms
    _tasks: list = field(default_factory=list)

    async def start(self, poller: bool = True, consumer: bool = True) -> None:
        await self.store.connect()
        self._tasks.append(asyncio.create_task(run_sweeper(self.dedup)))
        if consumer:
            self.consumer.start()
        if poller:
            self.poller.start()

    async def stop(self) -> None:
        await self.poller.stop()
        await self.consumer.stop()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.bus.drain()
        await self.store.disconnect()


def make_store(backend: Optional[str] = None) -> EventStore:
    backend = (backend or config.STORE_BACKEND).lower()
    if backend == "sql":
        from scanwatch.store.sql import SqlEventStore
        return SqlEventStore(config.DATABASE_URL)
    if backend != "memory":
        logger.warning(f"Unknown STORE_BACKEND {backend!r}, using memory")
    from scanwatch.store.memory import InMemoryEventStore
    return InMemoryEventStore()


def build_services(
    store: Optional[EventStore] = None,
    clock: Callable[[], int] = now_ms,
    mode: Optional[str] = None,
) -> Services:
    store = store or make_store()
    bus = EventBus()
    registry = DeviceRegistry()
    dedup = DedupCache(clock=clock)
    debouncer = Debouncer(clock=clock)
    classifier = LivenessClassifier(store, registry, bus=bus, clock=clock)
    handler = HANDLERS[ScanMode(mode or config.SCAN_MODE)]()
    processor = ScanEventProcessor(
        store, dedup, debouncer, handler, bus=bus, registry=registry, clock=clock
    )
    return Services(
        store=store,
        registry=registry,
        dedup=dedup,
        debouncer=debouncer,
        bus=bus,
        classifier=classifier,
        processor=processor,
        consumer=ScanConsumer(store, processor),
        poller=AdaptivePoller(classifier.sweep, bus=bus, clock=clock),
        clock=clock,
    )


# Set by the app lifespan (or tests); read by routers via get_services()
services: Optional[Services] = None


def get_services() -> Services:
    if services is None:
        raise RuntimeError("Services not initialised")
    return services
