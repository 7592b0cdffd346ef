"""
Pytest configuration and fixtures for Scanwatch tests.
"""
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

# Configure before importing the app: no background tasks, in-memory store
os.environ["STORE_BACKEND"] = "memory"
os.environ["POLLER_ENABLED"] = "false"
os.environ["SCAN_CONSUMER_ENABLED"] = "false"
os.environ["CRON_SECRET"] = "test-secret"
os.environ["SCAN_MODE"] = "attendance"

from scanwatch import app, state
from scanwatch.errors import TransientStoreError
from scanwatch.store.memory import InMemoryEventStore

# Fixed epoch used as "now" throughout the tests (2024-01-15T10:00:00Z)
T0 = 1_705_312_800_000

CRON_SECRET = "test-secret"


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FlakyStore(InMemoryEventStore):
    """In-memory store whose operations can be made to fail on demand."""

    def __init__(self):
        super().__init__()
        self.fail_reads = False
        self.fail_writes = False
        self.fail_transactions = False
        self.batch_calls: list[dict] = []
        self.transaction_writes = 0

    async def read_devices(self):
        if self.fail_reads:
            raise TransientStoreError("read_devices failed: unavailable")
        return await super().read_devices()

    async def batch_update_device_status(self, updates):
        self.batch_calls.append(dict(updates))
        if self.fail_writes:
            raise TransientStoreError("batch_update_device_status failed: unavailable")
        await super().batch_update_device_status(updates)

    async def write_transaction(self, record):
        self.transaction_writes += 1
        if self.fail_transactions:
            raise TransientStoreError("write_transaction failed: unavailable")
        return await super().write_transaction(record)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return FlakyStore()


@pytest_asyncio.fixture
async def services(store, clock):
    """Wired services on a flaky in-memory store, registered for the routers."""
    built = state.build_services(store=store, clock=clock, mode="attendance")
    state.services = built
    yield built
    await built.poller.stop()
    await built.consumer.stop()
    await built.bus.drain()
    state.services = None


@pytest_asyncio.fixture
async def client(services):
    """Async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}
