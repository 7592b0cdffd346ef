"""
Scanwatch App Package
=====================
FastAPI app factory with lifespan, CORS, and router registration.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from scanwatch import config

logger = logging.getLogger(__name__)

# Rate limiter for device ingest, keyed by client IP
limiter = Limiter(key_func=get_remote_address)

from scanwatch import state  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = state.build_services()
    state.services = services
    await services.start(poller=config.POLLER_ENABLED, consumer=config.SCAN_CONSUMER_ENABLED)
    logger.info(
        f"Started with {type(services.store).__name__}, "
        f"scan mode {services.processor.mode.value}"
    )
    yield
    await services.stop()
    state.services = None


app = FastAPI(
    title="Scanwatch",
    description="Scanner liveness tracking and scan deduplication API",
    version="0.1.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
from scanwatch.routers import health, devices, scans, poller  # noqa: E402

app.include_router(health.router)
app.include_router(devices.router)
app.include_router(scans.router)
app.include_router(poller.router)
