"""
Scan Endpoints
==============
Scanner push ingest and processor statistics.

Ingest only appends the scan to the store. Deduplication and the
downstream record happen in the scan consumer, which sees the same
stream as every other subscriber.
"""

import logging

from fastapi import APIRouter, Depends, Request

from scanwatch import limiter
from scanwatch.config import INGEST_RATE_LIMIT, MAX_CLOCK_SKEW_MS
from scanwatch.errors import StoreTimeoutError, TransientStoreError
from scanwatch.models import ScanEvent, ScanMode
from scanwatch.responses import error_response, success_response
from scanwatch.routers.devices import client_ip
from scanwatch.schemas import ScanIn
from scanwatch.state import Services, get_services
from scanwatch.timeutil import iso_from_ms, resolve_observed_at

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/scans")
@limiter.limit(INGEST_RATE_LIMIT)
async def ingest_scan(request: Request, body: ScanIn, services: Services = Depends(get_services)):
    """Record a barcode scan and refresh the scanner's last-seen time."""
    barcode = body.barcode.strip()
    if not barcode:
        return error_response("Barcode is required", status_code=400)

    received = services.clock()
    event = ScanEvent(
        payload=barcode,
        device_id=body.device_id,
        observed_at_ms=resolve_observed_at(body.timestamp, received, MAX_CLOCK_SKEW_MS),
        mode=ScanMode.parse(body.mode, body.type),
        location=body.location or "",
    )

    try:
        scan_id = await services.store.publish_scan(event)
        # A scan proves the device is alive even between heartbeats
        await services.store.record_heartbeat(
            body.device_id, received, ip_address=client_ip(request), heartbeat=False
        )
    except (TransientStoreError, StoreTimeoutError) as e:
        logger.error(f"Error saving scan from {body.device_id}: {e}")
        return error_response("Failed to save scan", status_code=503)

    services.registry.observe(body.device_id, received)
    logger.info(f"Scan {barcode!r} from {body.device_id} ({event.mode.value})")

    return success_response({
        "message": "Scan received",
        "id": scan_id,
        "barcode": barcode,
        "device_id": body.device_id,
        "mode": event.mode.value,
        "timestamp": iso_from_ms(event.observed_at_ms),
    })


@router.get("/scans/processor")
async def processor_stats(services: Services = Depends(get_services)):
    return success_response(services.processor.stats())
