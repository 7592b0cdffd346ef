"""
Device Endpoints
================
Status sweep trigger, device listing and heartbeat ingest.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request

from scanwatch import limiter
from scanwatch.auth import sweep_credentials
from scanwatch.config import INGEST_RATE_LIMIT, MAX_CLOCK_SKEW_MS
from scanwatch.errors import AuthorizationError, StoreTimeoutError, TransientStoreError
from scanwatch.liveness import summarize_devices
from scanwatch.models import DeviceStatus
from scanwatch.responses import error_response, success_response
from scanwatch.schemas import HeartbeatIn
from scanwatch.state import Services, get_services
from scanwatch.timeutil import iso_from_ms, resolve_observed_at

logger = logging.getLogger(__name__)

router = APIRouter()


def client_ip(request: Request) -> str:
    """Best-effort source address, honouring proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


@router.post("/devices/check-status")
async def check_device_status(
    credentials: tuple[bool, Optional[str]] = Depends(sweep_credentials),
    services: Services = Depends(get_services),
):
    """
    Run one liveness sweep and write back only the devices that changed.
    Trusted callers send X-Internal-Call; schedulers send a bearer secret.
    """
    internal, token = credentials
    try:
        result = await services.classifier.trigger_sweep(internal=internal, auth_token=token)
    except AuthorizationError:
        return error_response("Unauthorized", status_code=401)
    except (TransientStoreError, StoreTimeoutError) as e:
        logger.error(f"Error checking device status: {e}")
        return error_response("Failed to check device status", status_code=500)

    data = result.to_dict()
    if result.total_devices == 0:
        data["message"] = "No devices found"
    else:
        data["message"] = (
            f"Checked {result.total_devices} devices, updated {result.updated} statuses "
            f"({result.went_online} online, {result.went_offline} offline)"
        )
    return success_response(data)


@router.get("/devices")
async def list_devices(services: Services = Depends(get_services)):
    """List devices with their stored status."""
    try:
        devices = await services.store.read_devices()
    except (TransientStoreError, StoreTimeoutError) as e:
        logger.error(f"Error fetching devices: {e}")
        return error_response("Failed to fetch devices", status_code=500)

    device_list = []
    for device in sorted(devices.values(), key=lambda d: d.device_id):
        status = device.status or DeviceStatus.OFFLINE
        device_list.append({
            "device_id": device.device_id,
            "status": status.value,
            "ip_address": device.ip_address,
            "last_seen": iso_from_ms(device.last_seen_at) if device.last_seen_at else None,
            "last_heartbeat": iso_from_ms(device.last_heartbeat_at) if device.last_heartbeat_at else None,
            "metadata": device.metadata,
        })

    online = sum(1 for d in device_list if d["status"] == DeviceStatus.ONLINE.value)
    return success_response({
        "devices": device_list,
        "total": len(device_list),
        "online": online,
        "offline": len(device_list) - online,
        "approximate": summarize_devices(devices.values(), services.clock()),
    })


@router.post("/heartbeat")
@limiter.limit(INGEST_RATE_LIMIT)
async def heartbeat(request: Request, body: HeartbeatIn, services: Services = Depends(get_services)):
    """Receive a heartbeat from a scanner. Creates the device on first contact."""
    received = services.clock()
    at = resolve_observed_at(body.timestamp, received, MAX_CLOCK_SKEW_MS)
    ip_address = client_ip(request)

    try:
        device = await services.store.record_heartbeat(
            body.device_id, at, ip_address=ip_address, metadata=body.metadata()
        )
    except (TransientStoreError, StoreTimeoutError) as e:
        logger.error(f"Error processing heartbeat from {body.device_id}: {e}")
        return error_response("Failed to process heartbeat", status_code=503)

    services.registry.observe(body.device_id, at, heartbeat=True, ip_address=ip_address)
    return success_response({
        "message": "Heartbeat received",
        "device_id": device.device_id,
        "timestamp": iso_from_ms(at),
    })
