"""
Poller Control Endpoints
========================
Lets a dashboard host report visibility and connectivity, read the
poller state and force an immediate status check.
"""

import logging

from fastapi import APIRouter, Depends

from scanwatch.errors import AuthorizationError, ScanwatchError
from scanwatch.responses import error_response, success_response
from scanwatch.schemas import NetworkIn, VisibilityIn
from scanwatch.state import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/poller")


@router.get("/status")
async def poller_status(services: Services = Depends(get_services)):
    return success_response(services.poller.status())


@router.post("/refresh")
async def refresh(services: Services = Depends(get_services)):
    """Manual refresh. Bypasses backoff and cool-down."""
    try:
        result = await services.poller.refresh()
    except AuthorizationError:
        return error_response("Unauthorized", status_code=401)
    except ScanwatchError as e:
        logger.error(f"Manual refresh failed: {e}")
        return error_response("Failed to check device status", status_code=500)
    return success_response(result.to_dict())


@router.post("/visibility")
async def set_visibility(body: VisibilityIn, services: Services = Depends(get_services)):
    services.poller.set_visible(body.visible)
    return success_response(services.poller.status())


@router.post("/network")
async def set_network(body: NetworkIn, services: Services = Depends(get_services)):
    """Connectivity change. Applied after a short debounce."""
    services.poller.set_network(body.online)
    return success_response(services.poller.status())
