"""
Health Check Router
===================
Simple health check endpoint for load balancers.
"""

from datetime import datetime, UTC

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "healthy", "timestamp": datetime.now(UTC).isoformat()}
