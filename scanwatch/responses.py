"""
Standardized Response Format
=============================
Wrappers for consistent API responses across all endpoints.
"""

from datetime import datetime, UTC

from fastapi.responses import JSONResponse


def success_response(data, status_code=200):
    """Wrap data in standard success envelope."""
    body = {
        "status": "success",
        "data": data,
        "generated_at": datetime.now(UTC).isoformat(),
    }
    return JSONResponse(content=body, status_code=status_code)


def error_response(message, status_code=400, reason=None):
    """Wrap error in standard error envelope."""
    body = {
        "status": "error",
        "message": message,
        "generated_at": datetime.now(UTC).isoformat(),
    }
    if reason is not None:
        body["reason"] = reason
    return JSONResponse(content=body, status_code=status_code)
