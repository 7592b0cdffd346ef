"""
Pydantic Models
===============
Request schemas for device-facing endpoints. Scanner firmware sends
camelCase keys; snake_case is accepted too.
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class DeviceBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class HeartbeatIn(DeviceBody):
    """Periodic liveness signal from a scanner."""
    device_id: str = Field(alias="deviceId", min_length=1, max_length=64)
    uptime: Optional[int] = None
    free_heap: Optional[int] = Field(default=None, alias="freeHeap")
    scan_count: Optional[int] = Field(default=None, alias="scanCount")
    version: Optional[str] = None
    timestamp: Optional[Union[int, float, str]] = None

    def metadata(self) -> dict:
        fields = {
            "uptime": self.uptime,
            "freeHeap": self.free_heap,
            "scanCount": self.scan_count,
            "version": self.version,
        }
        return {k: str(v) for k, v in fields.items() if v is not None}


class ScanIn(DeviceBody):
    """Single barcode scan pushed by a scanner."""
    barcode: str = Field(max_length=256)
    device_id: str = Field(alias="deviceId", min_length=1, max_length=64)
    timestamp: Optional[Union[int, float, str]] = None
    mode: Optional[str] = None
    type: Optional[str] = None
    location: Optional[str] = None


class VisibilityIn(BaseModel):
    visible: bool


class NetworkIn(BaseModel):
    online: bool
