"""
Domain Models
=============
Devices, scan events and the records produced from them.
"""

import hashlib
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from scanwatch.timeutil import iso_from_ms, normalize_timestamp


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"

    @classmethod
    def parse(cls, value: Any) -> Optional["DeviceStatus"]:
        """Stored status or None when the stored value is missing or unknown."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


class ScanMode(str, Enum):
    INVENTORY = "inventory"
    ATTENDANCE = "attendance"

    @classmethod
    def parse(cls, mode: Any = None, scan_type: Any = None) -> "ScanMode":
        """Resolve the consumption mode from a `mode` field or a legacy `type` tag."""
        for candidate in (mode, scan_type):
            text = str(candidate or "").strip().lower()
            if not text:
                continue
            if text.endswith("_scan"):
                text = text[: -len("_scan")]
            try:
                return cls(text)
            except ValueError:
                continue
        return cls.INVENTORY


@dataclass
class Device:
    device_id: str
    status: Optional[DeviceStatus] = None
    last_heartbeat_at: int = 0
    last_seen_at: int = 0
    ip_address: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_raw(cls, device_id: str, raw: dict) -> "Device":
        """Build from a stored document whose timestamps may be in any unit."""
        raw = raw or {}
        return cls(
            device_id=device_id,
            status=DeviceStatus.parse(raw.get("status")),
            last_heartbeat_at=normalize_timestamp(raw.get("lastHeartbeat", raw.get("last_heartbeat_at"))),
            last_seen_at=normalize_timestamp(raw.get("lastSeen", raw.get("last_seen_at"))),
            ip_address=str(raw.get("ipAddress") or raw.get("ip") or raw.get("ip_address") or ""),
            metadata={str(k): str(v) for k, v in (raw.get("metadata") or {}).items()},
        )

    @property
    def most_recent_at(self) -> int:
        return max(self.last_heartbeat_at, self.last_seen_at)

    def observe(self, at_ms: int, heartbeat: bool = False) -> None:
        """Fold in a new signal. Timestamps only move forward."""
        if heartbeat:
            self.last_heartbeat_at = max(self.last_heartbeat_at, at_ms)
        self.last_seen_at = max(self.last_seen_at, at_ms)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        return data


def derive_event_key(payload: str, observed_at_ms: int) -> str:
    """Consumer-side event id: same payload within the same second collapses."""
    raw = f"{payload}|{observed_at_ms // 1000}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ScanEvent:
    payload: str
    device_id: str
    observed_at_ms: int
    mode: ScanMode = ScanMode.INVENTORY
    source_id: str = ""
    location: str = ""

    @property
    def event_key(self) -> str:
        return derive_event_key(self.payload, self.observed_at_ms)

    @property
    def payload_key(self) -> str:
        return f"{self.device_id}:{self.payload}"

    @classmethod
    def from_raw(cls, raw: dict, source_id: str = "") -> "ScanEvent":
        """Build from a stored scan document (`barcode`, `deviceId`, `timestamp`, `mode`/`type`)."""
        return cls(
            payload=str(raw.get("barcode") or raw.get("payload") or ""),
            device_id=str(raw.get("deviceId") or raw.get("device_id") or "unknown"),
            observed_at_ms=normalize_timestamp(raw.get("timestamp", raw.get("observed_at_ms"))),
            mode=ScanMode.parse(raw.get("mode"), raw.get("type")),
            source_id=source_id or str(raw.get("id") or ""),
            location=str(raw.get("location") or ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.source_id,
            "barcode": self.payload,
            "deviceId": self.device_id,
            "timestamp": self.observed_at_ms,
            "mode": self.mode.value,
            "location": self.location,
        }


@dataclass
class TransactionRecord:
    """Downstream side effect of a committed scan (attendance or inventory)."""
    mode: ScanMode
    payload: str
    device_id: str
    timestamp_ms: int
    event_key: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    record_id: str = ""

    def __post_init__(self):
        if not self.record_id:
            self.record_id = str(uuid.uuid4())

    def to_dict(self) -> dict:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


@dataclass(frozen=True)
class StatusTransition:
    device_id: str
    previous: Optional[DeviceStatus]
    current: DeviceStatus
    most_recent_at: int
    at_ms: int

    def to_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "previous": self.previous.value if self.previous else None,
            "current": self.current.value,
            "most_recent_at": self.most_recent_at,
            "at": iso_from_ms(self.at_ms),
        }


@dataclass
class SweepResult:
    total_devices: int
    updated: int
    online: int
    offline: int
    timestamp_ms: int
    went_online: int = 0
    went_offline: int = 0
    transitions: list[StatusTransition] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "total_devices": self.total_devices,
            "updated": self.updated,
            "online": self.online,
            "offline": self.offline,
            "went_online": self.went_online,
            "went_offline": self.went_offline,
            "timestamp": iso_from_ms(self.timestamp_ms),
            "transitions": [t.to_dict() for t in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SweepResult":
        """Rebuild the counters from a `/devices/check-status` response body."""
        return cls(
            total_devices=int(data.get("total_devices", 0)),
            updated=int(data.get("updated", 0)),
            online=int(data.get("online", 0)),
            offline=int(data.get("offline", 0)),
            timestamp_ms=normalize_timestamp(data.get("timestamp")),
            went_online=int(data.get("went_online", 0)),
            went_offline=int(data.get("went_offline", 0)),
        )
