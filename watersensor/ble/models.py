"""Immutable records shared across the BLE core."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from watersensor.ble.state import ConnectionState


class WaterQuality(Enum):
    """Water quality classes; values are the strings carried on the wire."""

    CLEAN = "Clean"
    UNSAFE = "Unsafe"
    EXTREMELY_UNSAFE = "Extremely Unsafe"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class DeviceHandle:
    """A discovered or connected peripheral.

    Attributes:
        id: Platform address or identifier.
        name: Advertised name; may be missing until after connection.
        rssi: Signal strength at discovery time, in dBm.
    """

    id: str
    name: Optional[str] = None
    rssi: Optional[int] = None

    @property
    def label(self) -> str:
        """Human-readable name, falling back to the identifier."""
        return self.name or self.id


@dataclass(frozen=True)
class Advertisement:
    """One advertisement as reported by a transport during a scan."""

    address: str
    name: Optional[str] = None
    rssi: Optional[int] = None
    service_uuids: Tuple[str, ...] = ()

    def to_device(self) -> DeviceHandle:
        return DeviceHandle(id=self.address, name=self.name, rssi=self.rssi)


@dataclass(frozen=True)
class Frame:
    """A candidate JSON message produced by the frame reassembler."""

    text: str
    recovered: bool = False


@dataclass(frozen=True)
class SensorReading:
    """Canonical sensor reading.

    Readings are created by the message normalizer and never mutated
    afterwards; collaborators persist them through ``to_dict``.
    """

    tds: float
    quality: WaterQuality
    vibration: float
    device_timestamp: int
    received_at: datetime
    device_id: str
    battery_level: int
    recovered: bool = False
    x_axis: Optional[float] = None
    y_axis: Optional[float] = None
    z_axis: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dict using the wire field names."""
        data: Dict[str, Any] = {
            "tds": self.tds,
            "quality": self.quality.value,
            "vibration": self.vibration,
            "deviceTimestamp": self.device_timestamp,
            "receivedAt": self.received_at.isoformat(),
            "deviceId": self.device_id,
            "batteryLevel": self.battery_level,
            "recovered": self.recovered,
        }
        for key, value in (
            ("xAxis", self.x_axis),
            ("yAxis", self.y_axis),
            ("zAxis", self.z_axis),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class ActiveConnection:
    """Result of a successful ``SessionManager.connect``."""

    device: DeviceHandle
    attempts: int
    connected_at: datetime


@dataclass(frozen=True)
class SessionStatus:
    """Read-only snapshot of the session."""

    state: ConnectionState
    device: Optional[DeviceHandle] = field(default=None)

    @property
    def is_connected(self) -> bool:
        return self.state in (ConnectionState.CONNECTED, ConnectionState.MONITORING)
