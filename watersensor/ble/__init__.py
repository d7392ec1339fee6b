"""BLE session core for the water sensor."""

from watersensor.ble.constants import (
    BLE_SCAN_TIMEOUT,
    BLEAK_VERSION,
    BLEConfig,
    CHARACTERISTIC_UUID,
    CONNECT_ATTEMPT_TIMEOUT,
    CONNECT_MAX_ATTEMPTS,
    CONNECT_RETRY_DELAY,
    DEFAULT_DEVICE_ID,
    REASSEMBLY_HARD_CAP,
    SERVICE_UUID,
    STOP_NOTIFY_GRACE_PERIOD,
    logger,
)
from watersensor.ble.client import BLEClient
from watersensor.ble.coordination import ThreadCoordinator
from watersensor.ble.debounce import EventDebouncer
from watersensor.ble.discovery import ScanSession, matches_sensor
from watersensor.ble.errors import BLEErrorHandler
from watersensor.ble.events import (
    Connected,
    ConnectionEvent,
    ConnectionFailed,
    DataError,
    DataReceived,
    Disconnected,
    EventBus,
    Subscription,
)
from watersensor.ble.exceptions import *  # noqa: F403
from watersensor.ble.models import (
    ActiveConnection,
    Advertisement,
    DeviceHandle,
    Frame,
    SensorReading,
    SessionStatus,
    WaterQuality,
)
from watersensor.ble.normalizer import MessageNormalizer, derive_quality
from watersensor.ble.policies import ReconnectPolicy, RetryPolicy
from watersensor.ble.reassembly import FrameReassembler, recover_partial
from watersensor.ble.session import SessionManager
from watersensor.ble.simulated import SimulatedTransport
from watersensor.ble.state import BLEStateManager, ConnectionState
from watersensor.ble.transport import BleakTransport, TransportAdapter
from watersensor.ble.utils import _sleep, decode_payload

__all__ = [
    # Core classes
    "SessionManager",
    "ScanSession",
    "FrameReassembler",
    "MessageNormalizer",
    "EventBus",
    "Subscription",
    "EventDebouncer",
    "BLEConfig",
    "ConnectionState",
    "BLEStateManager",
    "ThreadCoordinator",
    "BLEErrorHandler",
    "ReconnectPolicy",
    "RetryPolicy",
    "BLEClient",
    "TransportAdapter",
    "BleakTransport",
    "SimulatedTransport",
    # Records and events
    "ActiveConnection",
    "Advertisement",
    "DeviceHandle",
    "Frame",
    "SensorReading",
    "SessionStatus",
    "WaterQuality",
    "ConnectionEvent",
    "Connected",
    "Disconnected",
    "ConnectionFailed",
    "DataReceived",
    "DataError",
    # Errors
    "WaterSensorError",
    "PermissionDenied",
    "TransportUnavailable",
    "OperationInProgress",
    "ConnectError",
    "ConnectTimeout",
    "ConnectFailed",
    "DiscoveryFailed",
    "ReadError",
    "ReadFailed",
    "SubscribeError",
    "SubscribeFailed",
    "NotConnected",
    "MalformedMessage",
    "TransportError",
    "TransportTimeout",
    "TransportPermissionError",
    "TransportUnavailableError",
    # Constants/helpers
    "SERVICE_UUID",
    "CHARACTERISTIC_UUID",
    "DEFAULT_DEVICE_ID",
    "BLE_SCAN_TIMEOUT",
    "CONNECT_MAX_ATTEMPTS",
    "CONNECT_ATTEMPT_TIMEOUT",
    "CONNECT_RETRY_DELAY",
    "STOP_NOTIFY_GRACE_PERIOD",
    "REASSEMBLY_HARD_CAP",
    "BLEAK_VERSION",
    "decode_payload",
    "derive_quality",
    "matches_sensor",
    "recover_partial",
    "_sleep",
    "logger",
]
