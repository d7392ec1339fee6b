"""BLE constants and configuration."""

import importlib.metadata
import logging
import re
from typing import FrozenSet, Tuple

logger = logging.getLogger("watersensor.ble")

# Get bleak version using importlib.metadata (reliable method)
BLEAK_VERSION = importlib.metadata.version("bleak")

# BLE Service and Characteristic UUIDs (must match the sensor firmware)
SERVICE_UUID = "12345678-1234-1234-1234-123456789abc"
CHARACTERISTIC_UUID = "87654321-4321-4321-4321-cba987654321"

# Identity reported by the firmware when the payload omits it
DEFAULT_DEVICE_ID = "ESP32-Water-Sensor"

# Advertised names accepted during discovery
KNOWN_DEVICE_NAMES: FrozenSet[str] = frozenset(
    {"ESP32-Water-Sensor", "ESP32-WaterSensor"}
)
DEVICE_NAME_TOKENS: Tuple[str, ...] = ("esp32", "water", "xiao", "seeed")


# BLE timeout, retry and buffer constants
class BLEConfig:
    """Configuration constants for BLE operations."""

    BLE_SCAN_TIMEOUT = 10.0
    CONNECT_MAX_ATTEMPTS = 3
    CONNECT_ATTEMPT_TIMEOUT = 15.0
    CONNECT_RETRY_DELAY = 2.0
    CONNECT_EVENT_DEBOUNCE = 2.0
    DISCONNECT_EVENT_DEBOUNCE = 1.0
    GATT_IO_TIMEOUT = 10.0
    NOTIFICATION_START_TIMEOUT = 10.0
    STOP_NOTIFY_GRACE_PERIOD = 2.0
    DISCONNECT_TIMEOUT = 5.0
    PARTIAL_RECOVERY_IDLE_DELAY = 1.0
    REASSEMBLY_SOFT_THRESHOLD = 100
    REASSEMBLY_HARD_CAP = 1000
    TDS_EXPECTED_RANGE: Tuple[float, float] = (0.0, 3000.0)
    TDS_CLEAN_MAX = 300.0
    TDS_UNSAFE_MAX = 400.0
    BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT = 2.0
    EVENT_THREAD_JOIN_TIMEOUT = 2.0


# Module-level aliases re-exported by watersensor.ble
BLE_SCAN_TIMEOUT = BLEConfig.BLE_SCAN_TIMEOUT
CONNECT_MAX_ATTEMPTS = BLEConfig.CONNECT_MAX_ATTEMPTS
CONNECT_ATTEMPT_TIMEOUT = BLEConfig.CONNECT_ATTEMPT_TIMEOUT
CONNECT_RETRY_DELAY = BLEConfig.CONNECT_RETRY_DELAY
STOP_NOTIFY_GRACE_PERIOD = BLEConfig.STOP_NOTIFY_GRACE_PERIOD
REASSEMBLY_HARD_CAP = BLEConfig.REASSEMBLY_HARD_CAP
EVENT_THREAD_JOIN_TIMEOUT = BLEConfig.EVENT_THREAD_JOIN_TIMEOUT

# Transport error messages that mean the GATT table went stale
UNRESOLVED_GATT_PATTERN = re.compile(
    r"(characteristic|service)\b.*\b(not found|not available|unknown|invalid|unresolv)",
    re.IGNORECASE,
)

# Error message constants
ERROR_TIMEOUT = "{0} timed out after {1:.1f} seconds"
ERROR_CONNECT_EXHAUSTED = "Failed to connect to {0} after {1} attempts: {2}"
ERROR_SERVICE_MISSING = "Service {0} not found on {1}"
ERROR_CHARACTERISTIC_MISSING = "Characteristic {0} not found on {1}"
ERROR_NOT_CONNECTED = "Not connected to a sensor"
ERROR_NO_DATA = "No data received from sensor"
ERROR_READ_FAILED = "Failed to read sensor: {0}"
ERROR_SUBSCRIBE_FAILED = "Failed to subscribe to sensor notifications: {0}"
ERROR_PERMISSION_DENIED = "Bluetooth permissions are required to scan for the sensor"
ERROR_TRANSPORT_UNAVAILABLE = "Bluetooth is not available or is powered off"
ERROR_OPERATION_IN_PROGRESS = "Cannot {0} while {1} is in progress"
ERROR_CONNECT_CANCELLED = "cancelled by disconnect"
ERROR_LINK_LOST_DURING_SETUP = "link dropped before setup finished"

# BLEClient-specific constants
BLECLIENT_ERROR_ASYNC_TIMEOUT = "Async operation timed out"

