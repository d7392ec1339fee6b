"""BLE connection state management."""

from enum import Enum
from threading import RLock
from typing import Optional, TYPE_CHECKING

from watersensor.ble.constants import logger

if TYPE_CHECKING:
    from watersensor.ble.models import DeviceHandle


class ConnectionState(Enum):
    """Enum for managing BLE connection states."""

    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    MONITORING = "monitoring"
    DISCONNECTING = "disconnecting"


# Define valid transitions based on connection lifecycle
_VALID_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {
        ConnectionState.SCANNING,
        ConnectionState.CONNECTING,
    },
    ConnectionState.SCANNING: {
        ConnectionState.DISCONNECTED,
        ConnectionState.CONNECTING,
    },
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.CONNECTED: {
        ConnectionState.MONITORING,
        ConnectionState.DISCONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.MONITORING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTING,
        ConnectionState.DISCONNECTED,
    },
    ConnectionState.DISCONNECTING: {
        ConnectionState.DISCONNECTED,
    },
}


class BLEStateManager:
    """Thread-safe state management for the sensor session.

    Holds the connection state, the connected device and the name of the
    lifecycle operation currently in flight. Only one operation may be in
    flight at a time.
    """

    def __init__(self):
        """Initialize state manager with disconnected state."""
        self._state_lock = RLock()  # Single reentrant lock for all state changes
        self._state = ConnectionState.DISCONNECTED
        self._device: Optional["DeviceHandle"] = None
        self._operation: Optional[str] = None

    @property
    def lock(self) -> RLock:
        """Expose the reentrant lock controlling state transitions."""
        return self._state_lock

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        with self._state_lock:
            return self._state

    @property
    def device(self) -> Optional["DeviceHandle"]:
        """Get the device bound to the current connection."""
        with self._state_lock:
            return self._device

    @property
    def is_connected(self) -> bool:
        """Check if a link is up (monitoring counts as connected)."""
        return self.state in (ConnectionState.CONNECTED, ConnectionState.MONITORING)

    @property
    def operation(self) -> Optional[str]:
        """Name of the lifecycle operation in flight, if any."""
        with self._state_lock:
            return self._operation

    def begin_operation(self, name: str) -> bool:
        """Claim the in-flight slot for `name`; False if another operation holds it."""
        with self._state_lock:
            if self._operation is not None:
                logger.debug(
                    "Rejecting %s while %s is in flight", name, self._operation
                )
                return False
            self._operation = name
            return True

    def end_operation(self, name: str) -> None:
        """Release the in-flight slot if `name` holds it."""
        with self._state_lock:
            if self._operation == name:
                self._operation = None

    def transition_to(
        self, new_state: ConnectionState, device: Optional["DeviceHandle"] = None
    ) -> bool:
        """Thread-safe state transition with validation.

        Args:
        ----
            new_state: Target state to transition to
            device: Device associated with this transition (optional)

        Returns:
        -------
            True if transition was valid and applied, False otherwise

        """
        with self._state_lock:
            if new_state not in _VALID_TRANSITIONS.get(self._state, set()):
                logger.warning(
                    f"Invalid state transition: {self._state.value} → {new_state.value}"
                )
                return False
            old_state = self._state
            self._state = new_state

            if device is not None:
                self._device = device
            elif new_state == ConnectionState.DISCONNECTED:
                self._device = None

            logger.debug(f"State transition: {old_state.value} → {new_state.value}")
            return True
