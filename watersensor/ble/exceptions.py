"""Exception taxonomy for the water sensor BLE core.

Two families live here:

- Transport errors are raised by ``TransportAdapter`` implementations and never
  leave the session layer.
- Session errors are what callers of ``SessionManager`` see; the session wraps
  every transport failure into one of them.
"""

from typing import Optional


class TransportError(Exception):
    """A transport primitive failed."""


class TransportTimeout(TransportError):
    """A transport primitive did not complete within its timeout."""


class TransportPermissionError(TransportError):
    """The platform refused Bluetooth access."""


class TransportUnavailableError(TransportError):
    """The platform BLE stack is absent or disabled."""


class WaterSensorError(Exception):
    """Base class for errors surfaced by the session layer."""


class PermissionDenied(WaterSensorError):
    """Bluetooth permissions were refused."""


class TransportUnavailable(WaterSensorError):
    """Bluetooth is absent or powered off."""


class OperationInProgress(WaterSensorError):
    """A conflicting lifecycle operation is already running."""


class ConnectError(WaterSensorError):
    """Base class for connection failures."""


class ConnectTimeout(ConnectError):
    """Every connect attempt ran into its timeout."""


class ConnectFailed(ConnectError):
    """The transport refused or dropped the connection."""


class DiscoveryFailed(ConnectError):
    """The expected service or characteristic is missing on the peripheral."""


class ReadError(WaterSensorError):
    """Base class for single-reading failures."""


class SubscribeError(WaterSensorError):
    """Base class for notification subscription failures."""


class NotConnected(ReadError, SubscribeError):
    """The operation needs an established connection."""


class ReadFailed(ReadError):
    """The characteristic read failed or returned nothing."""


class SubscribeFailed(SubscribeError):
    """Notifications could not be enabled."""


class MalformedMessage(WaterSensorError):
    """A candidate message is not a JSON object.

    The offending text is kept on ``raw`` so it can be reported.
    """

    def __init__(self, message: str, raw: Optional[str] = None):
        super().__init__(message)
        self.raw = raw
