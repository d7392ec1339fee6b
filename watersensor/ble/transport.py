"""Transport adapters: the primitives the session drives the radio with."""

import asyncio
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import RLock
from typing import Callable, Dict, Iterator, List, Optional, Union

from bleak.exc import BleakDBusError, BleakError

from watersensor.ble.client import BLEClient
from watersensor.ble.constants import (
    BLEAK_VERSION,
    BLEConfig,
    UNRESOLVED_GATT_PATTERN,
    logger,
)
from watersensor.ble.errors import BLEErrorHandler
from watersensor.ble.exceptions import (
    TransportError,
    TransportPermissionError,
    TransportTimeout,
    TransportUnavailableError,
)
from watersensor.ble.models import Advertisement

Payload = Union[bytes, str]
AdvertisementCallback = Callable[[Advertisement], None]
NotificationCallback = Callable[[Payload], None]
DisconnectCallback = Callable[[Optional[str]], None]


class TransportAdapter(ABC):
    """
    Platform BLE primitives used by :class:`~watersensor.ble.session.SessionManager`.

    Implementations raise :class:`TransportError` subclasses only. Scan,
    notification and disconnect callbacks may arrive on a transport-owned
    thread.
    """

    @abstractmethod
    def is_available(self) -> bool:
        """Whether a usable, powered-on BLE stack is present."""

    @abstractmethod
    def request_permissions(self) -> bool:
        """Ask the platform for scan/connect permissions; False if refused."""

    @abstractmethod
    def start_scan(self, on_advertisement: AdvertisementCallback) -> None:
        """Begin reporting advertisements until :meth:`stop_scan`."""

    @abstractmethod
    def stop_scan(self) -> None:
        """Stop scanning; a no-op when no scan is running."""

    @abstractmethod
    def connect(
        self,
        address: str,
        *,
        timeout: float,
        on_disconnect: DisconnectCallback,
    ) -> Optional[str]:
        """
        Open a link to `address`.

        `on_disconnect` is invoked with an optional cause whenever the link
        drops afterwards.

        Returns:
            Optional[str]: the name the peripheral reports, if any.
        """

    @abstractmethod
    def discover_services(self) -> Dict[str, List[str]]:
        """Map each service UUID on the connected peripheral to its characteristic UUIDs."""

    @abstractmethod
    def read(self, characteristic: str, *, timeout: float) -> Payload:
        """Read one characteristic value."""

    @abstractmethod
    def start_notify(
        self, characteristic: str, callback: NotificationCallback, *, timeout: float
    ) -> None:
        """Enable notifications; `callback` receives each raw payload."""

    @abstractmethod
    def stop_notify(self, characteristic: str, *, timeout: float) -> None:
        """Disable notifications on `characteristic`."""

    @abstractmethod
    def disconnect(self, *, timeout: float) -> None:
        """Release the current link; a no-op when not connected."""

    def close(self) -> None:
        """Release every platform resource held by the adapter."""


_PERMISSION_PATTERN = re.compile(
    r"not ?permitted|not ?authori[sz]ed|permission|access denied", re.IGNORECASE
)
_UNAVAILABLE_PATTERN = re.compile(
    r"no bluetooth adapter|adapter .*not found|powered off|not ready|bluetooth .*(?:unavailable|not available)",
    re.IGNORECASE,
)


def map_bleak_error(error: BaseException, label: str) -> TransportError:
    """
    Classify an exception raised by bleak (or the client wrapper) as a transport error.

    Stale-GATT messages keep their text so callers can recognise them.
    """
    if isinstance(error, TransportError):
        return error
    if isinstance(error, (asyncio.TimeoutError, FutureTimeoutError)):
        return TransportTimeout(f"{label} timed out")
    message = str(error) or type(error).__name__
    if isinstance(error, BleakDBusError):
        message = f"{error.dbus_error}: {error.dbus_error_details or message}"
    if UNRESOLVED_GATT_PATTERN.search(message):
        return TransportError(message)
    if _PERMISSION_PATTERN.search(message):
        return TransportPermissionError(message)
    if _UNAVAILABLE_PATTERN.search(message):
        return TransportUnavailableError(message)
    return TransportError(f"{label} failed: {message}")


@contextmanager
def bleak_errors(label: str) -> Iterator[None]:
    """Re-raise bleak, timeout and OS errors from the block as transport errors."""
    try:
        yield
    except TransportError:
        raise
    except (BleakError, asyncio.TimeoutError, FutureTimeoutError, OSError) as e:
        raise map_bleak_error(e, label) from e


class BleakTransport(TransportAdapter):
    """
    Transport backed by bleak through :class:`BLEClient`.

    Each connection gets its own ``BLEClient`` (and event loop thread); a
    separate address-less client owns the scanner. Desktop stacks have no
    runtime permission prompt, so :meth:`request_permissions` always grants
    and a missing adapter surfaces as ``TransportUnavailableError`` from the
    first scan or connect.
    """

    def __init__(self, client_factory=None):
        self._client_factory = client_factory or BLEClient
        self._lock = RLock()
        self._client: Optional[BLEClient] = None
        self._scan_client: Optional[BLEClient] = None
        self.error_handler = BLEErrorHandler()
        logger.debug("Using bleak %s", BLEAK_VERSION)

    def is_available(self) -> bool:
        return True

    def request_permissions(self) -> bool:
        return True

    def start_scan(self, on_advertisement: AdvertisementCallback) -> None:
        def _detected(device, adv):
            on_advertisement(
                Advertisement(
                    address=device.address,
                    name=adv.local_name or device.name,
                    rssi=adv.rssi,
                    service_uuids=tuple(adv.service_uuids or ()),
                )
            )

        with self._lock:
            if self._scan_client is None:
                self._scan_client = self._client_factory(log_if_no_address=False)
            scan_client = self._scan_client
        with bleak_errors("scan"):
            scan_client.start_scanner(_detected)

    def stop_scan(self) -> None:
        with self._lock:
            scan_client = self._scan_client
        if scan_client is None:
            return
        with bleak_errors("stop scan"):
            scan_client.stop_scanner()

    def connect(
        self,
        address: str,
        *,
        timeout: float,
        on_disconnect: DisconnectCallback,
    ) -> Optional[str]:
        self._release_client()

        def _disconnected(_bleak_client):
            with self._lock:
                current = self._client is client
            logger.debug("Bleak reported disconnect from %s (current=%s)", address, current)
            if current:
                on_disconnect(None)

        client = self._client_factory(address, disconnected_callback=_disconnected)
        try:
            with bleak_errors("connect"):
                client.connect(await_timeout=timeout)
        except TransportError:
            self.error_handler.safe_cleanup(client.close, "failed client close")
            raise
        with self._lock:
            self._client = client
        return getattr(client.bleak_client, "name", None)

    def discover_services(self) -> Dict[str, List[str]]:
        client = self._connected_client()
        with bleak_errors("service discovery"):
            services = client.services()
        return {
            str(service.uuid).lower(): [
                str(char.uuid).lower() for char in service.characteristics
            ]
            for service in services or ()
        }

    def read(self, characteristic: str, *, timeout: float) -> Payload:
        client = self._connected_client()
        with bleak_errors("read"):
            value = client.read_gatt_char(characteristic, timeout=timeout)
        return bytes(value or b"")

    def start_notify(
        self, characteristic: str, callback: NotificationCallback, *, timeout: float
    ) -> None:
        client = self._connected_client()

        def _notified(_sender, data):
            callback(bytes(data))

        with bleak_errors("start notify"):
            client.start_notify(characteristic, _notified, timeout=timeout)

    def stop_notify(self, characteristic: str, *, timeout: float) -> None:
        client = self._connected_client()
        with bleak_errors("stop notify"):
            client.stop_notify(characteristic, timeout=timeout)

    def disconnect(self, *, timeout: float) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        try:
            with bleak_errors("disconnect"):
                client.disconnect(await_timeout=timeout)
        finally:
            self.error_handler.safe_cleanup(client.close, "client close")

    def close(self) -> None:
        self._release_client()
        with self._lock:
            scan_client, self._scan_client = self._scan_client, None
        if scan_client is not None:
            self.error_handler.safe_cleanup(scan_client.close, "scan client close")

    def _connected_client(self) -> BLEClient:
        with self._lock:
            client = self._client
        if client is None:
            raise TransportError("No active BLE connection")
        return client

    def _release_client(self) -> None:
        with self._lock:
            client, self._client = self._client, None
        if client is None:
            return
        if client.is_connected():
            self.error_handler.safe_cleanup(
                lambda: client.disconnect(await_timeout=BLEConfig.DISCONNECT_TIMEOUT),
                "stale client disconnect",
            )
        self.error_handler.safe_cleanup(client.close, "stale client close")
