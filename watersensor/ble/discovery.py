"""Sensor discovery: advertisement filtering and cancellable scan sessions."""

from threading import Event, RLock
from typing import Callable, Dict, Iterable, List, Optional

from watersensor.ble.constants import (
    BLEConfig,
    DEVICE_NAME_TOKENS,
    KNOWN_DEVICE_NAMES,
    SERVICE_UUID,
    logger,
)
from watersensor.ble.coordination import ThreadCoordinator
from watersensor.ble.errors import BLEErrorHandler
from watersensor.ble.models import Advertisement, DeviceHandle
from watersensor.ble.transport import TransportAdapter
from watersensor.ble.utils import sanitize_address


def matches_sensor(name: Optional[str], service_uuids: Iterable[str] = ()) -> bool:
    """
    Decide whether an advertisement belongs to a water sensor.

    A device matches when it advertises the sensor service, carries one of
    the firmware's exact names, or its name contains one of the board
    tokens (case-insensitive).
    """
    if any(str(uuid).lower() == SERVICE_UUID for uuid in service_uuids):
        return True
    if not name:
        return False
    if name in KNOWN_DEVICE_NAMES:
        return True
    lowered = name.lower()
    return any(token in lowered for token in DEVICE_NAME_TOKENS)


class ScanSession:
    """
    One discovery run; doubles as its own cancel token.

    `on_found` is called once per newly seen device id. The scan stops by
    itself after `timeout` seconds unless :meth:`cancel` is called first;
    either way `on_finished` runs exactly once.
    """

    def __init__(
        self,
        transport: TransportAdapter,
        on_found: Callable[[DeviceHandle], None],
        *,
        coordinator: ThreadCoordinator,
        on_finished: Optional[Callable[["ScanSession"], None]] = None,
        timeout: Optional[float] = None,
    ):
        self._transport = transport
        self._on_found = on_found
        self._coordinator = coordinator
        self._on_finished = on_finished
        self.timeout = timeout if timeout is not None else BLEConfig.BLE_SCAN_TIMEOUT
        self._lock = RLock()
        self._seen: Dict[str, DeviceHandle] = {}
        self._active = False
        self._done = Event()
        self._timer_name = f"scan-timeout-{id(self)}"

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @property
    def devices(self) -> List[DeviceHandle]:
        """Devices reported so far, in discovery order."""
        with self._lock:
            return list(self._seen.values())

    def start(self) -> "ScanSession":
        """Start the transport scan and arm the auto-stop timer."""
        with self._lock:
            self._active = True
        logger.debug("Scanning for sensors for %.1f seconds", self.timeout)
        try:
            self._transport.start_scan(self._handle_advertisement)
        except Exception:
            self._finish()
            raise
        if self.active:
            self._coordinator.schedule(self._timer_name, self.timeout, self._expire)
        return self

    def cancel(self) -> None:
        """Stop the scan now; later calls are no-ops."""
        self._coordinator.cancel(self._timer_name)
        self._finish()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the scan ends; False if `timeout` elapsed first."""
        return self._done.wait(timeout)

    def _expire(self) -> None:
        logger.debug("Scan window elapsed")
        self._finish()

    def _finish(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        BLEErrorHandler.safe_cleanup(self._transport.stop_scan, "scan stop")
        logger.debug("Scan finished with %d sensor(s) found", len(self.devices))
        if self._on_finished is not None:
            BLEErrorHandler.safe_execute(
                lambda: self._on_finished(self), error_msg="Error finishing scan"
            )
        self._done.set()

    def _handle_advertisement(self, advertisement: Advertisement) -> None:
        if not matches_sensor(advertisement.name, advertisement.service_uuids):
            return
        device = advertisement.to_device()
        key = sanitize_address(device.id) or device.id
        with self._lock:
            if not self._active or key in self._seen:
                return
            self._seen[key] = device
        logger.debug("Found sensor %s (%s dBm)", device.label, device.rssi)
        try:
            self._on_found(device)
        except Exception:  # noqa: BLE001 - caller callback must not stop the scan
            logger.exception("Scan callback failed for %s", device.id)
