"""In-process stand-in for the sensor, used for demos and tests."""

import json
import random
import time
from threading import Event, RLock
from typing import Any, Callable, Dict, List, Optional, Sequence

from watersensor.ble.constants import (
    CHARACTERISTIC_UUID,
    DEFAULT_DEVICE_ID,
    SERVICE_UUID,
    logger,
)
from watersensor.ble.coordination import ThreadCoordinator
from watersensor.ble.exceptions import TransportError
from watersensor.ble.models import Advertisement
from watersensor.ble.normalizer import derive_quality
from watersensor.ble.transport import (
    AdvertisementCallback,
    DisconnectCallback,
    NotificationCallback,
    Payload,
    TransportAdapter,
)
from watersensor.ble.utils import _sleep

SIMULATED_DEVICES = (
    Advertisement(
        address="sim-esp32-001",
        name="ESP32-Sensor (Simulated)",
        rssi=-48,
        service_uuids=(SERVICE_UUID,),
    ),
    Advertisement(
        address="sim-esp32-002",
        name="XIAO-ESP32-C6 (Simulated)",
        rssi=-63,
        service_uuids=(SERVICE_UUID,),
    ),
)

# Default BLE ATT payload size
DEFAULT_MTU = 20


class SimulatedTransport(TransportAdapter):
    """
    Pretend sensor speaking the real wire format.

    Notifications carry the firmware's JSON split into `mtu`-byte chunks, so
    the session's reassembly path is exercised exactly as with hardware.
    Advertisements are reported `advertise_interval` seconds apart (at once
    when it is 0) and notifications every `interval` seconds once
    subscribed. :meth:`emit` pushes a message on demand.
    """

    def __init__(
        self,
        *,
        devices: Sequence[Advertisement] = SIMULATED_DEVICES,
        rng: Optional[random.Random] = None,
        interval: float = 2.0,
        advertise_interval: float = 1.0,
        connect_delay: float = 0.0,
        mtu: int = DEFAULT_MTU,
        sleep: Callable[[float], None] = _sleep,
    ):
        if mtu <= 0:
            raise ValueError(f"mtu must be > 0, got {mtu}")
        self.devices = tuple(devices)
        self.interval = interval
        self.advertise_interval = advertise_interval
        self.connect_delay = connect_delay
        self.mtu = mtu
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._lock = RLock()
        self._coordinator = ThreadCoordinator()
        self._connected: Optional[Advertisement] = None
        self._on_disconnect: Optional[DisconnectCallback] = None
        self._notify_callback: Optional[NotificationCallback] = None
        self._stream_stop = Event()
        self._boot = time.monotonic()
        self._battery = 100.0

    @property
    def connected_address(self) -> Optional[str]:
        with self._lock:
            return self._connected.address if self._connected else None

    @property
    def notifying(self) -> bool:
        with self._lock:
            return self._notify_callback is not None

    def is_available(self) -> bool:
        return True

    def request_permissions(self) -> bool:
        return True

    def start_scan(self, on_advertisement: AdvertisementCallback) -> None:
        logger.debug("Simulated scan started")
        for index, advertisement in enumerate(self.devices):
            if self.advertise_interval <= 0:
                on_advertisement(advertisement)
                continue
            self._coordinator.schedule(
                f"advertise-{index}",
                (index + 1) * self.advertise_interval,
                lambda adv=advertisement: on_advertisement(adv),
            )

    def stop_scan(self) -> None:
        for index in range(len(self.devices)):
            self._coordinator.cancel(f"advertise-{index}")

    def connect(
        self,
        address: str,
        *,
        timeout: float,
        on_disconnect: DisconnectCallback,
    ) -> Optional[str]:
        device = next((d for d in self.devices if d.address == address), None)
        if device is None:
            raise TransportError(f"Simulated device {address} not found")
        if self.connect_delay:
            self._sleep(min(self.connect_delay, timeout))
        with self._lock:
            self._connected = device
            self._on_disconnect = on_disconnect
        logger.debug("Simulated connection to %s", device.name)
        return device.name

    def discover_services(self) -> Dict[str, List[str]]:
        self._require_connection()
        return {SERVICE_UUID: [CHARACTERISTIC_UUID]}

    def read(self, characteristic: str, *, timeout: float) -> Payload:
        self._require_connection()
        self._require_characteristic(characteristic)
        return json.dumps(self.generate_reading()).encode("utf-8")

    def start_notify(
        self, characteristic: str, callback: NotificationCallback, *, timeout: float
    ) -> None:
        self._require_connection()
        self._require_characteristic(characteristic)
        with self._lock:
            self._stream_stop.set()
            self._stream_stop = stop = Event()
            self._notify_callback = callback
        if self.interval > 0:
            thread = self._coordinator.create_thread(
                self._stream_loop, name="SimulatedSensorStream", args=(stop,)
            )
            self._coordinator.start_thread(thread)

    def stop_notify(self, characteristic: str, *, timeout: float) -> None:
        with self._lock:
            self._notify_callback = None
            self._stream_stop.set()

    def disconnect(self, *, timeout: float) -> None:
        with self._lock:
            self._notify_callback = None
            self._stream_stop.set()
            self._connected = None
            self._on_disconnect = None

    def close(self) -> None:
        self.disconnect(timeout=0)
        self._coordinator.cleanup()

    def emit(self, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Push one message through the notification callback in MTU-sized chunks.

        Returns:
            int: number of chunks delivered (0 when not subscribed).
        """
        with self._lock:
            callback = self._notify_callback
        if callback is None:
            return 0
        data = json.dumps(payload if payload is not None else self.generate_reading())
        chunks = self.fragment(data.encode("utf-8"))
        for chunk in chunks:
            callback(chunk)
        return len(chunks)

    def fragment(self, data: bytes) -> List[bytes]:
        return [data[i : i + self.mtu] for i in range(0, len(data), self.mtu)]

    def simulate_disconnect(self, cause: Optional[str] = "simulated link loss") -> None:
        """Drop the link as if the peripheral went out of range."""
        with self._lock:
            on_disconnect = self._on_disconnect
            self._notify_callback = None
            self._stream_stop.set()
            self._connected = None
            self._on_disconnect = None
        if on_disconnect is not None:
            on_disconnect(cause)

    def generate_reading(self) -> Dict[str, Any]:
        """Produce one plausible firmware message."""
        rng = self._rng
        tds = round(rng.uniform(80.0, 450.0), 1)
        with self._lock:
            self._battery = max(0.0, self._battery - rng.uniform(0.0, 0.2))
            battery = int(self._battery)
        return {
            "tds": tds,
            "quality": derive_quality(tds).value,
            "vibration": round(rng.uniform(0.0, 1.5), 3),
            "xAxis": round(rng.gauss(0.0, 0.05), 3),
            "yAxis": round(rng.gauss(0.0, 0.05), 3),
            "zAxis": round(rng.gauss(9.81, 0.05), 3),
            "timestamp": int((time.monotonic() - self._boot) * 1000),
            "deviceId": DEFAULT_DEVICE_ID,
            "batteryLevel": battery,
        }

    def _stream_loop(self, stop: Event) -> None:
        while not stop.wait(self.interval):
            self.emit()

    def _require_connection(self) -> None:
        with self._lock:
            if self._connected is None:
                raise TransportError("Simulated device not connected")

    @staticmethod
    def _require_characteristic(characteristic: str) -> None:
        if characteristic.lower() != CHARACTERISTIC_UUID:
            raise TransportError(f"Characteristic {characteristic} not found")
