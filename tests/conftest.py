"""
Shared pytest fixtures for the water sensor session tests.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from watersensor.ble.constants import CHARACTERISTIC_UUID, SERVICE_UUID
from watersensor.ble.events import EventBus
from watersensor.ble.exceptions import TransportTimeout
from watersensor.ble.models import Advertisement
from watersensor.ble.session import SessionManager
from watersensor.ble.transport import TransportAdapter

VALID_MESSAGE = (
    '{"tds":245.6,"quality":"Clean","vibration":0.12,"xAxis":0.01,"yAxis":-0.02,'
    '"zAxis":9.81,"timestamp":45231,"deviceId":"ESP32-Water-Sensor","batteryLevel":87}'
)


class FakeClock:
    """Manually advanced monotonic clock; `sleep` advances it instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeTransport(TransportAdapter):
    """
    Scriptable transport double.

    ``connect_outcomes`` and ``read_outcomes`` are consumed one per call:
    an exception instance is raised, anything else is returned. A
    ``TransportTimeout`` outcome advances the attached clock by the attempt
    timeout first, and a successful connect advances it by
    ``connect_duration``.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.available = True
        self.permissions_granted = True
        self.advertisements: List[Advertisement] = []
        self.scan_error: Optional[Exception] = None
        self.scanning = False
        self.scan_starts = 0
        self.scan_stops = 0

        self.connect_outcomes: List[Any] = []
        self.connect_duration = 0.0
        self.connect_calls: List[str] = []
        self.active_connections = 0
        self.on_disconnect: Optional[Callable[[Optional[str]], None]] = None

        self.services: Dict[str, List[str]] = {SERVICE_UUID: [CHARACTERISTIC_UUID]}
        self.discover_calls = 0

        self.read_outcomes: List[Any] = []
        self.read_calls = 0

        self.notify_callback: Optional[Callable[[Any], None]] = None
        self.start_notify_error: Optional[Exception] = None
        self.start_notify_calls = 0
        self.stop_notify_calls = 0
        self.stop_notify_gate: Optional[threading.Event] = None
        self.stop_notify_entered = threading.Event()

        self.disconnect_calls = 0
        self.disconnect_error: Optional[Exception] = None
        self.closed = False
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.available

    def request_permissions(self) -> bool:
        return self.permissions_granted

    def start_scan(self, on_advertisement) -> None:
        self.scan_starts += 1
        if self.scan_error is not None:
            raise self.scan_error
        self.scanning = True
        for advertisement in self.advertisements:
            on_advertisement(advertisement)

    def stop_scan(self) -> None:
        self.scan_stops += 1
        self.scanning = False

    def connect(self, address, *, timeout, on_disconnect):
        self.connect_calls.append(address)
        outcome = self.connect_outcomes.pop(0) if self.connect_outcomes else None
        if isinstance(outcome, TransportTimeout) and self.clock is not None:
            self.clock.advance(timeout)
        if isinstance(outcome, Exception):
            raise outcome
        if self.clock is not None:
            self.clock.advance(self.connect_duration)
        with self._lock:
            self.active_connections += 1
        self.on_disconnect = on_disconnect
        return outcome

    def discover_services(self):
        self.discover_calls += 1
        return self.services

    def read(self, characteristic, *, timeout):
        self.read_calls += 1
        outcome = self.read_outcomes.pop(0) if self.read_outcomes else VALID_MESSAGE.encode()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def start_notify(self, characteristic, callback, *, timeout):
        self.start_notify_calls += 1
        if self.start_notify_error is not None:
            raise self.start_notify_error
        self.notify_callback = callback

    def stop_notify(self, characteristic, *, timeout):
        with self._lock:
            self.stop_notify_calls += 1
        self.stop_notify_entered.set()
        if self.stop_notify_gate is not None:
            self.stop_notify_gate.wait(5.0)
        self.notify_callback = None

    def disconnect(self, *, timeout):
        self.disconnect_calls += 1
        with self._lock:
            self.active_connections = max(0, self.active_connections - 1)
        if self.disconnect_error is not None:
            raise self.disconnect_error

    def close(self) -> None:
        self.closed = True

    # Test helpers

    def notify(self, payload) -> None:
        assert self.notify_callback is not None, "not subscribed"
        self.notify_callback(payload)

    def drop_link(self, cause: Optional[str] = "link lost") -> None:
        assert self.on_disconnect is not None, "never connected"
        self.on_disconnect(cause)


class EventRecorder:
    """Event bus subscriber that remembers everything it receives."""

    def __init__(self):
        self.events: List[Any] = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, cls) -> List[Any]:
        return [event for event in self.events if isinstance(event, cls)]


@pytest.fixture
def clock():
    """
    Provide a fake monotonic clock.

    Returns:
        FakeClock: clock starting at t=1000 s whose `sleep` advances time.
    """
    return FakeClock()


@pytest.fixture
def transport(clock):  # pylint: disable=redefined-outer-name
    """
    Provide a scriptable transport bound to the fake clock.

    Returns:
        FakeTransport: transport whose connects succeed unless scripted otherwise.
    """
    return FakeTransport(clock)


@pytest.fixture
def recorder():
    return EventRecorder()


@pytest.fixture
def session(transport, clock, recorder):  # pylint: disable=redefined-outer-name
    """
    Create a SessionManager wired to the fake transport and clock.

    The event recorder is subscribed before the session is handed out, and
    the session is closed after the test.
    """
    manager = SessionManager(
        transport,
        event_bus=EventBus(),
        clock=clock,
        sleep=clock.sleep,
    )
    manager.subscribe(recorder)
    yield manager
    manager.close()


@pytest.fixture
def connected_session(session):  # pylint: disable=redefined-outer-name
    """Session already connected to ``sensor-1``."""
    session.connect("sensor-1")
    return session


@pytest.fixture
def valid_message():
    """A complete firmware message as sent over the air."""
    return VALID_MESSAGE
