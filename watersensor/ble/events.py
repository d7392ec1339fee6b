"""Connection events and the pubsub-backed event bus."""

import itertools
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, List, Optional, Union

from pubsub import pub

from watersensor.ble.constants import logger
from watersensor.ble.models import DeviceHandle, SensorReading

TOPIC_ROOT = "watersensor.events"


@dataclass(frozen=True)
class Connected:
    """The link to `device` is up and the sensor characteristic was found."""

    device: DeviceHandle


@dataclass(frozen=True)
class Disconnected:
    """The link went down; `cause` is None for an unexplained drop."""

    cause: Optional[str] = None


@dataclass(frozen=True)
class ConnectionFailed:
    """Every connect attempt failed."""

    reason: str


@dataclass(frozen=True)
class DataReceived:
    """A complete reading arrived over notifications."""

    reading: SensorReading


@dataclass(frozen=True)
class DataError:
    """A candidate message could not be turned into a reading."""

    raw: str
    reason: str


ConnectionEvent = Union[Connected, Disconnected, ConnectionFailed, DataReceived, DataError]
EventHandler = Callable[[ConnectionEvent], None]


class Subscription:
    """Token returned by ``EventBus.subscribe``; call it or ``unsubscribe()`` to detach."""

    def __init__(self, bus: "EventBus", token: int):
        self._bus = bus
        self.token = token

    @property
    def active(self) -> bool:
        return self._bus.is_subscribed(self.token)

    def unsubscribe(self) -> bool:
        return self._bus.unsubscribe(self.token)

    def __call__(self) -> bool:
        return self.unsubscribe()


class EventBus:
    """
    Fan connection events out to subscribers through pypubsub.

    Every bus publishes on its own topic under ``watersensor.events`` so
    independent sessions do not see each other's events. Dispatch is
    synchronous and in subscription order. A subscriber that raises is
    logged and skipped; the remaining subscribers still run and the
    publisher never sees the error.
    """

    _bus_ids = itertools.count()

    def __init__(self, name: Optional[str] = None):
        self.topic = f"{TOPIC_ROOT}.{name or 'bus%d' % next(EventBus._bus_ids)}"
        self._lock = RLock()
        self._listeners: Dict[int, Callable[[ConnectionEvent], None]] = {}
        self._tokens = itertools.count()
        self._dispatch_depth = 0
        self._pending_additions: List[Callable[[ConnectionEvent], None]] = []
        self._pending_removals: List[Callable[[ConnectionEvent], None]] = []

    def subscribe(self, handler: EventHandler) -> Subscription:
        """
        Register `handler` for every event published on this bus.

        Returns:
            Subscription: token used to detach the handler.
        """
        with self._lock:
            token = next(self._tokens)

            def _deliver(event):
                if token not in self._listeners:
                    return
                try:
                    handler(event)
                except Exception:  # noqa: BLE001 - subscriber failures stay isolated
                    logger.exception(
                        "Event subscriber %r failed handling %s",
                        handler,
                        type(event).__name__,
                    )

            # pypubsub keeps weak references; the dict holds the strong one.
            self._listeners[token] = _deliver
            if self._dispatch_depth:
                self._pending_additions.append(_deliver)
            else:
                pub.subscribe(_deliver, self.topic)
        return Subscription(self, token)

    def unsubscribe(self, token: int) -> bool:
        """Detach the handler registered under `token`; False if it was already gone."""
        with self._lock:
            listener = self._listeners.pop(token, None)
            if listener is None:
                return False
            if listener in self._pending_additions:
                self._pending_additions.remove(listener)
            elif self._dispatch_depth:
                # pypubsub's listener table must not change mid-dispatch
                self._pending_removals.append(listener)
            else:
                pub.unsubscribe(listener, self.topic)
            return True

    def is_subscribed(self, token: int) -> bool:
        with self._lock:
            return token in self._listeners

    def publish(self, event: ConnectionEvent) -> None:
        """Dispatch `event` to the current subscribers."""
        with self._lock:
            if not self._listeners:
                logger.debug("No subscribers for %s", type(event).__name__)
                return
            logger.debug("Publishing %s on %s", type(event).__name__, self.topic)
            self._dispatch_depth += 1
            try:
                pub.sendMessage(self.topic, event=event)
            finally:
                self._dispatch_depth -= 1
                if not self._dispatch_depth:
                    removals, self._pending_removals = self._pending_removals, []
                    for listener in removals:
                        pub.unsubscribe(listener, self.topic)
                    additions, self._pending_additions = self._pending_additions, []
                    for listener in additions:
                        pub.subscribe(listener, self.topic)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)
