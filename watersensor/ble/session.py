"""Session manager: connection lifecycle, monitoring and single reads."""

import codecs
import time
from datetime import datetime, timezone
from functools import partial
from threading import RLock
from typing import Callable, Iterable, Optional, Union

from watersensor.ble.constants import (
    BLEConfig,
    CHARACTERISTIC_UUID,
    ERROR_CHARACTERISTIC_MISSING,
    ERROR_CONNECT_CANCELLED,
    ERROR_CONNECT_EXHAUSTED,
    ERROR_LINK_LOST_DURING_SETUP,
    ERROR_NO_DATA,
    ERROR_NOT_CONNECTED,
    ERROR_OPERATION_IN_PROGRESS,
    ERROR_PERMISSION_DENIED,
    ERROR_READ_FAILED,
    ERROR_SERVICE_MISSING,
    ERROR_SUBSCRIBE_FAILED,
    ERROR_TRANSPORT_UNAVAILABLE,
    SERVICE_UUID,
    UNRESOLVED_GATT_PATTERN,
    logger,
)
from watersensor.ble.coordination import ThreadCoordinator
from watersensor.ble.debounce import EventDebouncer
from watersensor.ble.discovery import ScanSession
from watersensor.ble.errors import BLEErrorHandler
from watersensor.ble.events import (
    Connected,
    ConnectionEvent,
    ConnectionFailed,
    DataError,
    DataReceived,
    Disconnected,
    EventBus,
    EventHandler,
    Subscription,
)
from watersensor.ble.exceptions import (
    ConnectFailed,
    ConnectTimeout,
    DiscoveryFailed,
    MalformedMessage,
    NotConnected,
    OperationInProgress,
    PermissionDenied,
    ReadFailed,
    SubscribeFailed,
    TransportError,
    TransportPermissionError,
    TransportTimeout,
    TransportUnavailable,
    TransportUnavailableError,
    WaterSensorError,
)
from watersensor.ble.models import (
    ActiveConnection,
    DeviceHandle,
    Frame,
    SensorReading,
    SessionStatus,
)
from watersensor.ble.normalizer import MessageNormalizer
from watersensor.ble.policies import RetryPolicy
from watersensor.ble.reassembly import FrameReassembler
from watersensor.ble.state import BLEStateManager, ConnectionState
from watersensor.ble.transport import Payload, TransportAdapter
from watersensor.ble.utils import _sleep, decode_payload

ReadingCallback = Callable[[SensorReading], None]

IDLE_RECOVERY_TIMER = "idle-recovery"


class SessionManager:
    """
    Own the logical connection to one water sensor.

    The session is the single source of truth for connection state. Public
    calls are synchronous: ``connect``, ``request_single_reading`` and
    ``stop_monitoring`` block up to their timeouts. Notification and
    disconnect callbacks arrive on the transport's thread; chunk handling is
    serialized so readings are delivered in arrival order.

    Lifecycle operations (connect, start/stop monitoring, disconnect) never
    interleave. ``connect`` and ``start_monitoring`` raise
    :class:`OperationInProgress` when another one is running and a
    concurrent ``stop_monitoring`` returns without doing anything.
    ``disconnect`` supersedes whatever is in flight: the state drops to
    Disconnected at once and the interrupted operation releases the link
    when it unwinds.
    """

    def __init__(
        self,
        transport: TransportAdapter,
        *,
        event_bus: Optional[EventBus] = None,
        reassembler: Optional[FrameReassembler] = None,
        normalizer: Optional[MessageNormalizer] = None,
        clock: Optional[Callable[[], float]] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.transport = transport
        self.events = event_bus or EventBus()
        self.reassembler = reassembler or FrameReassembler()
        self.normalizer = normalizer or MessageNormalizer()
        self._clock = clock or time.monotonic
        self._sleep = sleep or _sleep

        self._state = BLEStateManager()
        self._debouncer = EventDebouncer(clock=self._clock)
        self._coordinator = ThreadCoordinator()
        self.error_handler = BLEErrorHandler()

        self._scan_lock = RLock()
        self._scan: Optional[ScanSession] = None

        # Guards the reassembler, the reading callback and the active subscription
        self._chunk_lock = RLock()
        self._on_reading: Optional[ReadingCallback] = None
        self._subscription_id = 0
        self._active_subscription: Optional[int] = None
        self._decoder = _utf8_decoder()

        # Both flags are guarded by the state lock
        self._superseded = False
        self._link_lost = False

    # ------------------------------------------------------------------
    # Status and events

    @property
    def state(self) -> ConnectionState:
        return self._state.state

    def get_status(self) -> SessionStatus:
        """Snapshot of the connection state; never waits on the radio."""
        with self._state.lock:
            return SessionStatus(state=self._state.state, device=self._state.device)

    def subscribe(self, handler: EventHandler) -> Subscription:
        """Receive every :data:`ConnectionEvent` this session publishes."""
        return self.events.subscribe(handler)

    # ------------------------------------------------------------------
    # Discovery

    def scan(
        self,
        on_found: Callable[[DeviceHandle], None],
        *,
        timeout: Optional[float] = None,
    ) -> ScanSession:
        """
        Look for sensors for up to `timeout` seconds (10 by default).

        Returns:
            ScanSession: running scan; call ``cancel()`` to stop it early.

        Raises:
            TransportUnavailable: Bluetooth is absent or off.
            PermissionDenied: the platform refused Bluetooth access.
        """
        if not self.transport.is_available():
            raise TransportUnavailable(ERROR_TRANSPORT_UNAVAILABLE)
        if not self.transport.request_permissions():
            raise PermissionDenied(ERROR_PERMISSION_DENIED)

        self._cancel_scan()
        with self._state.lock:
            state = self._state.state
            if state in (ConnectionState.CONNECTING, ConnectionState.DISCONNECTING):
                raise OperationInProgress(
                    ERROR_OPERATION_IN_PROGRESS.format("scan", state.value)
                )
            if state == ConnectionState.DISCONNECTED:
                self._state.transition_to(ConnectionState.SCANNING)

        session = ScanSession(
            self.transport,
            on_found,
            coordinator=self._coordinator,
            on_finished=self._scan_finished,
            timeout=timeout,
        )
        with self._scan_lock:
            self._scan = session
        try:
            return session.start()
        except TransportPermissionError as e:
            raise PermissionDenied(ERROR_PERMISSION_DENIED) from e
        except TransportUnavailableError as e:
            raise TransportUnavailable(ERROR_TRANSPORT_UNAVAILABLE) from e
        except TransportError as e:
            raise WaterSensorError(f"Scan failed: {e}") from e

    def _scan_finished(self, session: ScanSession) -> None:
        with self._scan_lock:
            if self._scan is session:
                self._scan = None
        with self._state.lock:
            if self._state.state == ConnectionState.SCANNING:
                self._state.transition_to(ConnectionState.DISCONNECTED)

    def _cancel_scan(self) -> None:
        with self._scan_lock:
            session = self._scan
        if session is not None:
            session.cancel()

    # ------------------------------------------------------------------
    # Connection

    def connect(self, device: Union[DeviceHandle, str]) -> ActiveConnection:
        """
        Connect to `device`, replacing any current connection.

        Up to ``BLEConfig.CONNECT_MAX_ATTEMPTS`` attempts are made, each
        bounded by ``CONNECT_ATTEMPT_TIMEOUT`` and separated by
        ``CONNECT_RETRY_DELAY``. The sensor service and characteristic must
        be present once the link is up.

        Raises:
            ConnectTimeout: the last attempt timed out.
            ConnectFailed: the transport refused or dropped the link, or
                ``disconnect`` was called before the connect finished.
            DiscoveryFailed: the sensor service or characteristic is missing.
            OperationInProgress: another lifecycle operation is running.
        """
        if isinstance(device, str):
            device = DeviceHandle(id=device)
        self._claim("connect")
        try:
            return self._connect(device)
        finally:
            self._finish("connect")

    def _connect(self, device: DeviceHandle) -> ActiveConnection:
        self._cancel_scan()
        if self._state.is_connected:
            logger.debug("Replacing current connection with %s", device.id)
            self._teardown(cause="replaced", debounced=True)

        with self._state.lock:
            started = not self._superseded and self._state.transition_to(
                ConnectionState.CONNECTING, device
            )
        if not started:
            self._check_superseded(device, 0)
            raise OperationInProgress(
                ERROR_OPERATION_IN_PROGRESS.format("connect", self._state.state.value)
            )

        policy = RetryPolicy.connect()
        max_attempts = BLEConfig.CONNECT_MAX_ATTEMPTS
        last_error: Optional[TransportError] = None
        reported_name: Optional[str] = None
        attempt = 0
        while True:
            self._check_superseded(device, attempt)
            attempt += 1
            logger.debug(
                "Connecting to %s (attempt %d/%d)", device.label, attempt, max_attempts
            )
            with self._state.lock:
                self._link_lost = False
            try:
                reported_name = self.transport.connect(
                    device.id,
                    timeout=BLEConfig.CONNECT_ATTEMPT_TIMEOUT,
                    on_disconnect=self._handle_transport_disconnect,
                )
                break
            except TransportPermissionError as e:
                self._fail_connect(device, attempt, e)
                raise PermissionDenied(ERROR_PERMISSION_DENIED) from e
            except TransportUnavailableError as e:
                self._fail_connect(device, attempt, e)
                raise TransportUnavailable(ERROR_TRANSPORT_UNAVAILABLE) from e
            except TransportError as e:
                last_error = e
                logger.warning(
                    "Connect attempt %d/%d to %s failed: %s",
                    attempt,
                    max_attempts,
                    device.label,
                    e,
                )
            if attempt >= max_attempts or not policy.should_retry(attempt - 1):
                reason = self._fail_connect(device, attempt, last_error)
                if isinstance(last_error, TransportTimeout):
                    raise ConnectTimeout(reason) from last_error
                raise ConnectFailed(reason) from last_error
            policy.sleep_with_backoff(attempt - 1, self._sleep)

        self._check_superseded(device, attempt)
        try:
            self._verify_services(device)
        except DiscoveryFailed as e:
            self._release_link("disconnect after failed discovery")
            self._fail_connect(device, attempt, e)
            raise

        connected = DeviceHandle(
            id=device.id, name=device.name or reported_name, rssi=device.rssi
        )
        with self._state.lock:
            # A drop reported while Connecting belongs to this attempt
            aborted = self._superseded or self._link_lost
            up = not aborted and self._state.transition_to(
                ConnectionState.CONNECTED, connected
            )
        if not up:
            self._check_superseded(device, attempt)
            self._release_link("disconnect after lost link")
            reason = self._fail_connect(device, attempt, ERROR_LINK_LOST_DURING_SETUP)
            raise ConnectFailed(reason)
        logger.info("Connected to %s after %d attempt(s)", connected.label, attempt)
        self._publish_debounced(Connected(connected), BLEConfig.CONNECT_EVENT_DEBOUNCE)
        return ActiveConnection(
            device=connected,
            attempts=attempt,
            connected_at=datetime.now(timezone.utc),
        )

    def _fail_connect(
        self,
        device: DeviceHandle,
        attempts: int,
        error: Union[BaseException, str, None],
    ) -> str:
        reason = ERROR_CONNECT_EXHAUSTED.format(device.label, attempts, error)
        logger.warning("%s", reason)
        with self._state.lock:
            if self._state.state != ConnectionState.DISCONNECTED:
                self._state.transition_to(ConnectionState.DISCONNECTED)
        self._publish_debounced(
            ConnectionFailed(reason), BLEConfig.DISCONNECT_EVENT_DEBOUNCE
        )
        return reason

    def _verify_services(self, device: DeviceHandle) -> None:
        """Check the sensor service and characteristic are present on the peripheral."""
        try:
            services = self.transport.discover_services()
        except TransportError as e:
            raise DiscoveryFailed(
                f"Service discovery failed on {device.label}: {e}"
            ) from e
        characteristics = _lookup_service(services, SERVICE_UUID)
        if characteristics is None:
            raise DiscoveryFailed(
                ERROR_SERVICE_MISSING.format(SERVICE_UUID, device.label)
            )
        if CHARACTERISTIC_UUID not in {str(c).lower() for c in characteristics}:
            raise DiscoveryFailed(
                ERROR_CHARACTERISTIC_MISSING.format(CHARACTERISTIC_UUID, device.label)
            )

    def disconnect(self) -> None:
        """
        Stop scanning and monitoring and release the link.

        Always ends Disconnected, even when the transport reports an error.
        ``Disconnected("requested")`` is published when a link was up.

        A connect or monitoring change still in flight is superseded: the
        state drops to Disconnected before this returns and the interrupted
        call fails once it notices. A second concurrent disconnect is a no-op.
        """
        with self._state.lock:
            if self._state.begin_operation("disconnect"):
                running = None
            else:
                running = self._state.operation
                if running == "disconnect":
                    logger.debug("Ignoring disconnect while another is in progress")
                    return
                self._superseded = True
                was_connected = self._state.is_connected
                if self._state.state != ConnectionState.DISCONNECTED:
                    self._state.transition_to(ConnectionState.DISCONNECTED)
        if running is None:
            try:
                self._teardown(cause="requested", debounced=False)
            finally:
                self._state.end_operation("disconnect")
            return

        logger.info("Disconnect requested while %s is in progress", running)
        self._cancel_scan()
        with self._chunk_lock:
            self._release_subscription(self._active_subscription)
        if was_connected:
            self._publish_now(Disconnected(cause="requested"))

    def _teardown(self, *, cause: str, debounced: bool) -> None:
        self._cancel_scan()
        self._stop_monitoring()
        with self._state.lock:
            was_connected = self._state.is_connected
            if was_connected:
                self._state.transition_to(ConnectionState.DISCONNECTING)
        try:
            self.transport.disconnect(timeout=BLEConfig.DISCONNECT_TIMEOUT)
        except TransportError as e:
            logger.warning("Transport error while disconnecting: %s", e)
        finally:
            with self._state.lock:
                if self._state.state != ConnectionState.DISCONNECTED:
                    self._state.transition_to(ConnectionState.DISCONNECTED)
        if not was_connected:
            return
        event = Disconnected(cause=cause)
        if debounced:
            self._publish_debounced(event, BLEConfig.DISCONNECT_EVENT_DEBOUNCE)
        else:
            self._publish_now(event)

    def close(self) -> None:
        """Disconnect if needed and release the transport."""
        with self._scan_lock:
            scanning = self._scan is not None
        if scanning or self._state.state != ConnectionState.DISCONNECTED:
            self.disconnect()
        self._coordinator.cleanup()
        self.error_handler.safe_cleanup(self.transport.close, "transport close")

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    def _handle_transport_disconnect(self, cause: Optional[str] = None) -> None:
        """Platform callback: the link dropped without being asked to."""
        with self._state.lock:
            state = self._state.state
            if state == ConnectionState.CONNECTING:
                # connect() checks this before declaring the link up
                self._link_lost = True
                logger.info(
                    "Link dropped while connecting: %s", cause or "no reason given"
                )
                return
            if state not in (ConnectionState.CONNECTED, ConnectionState.MONITORING):
                logger.debug("Ignoring disconnect callback in state %s", state.value)
                return
            self._state.transition_to(ConnectionState.DISCONNECTED)
        logger.warning("Sensor link lost: %s", cause or "no reason given")
        with self._chunk_lock:
            self._release_subscription(self._active_subscription)
        self._publish_debounced(
            Disconnected(cause=cause), BLEConfig.DISCONNECT_EVENT_DEBOUNCE
        )

    # ------------------------------------------------------------------
    # Reading

    def request_single_reading(self) -> SensorReading:
        """
        Read the sensor characteristic once.

        A read that fails because the characteristic became unresolvable is
        retried once after service rediscovery.

        Raises:
            NotConnected: no link is up.
            ReadFailed: the read failed or returned nothing.
            MalformedMessage: the value is not a JSON object.
        """
        if not self._state.is_connected:
            raise NotConnected(ERROR_NOT_CONNECTED)
        payload = self._read_characteristic()
        text = decode_payload(payload)
        if not text.strip():
            raise ReadFailed(ERROR_NO_DATA)
        return self.normalizer.normalize(text)

    def _read_characteristic(self) -> Payload:
        try:
            return self.transport.read(
                CHARACTERISTIC_UUID, timeout=BLEConfig.GATT_IO_TIMEOUT
            )
        except TransportError as e:
            if not UNRESOLVED_GATT_PATTERN.search(str(e)):
                raise ReadFailed(ERROR_READ_FAILED.format(e)) from e
            logger.info("Sensor characteristic unresolved (%s); rediscovering", e)
        device = self._state.device or DeviceHandle(id="sensor")
        try:
            self._verify_services(device)
            return self.transport.read(
                CHARACTERISTIC_UUID, timeout=BLEConfig.GATT_IO_TIMEOUT
            )
        except (TransportError, DiscoveryFailed) as e:
            raise ReadFailed(ERROR_READ_FAILED.format(e)) from e

    # ------------------------------------------------------------------
    # Monitoring

    def start_monitoring(self, on_reading: Optional[ReadingCallback] = None) -> None:
        """
        Stream readings from sensor notifications.

        Each reading goes to `on_reading` and is published as
        :class:`DataReceived`. Restarting replaces the previous stream.

        Raises:
            NotConnected: no link is up.
            SubscribeFailed: notifications could not be enabled; the session
                stays Connected.
        """
        self._claim("start monitoring")
        try:
            if not self._state.is_connected:
                raise NotConnected(ERROR_NOT_CONNECTED)
            if self._active_subscription is not None:
                self._stop_monitoring()

            with self._chunk_lock:
                self.reassembler.reset()
                self._subscription_id += 1
                subscription = self._subscription_id
                self._active_subscription = subscription
                self._on_reading = on_reading
            try:
                self.transport.start_notify(
                    CHARACTERISTIC_UUID,
                    partial(self._handle_notification, subscription),
                    timeout=BLEConfig.NOTIFICATION_START_TIMEOUT,
                )
            except TransportError as e:
                self._release_subscription(subscription)
                raise SubscribeFailed(ERROR_SUBSCRIBE_FAILED.format(e)) from e

            if not self._state.transition_to(ConnectionState.MONITORING):
                self._release_subscription(subscription)
                raise NotConnected(ERROR_NOT_CONNECTED)
            logger.debug("Monitoring sensor notifications")
        finally:
            self._finish("start monitoring")

    def stop_monitoring(self) -> None:
        """
        Stop the notification stream; safe to call at any time.

        The transport gets ``STOP_NOTIFY_GRACE_PERIOD`` seconds to confirm,
        after which local cleanup proceeds regardless.
        """
        if not self._state.begin_operation("stop monitoring"):
            logger.debug(
                "Ignoring stop_monitoring while %s is in progress",
                self._state.operation,
            )
            return
        try:
            self._stop_monitoring()
        finally:
            self._finish("stop monitoring")

    def _stop_monitoring(self) -> None:
        with self._chunk_lock:
            subscription = self._active_subscription
            self._release_subscription(subscription)
        if subscription is None:
            logger.debug("Not monitoring; nothing to stop")
            return
        grace = BLEConfig.STOP_NOTIFY_GRACE_PERIOD
        self._coordinator.run_bounded(
            lambda: self.transport.stop_notify(CHARACTERISTIC_UUID, timeout=grace),
            grace,
            "stop-notify",
        )
        with self._state.lock:
            if self._state.state == ConnectionState.MONITORING:
                self._state.transition_to(ConnectionState.CONNECTED)
        logger.debug("Monitoring stopped")

    def _release_subscription(self, subscription: Optional[int]) -> None:
        with self._chunk_lock:
            if self._active_subscription == subscription:
                self._active_subscription = None
                self._on_reading = None
            self._coordinator.cancel(IDLE_RECOVERY_TIMER)
            self.reassembler.reset()
            self._decoder.reset()

    def _handle_notification(self, subscription: int, payload: Payload) -> None:
        with self._chunk_lock:
            if subscription != self._active_subscription:
                logger.debug("Dropping notification for a stale subscription")
                return
            if isinstance(payload, (bytes, bytearray, memoryview)):
                # multi-byte characters may straddle notifications
                text = self._decoder.decode(bytes(payload))
            else:
                text = decode_payload(payload)
            if not text:
                return
            self._dispatch_frames(self.reassembler.feed(text))
            if len(self.reassembler):
                self._coordinator.schedule(
                    IDLE_RECOVERY_TIMER,
                    BLEConfig.PARTIAL_RECOVERY_IDLE_DELAY,
                    partial(self._flush_partial, subscription),
                )
            else:
                self._coordinator.cancel(IDLE_RECOVERY_TIMER)

    def _flush_partial(self, subscription: int) -> None:
        """Idle timer: salvage whatever the stream left in the buffer."""
        with self._chunk_lock:
            if subscription != self._active_subscription:
                return
            logger.debug("Notification stream idle; attempting partial recovery")
            tail = self._decoder.decode(b"", final=True)
            if tail:
                self._dispatch_frames(self.reassembler.feed(tail))
            frame = self.reassembler.flush()
            if frame is not None:
                self._dispatch_frames([frame])

    def _dispatch_frames(self, frames: Iterable[Frame]) -> None:
        for frame in frames:
            try:
                reading = self.normalizer.normalize(
                    frame.text, recovered=frame.recovered
                )
            except MalformedMessage as e:
                logger.warning("Discarding malformed sensor message: %s", e)
                self.events.publish(DataError(raw=frame.text, reason=str(e)))
                continue
            callback = self._on_reading
            if callback is not None:
                try:
                    callback(reading)
                except Exception:  # noqa: BLE001 - reading consumer failures stay isolated
                    logger.exception("Reading callback failed")
            self.events.publish(DataReceived(reading))

    # ------------------------------------------------------------------
    # Helpers

    def _claim(self, name: str) -> None:
        if not self._state.begin_operation(name):
            raise OperationInProgress(
                ERROR_OPERATION_IN_PROGRESS.format(
                    name, self._state.operation or "another operation"
                )
            )

    def _finish(self, name: str) -> None:
        """Free the slot; a superseded operation drops the link first."""
        while True:
            with self._state.lock:
                if not self._superseded:
                    self._state.end_operation(name)
                    return
                self._superseded = False
            logger.debug("Releasing link after disconnect superseded %s", name)
            self._release_link(f"disconnect after superseded {name}")

    def _check_superseded(self, device: DeviceHandle, attempts: int) -> None:
        if self._superseded:
            raise ConnectFailed(
                self._fail_connect(device, attempts, ERROR_CONNECT_CANCELLED)
            )

    def _release_link(self, label: str) -> None:
        self.error_handler.safe_cleanup(
            lambda: self.transport.disconnect(timeout=BLEConfig.DISCONNECT_TIMEOUT),
            label,
        )

    def _publish_now(self, event: ConnectionEvent) -> None:
        self._debouncer.mark()
        self.events.publish(event)

    def _publish_debounced(self, event: ConnectionEvent, window: float) -> bool:
        if not self._debouncer.should_emit(window):
            logger.debug(
                "Suppressing %s inside %.1fs debounce window",
                type(event).__name__,
                window,
            )
            return False
        self.events.publish(event)
        return True


def _utf8_decoder():
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


def _lookup_service(services, uuid: str):
    for service_uuid, characteristics in (services or {}).items():
        if str(service_uuid).lower() == uuid:
            return characteristics
    return None
