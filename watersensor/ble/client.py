"""Blocking facade over bleak for one sensor connection or one scan."""

import asyncio
from concurrent.futures import TimeoutError as FutureTimeoutError
from threading import Thread
from typing import Callable, Optional

from bleak import BleakClient, BleakScanner

from watersensor.ble.constants import (
    BLECLIENT_ERROR_ASYNC_TIMEOUT,
    BLEConfig,
    logger,
)
from watersensor.ble.errors import BLEErrorHandler
from watersensor.ble.exceptions import TransportError, TransportTimeout
from watersensor.ble.utils import _with_timeout


class BLEClient:
    """
    Owns a private asyncio loop on a daemon thread and exposes bleak calls as
    plain blocking methods.

    Every bleak callback (notifications, detections, disconnects) fires on
    that loop thread, never on the caller's.
    """

    def __init__(self, address=None, *, log_if_no_address: bool = True, **kwargs) -> None:
        """
        Args:
            address: sensor address; without one the instance is scan-only.
            log_if_no_address: emit a debug line for scan-only instances.
            **kwargs: passed to ``BleakClient`` (``disconnected_callback`` and friends).
        """
        self.error_handler = BLEErrorHandler()
        self.bleak_client: Optional[BleakClient] = None
        self._scanner: Optional[BleakScanner] = None
        self._loop = asyncio.new_event_loop()
        self._loop_thread = Thread(target=self._serve_loop, name="BLEClient", daemon=True)
        try:
            self._loop_thread.start()
        except RuntimeError:
            self._loop.close()
            raise

        if address:
            self.bleak_client = BleakClient(address, **kwargs)
        elif log_if_no_address:
            logger.debug("BLEClient created without an address; scan only")

    def _require_client(self, action: str) -> BleakClient:
        if self.bleak_client is None:
            raise TransportError(f"Cannot {action}: no device address bound")
        return self.bleak_client

    def _call(self, coro, timeout: Optional[float], label: str):
        # bleak's own timeout runs on the loop; the extra second only
        # covers a loop that stopped answering.
        outer = None if timeout is None else timeout + 1.0
        return self.async_await(_with_timeout(coro, timeout, label), timeout=outer)

    def start_scanner(self, detection_callback: Callable, **kwargs) -> None:
        """Begin passive discovery; ``detection_callback(device, adv)`` fires per advertisement."""
        if self._scanner is not None:
            logger.debug("Scanner already running")
            return
        scanner = BleakScanner(detection_callback=detection_callback, **kwargs)
        self.async_await(scanner.start(), timeout=BLEConfig.GATT_IO_TIMEOUT)
        self._scanner = scanner

    def stop_scanner(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            self.async_await(scanner.stop(), timeout=BLEConfig.GATT_IO_TIMEOUT)

    def connect(self, *, await_timeout: Optional[float] = None, **kwargs):
        """Open the link, giving up after ``await_timeout`` seconds."""
        return self._call(self._require_client("connect").connect(**kwargs), await_timeout, "connect")

    def is_connected(self) -> bool:
        """Report bleak's view of the link; any doubt reads as disconnected."""
        client = self.bleak_client
        if client is None:
            return False

        def _probe():
            state = getattr(client, "is_connected", False)
            return bool(state() if callable(state) else state)

        return self.error_handler.safe_execute(
            _probe,
            default_return=False,
            error_msg="Could not query link state",
        )

    def disconnect(self, *, await_timeout: Optional[float] = None, **kwargs):
        self._call(self._require_client("disconnect").disconnect(**kwargs), await_timeout, "disconnect")

    def read_gatt_char(self, *args, timeout: Optional[float] = None, **kwargs):
        """Read one characteristic value and return it as bytes."""
        return self._call(self._require_client("read").read_gatt_char(*args, **kwargs), timeout, "read")

    def start_notify(self, *args, timeout: Optional[float] = None, **kwargs):
        """Enable notifications; ``args`` are bleak's ``(characteristic, handler)``."""
        client = self._require_client("start notify")
        self._call(client.start_notify(*args, **kwargs), timeout, "start notify")

    def stop_notify(self, *args, timeout: Optional[float] = None, **kwargs):
        client = self._require_client("stop notify")
        self._call(client.stop_notify(*args, **kwargs), timeout, "stop notify")

    def services(self):
        """GATT services bleak resolved while connecting; nothing is fetched here."""
        return self._require_client("get services").services

    def close(self):
        """Stop scanning, halt the loop and wait briefly for its thread."""
        self.error_handler.safe_cleanup(self.stop_scanner, "scanner stop")
        self.async_run(self._halt_loop())
        join_timeout = BLEConfig.BLECLIENT_EVENT_THREAD_JOIN_TIMEOUT
        self._loop_thread.join(timeout=join_timeout)
        if self._loop_thread.is_alive():
            logger.warning("BLEClient loop thread still running after %.1fs", join_timeout)

    def __enter__(self):
        return self

    def __exit__(self, _type, _value, _traceback):
        self.close()

    def async_await(self, coro, timeout=None):
        """
        Block until ``coro`` finishes on the private loop.

        A wait longer than ``timeout`` cancels the task and raises
        TransportTimeout. Bleak's own exceptions come through untouched;
        classifying them is the transport's job.
        """
        future = self.async_run(coro)
        try:
            return future.result(timeout)
        except (FutureTimeoutError, RuntimeError) as e:
            try:
                future.cancel()
            except Exception:  # noqa: BLE001 - cancellation is best effort
                logger.debug("Cancelling timed-out BLE call failed", exc_info=True)
            # retrieve a late result so asyncio does not warn about it
            future.add_done_callback(lambda f: None if f.cancelled() else f.exception())
            raise TransportTimeout(BLECLIENT_ERROR_ASYNC_TIMEOUT) from e

    def async_run(self, coro):
        """Submit ``coro`` to the private loop and return its concurrent future."""
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _serve_loop(self):
        self.error_handler.safe_execute(self._loop.run_forever, error_msg="BLE loop crashed")
        self._loop.close()

    async def _halt_loop(self):
        self._loop.stop()
