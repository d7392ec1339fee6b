"""Guarded execution helpers shared by the sensor link components."""

from concurrent.futures import TimeoutError as FutureTimeoutError

from bleak.exc import BleakDBusError, BleakError

from watersensor.ble.constants import logger
from watersensor.ble.exceptions import TransportError

__all__ = ["BLEErrorHandler"]

# Failures a flaky radio link produces routinely; these are logged quietly.
_EXPECTED_LINK_ERRORS = (TransportError, BleakError, BleakDBusError, FutureTimeoutError)


class BLEErrorHandler:
    """Run callables whose failure must not take down the calling thread.

    Used on callback threads (bleak's loop, timers, dispatch) and in teardown
    paths, where an exception has nowhere useful to go.
    """

    @staticmethod
    def safe_execute(
        func,
        default_return=None,
        log_error: bool = True,
        error_msg: str = "Error in operation",
        reraise: bool = False,
    ):
        """Call ``func()`` and hand back ``default_return`` if it raises.

        Args:
        ----
            func (callable): zero-argument callable.
            default_return: result used when ``func`` fails.
            log_error (bool): log the failure, at debug level for link errors
                and with a traceback for anything unexpected.
            error_msg (str): prefix for the log line.
            reraise (bool): log, then let the exception propagate.

        """
        try:
            return func()
        except _EXPECTED_LINK_ERRORS as e:
            if log_error:
                logger.debug("%s: %s", error_msg, e)
            if reraise:
                raise
        except Exception:
            if log_error:
                logger.exception("%s", error_msg)
            if reraise:
                raise
        return default_return

    @staticmethod
    def safe_cleanup(func, cleanup_name: str = "cleanup operation"):
        """Run a teardown step, logging and dropping any error it raises."""
        try:
            func()
        except Exception as e:  # noqa: BLE001 - teardown keeps going
            logger.debug("Error during %s: %s", cleanup_name, e)
