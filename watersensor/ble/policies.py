"""Delay schedules for retrying sensor link operations."""

from typing import Callable, Optional

from watersensor.ble.constants import BLEConfig
from watersensor.ble.utils import _sleep


class ReconnectPolicy:
    """
    Fixed pause between attempts and an optional cap on retries.

    ``max_retries=None`` never stops retrying.
    """

    def __init__(self, *, delay: float = 1.0, max_retries: Optional[int] = None):
        problems = []
        if delay < 0:
            problems.append(f"delay={delay} is negative")
        if max_retries is not None and max_retries < 0:
            problems.append(f"max_retries={max_retries} is negative")
        if problems:
            raise ValueError("Invalid retry policy: " + "; ".join(problems))

        self.delay = delay
        self.max_retries = max_retries

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (zero based)."""
        return self.delay

    def should_retry(self, attempt: int) -> bool:
        return self.max_retries is None or attempt < self.max_retries

    def sleep_with_backoff(
        self, attempt: int, sleep: Optional[Callable[[float], None]] = None
    ) -> None:
        """Block for ``get_delay(attempt)`` using ``sleep`` (``time.sleep`` by default)."""
        (sleep or _sleep)(self.get_delay(attempt))


class RetryPolicy:
    """Named presets built from BLEConfig."""

    @staticmethod
    def connect() -> ReconnectPolicy:
        """CONNECT_RETRY_DELAY between tries, CONNECT_MAX_ATTEMPTS tries in total."""
        return ReconnectPolicy(
            delay=BLEConfig.CONNECT_RETRY_DELAY,
            max_retries=BLEConfig.CONNECT_MAX_ATTEMPTS - 1,
        )
