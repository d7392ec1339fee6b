"""Thread and timer coordination for the sensor session."""

from threading import RLock, Thread, Timer, current_thread
from typing import Callable, Dict, List, Optional

from watersensor.ble.constants import EVENT_THREAD_JOIN_TIMEOUT, logger


class ThreadCoordinator:
    """
    Central bookkeeping for the helper threads and timers a session starts.

    Features:
        - Thread lifecycle management (create, start, join, cleanup)
        - Named one-shot timers that replace each other and can be cancelled
        - Bounded calls that give up on a worker after a deadline
    """

    def __init__(self):
        self._lock = RLock()
        self._threads: List[Thread] = []
        self._timers: Dict[str, Timer] = {}

    def create_thread(
        self, target, name: str, *, daemon: bool = True, args=(), kwargs=None
    ) -> Thread:
        """
        Create and register a Thread tracked by this coordinator without starting it.

        Parameters:
            target (callable): Callable to be executed by the thread.
            name (str): Name assigned to the thread.
            daemon (bool): Whether the thread should run as a daemon.
            args (tuple): Positional arguments to pass to `target`.
            kwargs (dict | None): Keyword arguments to pass to `target`.

        Returns:
            Thread: The created Thread instance (tracked, not started).
        """
        with self._lock:
            self._threads = [t for t in self._threads if t.is_alive() or t.ident is None]
            thread = Thread(
                target=target, name=name, daemon=daemon, args=args, kwargs=kwargs
            )
            self._threads.append(thread)
            return thread

    def start_thread(self, thread: Thread):
        """Start the given thread if it is tracked by this coordinator."""
        with self._lock:
            if thread in self._threads:
                thread.start()

    def join_thread(self, thread: Thread, timeout: Optional[float] = None) -> bool:
        """
        Join a tracked thread unless it is the calling thread.

        Returns:
            bool: True if the thread has finished when this returns.
        """
        with self._lock:
            should_join = (
                thread in self._threads
                and thread.is_alive()
                and thread is not current_thread()
            )
        if should_join:
            thread.join(timeout=timeout)
        return not thread.is_alive()

    def run_bounded(self, func: Callable[[], None], timeout: float, label: str) -> bool:
        """
        Run `func` on a worker thread and wait at most `timeout` seconds for it.

        Exceptions raised by `func` are logged and treated as completion; a
        worker that outlives the deadline is abandoned.

        Returns:
            bool: True if `func` finished (successfully or not) within the deadline.
        """

        def _worker():
            try:
                func()
            except Exception as e:  # noqa: BLE001 - logged, caller only needs completion
                logger.debug("%s failed: %s", label, e)

        thread = self.create_thread(_worker, name=f"WaterSensor-{label}")
        self.start_thread(thread)
        finished = self.join_thread(thread, timeout=timeout)
        if not finished:
            logger.warning("%s did not finish within %.1fs; continuing", label, timeout)
        return finished

    def schedule(self, name: str, delay: float, func: Callable[[], None]) -> Timer:
        """
        Arm a one-shot timer under `name`, cancelling any timer already armed under it.
        """
        with self._lock:
            previous = self._timers.pop(name, None)
            if previous is not None:
                previous.cancel()

            def _fire():
                with self._lock:
                    if self._timers.get(name) is timer:
                        del self._timers[name]
                func()

            timer = Timer(delay, _fire)
            timer.name = f"WaterSensor-{name}"
            timer.daemon = True
            self._timers[name] = timer
            timer.start()
            return timer

    def cancel(self, name: str) -> bool:
        """Cancel the timer armed under `name`; False if none was pending."""
        with self._lock:
            timer = self._timers.pop(name, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def is_scheduled(self, name: str) -> bool:
        with self._lock:
            return name in self._timers

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def cleanup(self):
        """
        Cancel every timer, join tracked threads with a short timeout and forget them.
        """
        self.cancel_all()
        with self._lock:
            current = current_thread()
            to_join = [
                thread
                for thread in self._threads
                if thread.is_alive() and thread is not current
            ]
            self._threads.clear()

        for thread in to_join:
            thread.join(timeout=EVENT_THREAD_JOIN_TIMEOUT)
