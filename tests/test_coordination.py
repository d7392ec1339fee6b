"""Tests for ThreadCoordinator timers and bounded calls."""

import threading

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from watersensor.ble.coordination import ThreadCoordinator


@pytest.fixture
def coordinator():
    coordinator = ThreadCoordinator()
    yield coordinator
    coordinator.cleanup()


class TestTimers:
    def test_schedule_fires_once(self, coordinator):
        fired = threading.Event()

        coordinator.schedule("tick", 0.01, fired.set)

        assert fired.wait(2.0)
        assert not coordinator.is_scheduled("tick")

    def test_rescheduling_replaces_pending_timer(self, coordinator):
        calls = []
        done = threading.Event()

        coordinator.schedule("idle", 0.5, lambda: calls.append("first"))
        coordinator.schedule("idle", 0.01, lambda: (calls.append("second"), done.set()))

        assert done.wait(2.0)
        assert calls == ["second"]

    def test_cancel(self, coordinator):
        fired = threading.Event()
        coordinator.schedule("idle", 0.05, fired.set)

        assert coordinator.cancel("idle") is True
        assert coordinator.cancel("idle") is False
        assert not fired.wait(0.2)

    def test_cancel_all(self, coordinator):
        coordinator.schedule("a", 5.0, lambda: None)
        coordinator.schedule("b", 5.0, lambda: None)

        coordinator.cancel_all()

        assert not coordinator.is_scheduled("a")
        assert not coordinator.is_scheduled("b")


class TestRunBounded:
    def test_completes(self, coordinator):
        calls = []

        assert coordinator.run_bounded(lambda: calls.append(1), 1.0, "quick")
        assert calls == [1]

    def test_exception_counts_as_finished(self, coordinator):
        def _boom():
            raise RuntimeError("stop notify failed")

        assert coordinator.run_bounded(_boom, 1.0, "boom")

    def test_gives_up_after_deadline(self, coordinator):
        gate = threading.Event()
        try:
            assert not coordinator.run_bounded(lambda: gate.wait(5.0), 0.05, "hang")
        finally:
            gate.set()


class TestThreads:
    def test_join_thread(self, coordinator):
        thread = coordinator.create_thread(lambda: None, name="worker")
        coordinator.start_thread(thread)

        assert coordinator.join_thread(thread, timeout=2.0)

    def test_untracked_thread_is_not_started(self, coordinator):
        thread = threading.Thread(target=lambda: None)

        coordinator.start_thread(thread)

        assert thread.ident is None
