"""Tests for the testing-history recorder and its stores."""

import json
from datetime import datetime, timezone

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from watersensor.ble.events import DataReceived, Disconnected, EventBus
from watersensor.ble.models import SensorReading, WaterQuality
from watersensor.history import (
    HISTORY_KEY,
    WEEKLY_STATUS_KEY,
    JsonFileStore,
    MemoryStore,
    TestingHistoryRecorder,
    week_key,
)

NOW = datetime(2024, 2, 14, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def reading():
    return SensorReading(
        tds=245.6,
        quality=WaterQuality.CLEAN,
        vibration=0.12,
        device_timestamp=45231,
        received_at=NOW,
        device_id="ESP32-Water-Sensor",
        battery_level=87,
    )


class TestWeekKey:
    @pytest.mark.parametrize(
        "moment, expected",
        [
            (datetime(2024, 2, 14), "2024-W7"),
            (datetime(2021, 1, 1), "2020-W53"),
            (datetime(2024, 12, 30), "2025-W1"),
        ],
    )
    def test_iso_week(self, moment, expected):
        assert week_key(moment) == expected


class TestTestingHistoryRecorder:
    def test_record_prepends_entry_and_marks_week(self, reading):
        store = MemoryStore()
        recorder = TestingHistoryRecorder(store, now=lambda: NOW)

        first = recorder.record(reading)
        second = recorder.record(reading, test_type="automatic")

        assert recorder.history == [second, first]
        assert first["week"] == "2024-W7"
        assert first["date"] == "2024-02-14"
        assert first["sensorData"]["tds"] == 245.6
        assert second["testType"] == "automatic"
        status = recorder.weekly_status["2024-W7"]
        assert status["tested"] is True
        assert status["lastTestData"]["quality"] == "Clean"
        assert recorder.is_week_tested()

    def test_untested_week(self):
        recorder = TestingHistoryRecorder(MemoryStore(), now=lambda: NOW)

        assert not recorder.is_week_tested()
        assert recorder.history == []

    def test_unreadable_store_values_are_ignored(self, reading):
        store = MemoryStore({HISTORY_KEY: "not json", WEEKLY_STATUS_KEY: "[1]"})
        recorder = TestingHistoryRecorder(store, now=lambda: NOW)

        assert recorder.history == []
        assert recorder.weekly_status == {}
        recorder.record(reading)
        assert len(json.loads(store.get(HISTORY_KEY))) == 1

    def test_attach_records_streamed_readings(self, reading):
        recorder = TestingHistoryRecorder(MemoryStore(), now=lambda: NOW)
        bus = EventBus()
        subscription = recorder.attach(bus)

        bus.publish(DataReceived(reading))
        bus.publish(Disconnected("requested"))
        subscription.unsubscribe()
        bus.publish(DataReceived(reading))

        assert [entry["testType"] for entry in recorder.history] == ["automatic"]


class TestJsonFileStore:
    def test_round_trip_through_disk(self, tmp_path):
        path = tmp_path / "history.json"
        JsonFileStore(str(path)).set("key", "value")

        assert JsonFileStore(str(path)).get("key") == "value"
        assert not (tmp_path / "history.json.tmp").exists()

    def test_missing_file_is_empty(self, tmp_path):
        assert JsonFileStore(str(tmp_path / "absent.json")).get("key") is None

    def test_corrupt_file_is_treated_as_empty(self, tmp_path):
        path = tmp_path / "history.json"
        path.write_text("{broken", encoding="utf-8")
        store = JsonFileStore(str(path))

        assert store.get("key") is None
        store.set("key", "value")
        assert json.loads(path.read_text(encoding="utf-8")) == {"key": "value"}
