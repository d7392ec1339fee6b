"""Testing-history bookkeeping for received sensor readings."""

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from watersensor.ble.events import ConnectionEvent, DataReceived, EventBus, Subscription
from watersensor.ble.models import SensorReading

logger = logging.getLogger(__name__)

HISTORY_KEY = "waterTestingHistory"
WEEKLY_STATUS_KEY = "weeklyTestingStatus"


def week_key(moment: datetime) -> str:
    """ISO week label such as ``2024-W7``."""
    iso_year, iso_week, _ = moment.isocalendar()
    return f"{iso_year}-W{iso_week}"


class KeyValueStore(ABC):
    """String-valued persistent store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value stored under `key`, or None."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Store `value` under `key`."""


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = RLock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value


class JsonFileStore(KeyValueStore):
    """
    Keep every key in one JSON object on disk.

    Writes go to a temporary file that replaces the original, so a crash
    never leaves a half-written store behind.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = RLock()

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.warning("History store %s is corrupt; starting empty", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)


class TestingHistoryRecorder:
    """
    Append sensor readings to the weekly water-testing log.

    Each record lands at the front of ``waterTestingHistory`` and marks the
    reading's ISO week as tested in ``weeklyTestingStatus``. Readings
    delivered over notifications are recorded as ``automatic`` once the
    recorder is attached to a session's event bus.
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        store: KeyValueStore,
        *,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._lock = RLock()

    def _load_json(self, key: str, default):
        raw = self.store.get(key)
        if not raw:
            return default
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s entry", key)
            return default
        return value if isinstance(value, type(default)) else default

    @property
    def history(self) -> List[Dict[str, Any]]:
        return self._load_json(HISTORY_KEY, [])

    @property
    def weekly_status(self) -> Dict[str, Any]:
        return self._load_json(WEEKLY_STATUS_KEY, {})

    def is_week_tested(self, moment: Optional[datetime] = None) -> bool:
        entry = self.weekly_status.get(week_key(moment or self._now()))
        return bool(entry and entry.get("tested"))

    def record(self, reading: SensorReading, test_type: str = "manual") -> Dict[str, Any]:
        """Store one reading; returns the history entry that was written."""
        now = self._now()
        day = now.date().isoformat()
        week = week_key(now)
        sensor_data = reading.to_dict()
        entry = {
            "id": int(time.time() * 1000),
            "date": day,
            "timestamp": now.isoformat(),
            "week": week,
            "sensorData": sensor_data,
            "testType": test_type,
        }
        with self._lock:
            history = self.history
            history.insert(0, entry)
            weekly = self.weekly_status
            weekly[week] = {
                "tested": True,
                "date": day,
                "timestamp": now.isoformat(),
                "lastTestData": sensor_data,
            }
            self.store.set(HISTORY_KEY, json.dumps(history))
            self.store.set(WEEKLY_STATUS_KEY, json.dumps(weekly))
        logger.debug("Recorded %s water test for week %s", test_type, week)
        return entry

    def attach(self, bus: EventBus) -> Subscription:
        """Record every reading published on `bus` as an automatic test."""

        def _on_event(event: ConnectionEvent) -> None:
            if isinstance(event, DataReceived):
                self.record(event.reading, test_type="automatic")

        return bus.subscribe(_on_event)
