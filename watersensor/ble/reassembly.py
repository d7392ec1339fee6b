"""Rebuild JSON sensor messages from fragmented notification payloads."""

import json
import re
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple

from watersensor.ble.constants import BLEConfig, DEFAULT_DEVICE_ID, logger
from watersensor.ble.models import Frame

# Field markers that identify a buffer as sensor-message debris
_DEBRIS_MARKER = re.compile(r'"(?:tds|vibration)"\s*:')

_TDS_PATTERN = re.compile(r'"tds"\s*:\s*(-?\d+(?:\.\d+)?)')
_QUALITY_PATTERN = re.compile(r'"quality"\s*:\s*"([^"]+)"')
_VIBRATION_PATTERN = re.compile(r'"vibration"\s*:\s*(-?\d+(?:\.\d+)?)')
_TIMESTAMP_PATTERN = re.compile(r'"timestamp"\s*:\s*"?(\d+)')


def recover_partial(text: str) -> Optional[str]:
    """
    Salvage a sensor message from a fragment that never closed.

    Each field is pulled out with its own regular expression, ignoring the
    JSON structure around it. A message is synthesized only when tds or
    vibration could be extracted; it carries the default device id, a full
    battery and ``"recovered": true``.

    Returns:
        Optional[str]: JSON text of the synthesized message, or None.
    """
    tds_match = _TDS_PATTERN.search(text)
    vibration_match = _VIBRATION_PATTERN.search(text)
    if not tds_match and not vibration_match:
        return None

    payload: Dict[str, Any] = {}
    if tds_match:
        payload["tds"] = float(tds_match.group(1))
    quality_match = _QUALITY_PATTERN.search(text)
    if quality_match:
        payload["quality"] = quality_match.group(1)
    if vibration_match:
        payload["vibration"] = float(vibration_match.group(1))
    timestamp_match = _TIMESTAMP_PATTERN.search(text)
    if timestamp_match:
        payload["timestamp"] = int(timestamp_match.group(1))
    payload["deviceId"] = DEFAULT_DEVICE_ID
    payload["batteryLevel"] = 100
    payload["recovered"] = True
    return json.dumps(payload)


class FrameReassembler:
    """
    Accumulate text chunks and cut complete JSON objects out of them.

    Objects are found by brace matching alone; whether a candidate is valid
    JSON is decided downstream. A buffer that cannot produce an object is
    salvaged with :func:`recover_partial`:

    - headless debris (no ``{`` waiting for its ``}``) is recovered as soon as
      it carries a field marker or grows past the soft threshold;
    - an object still in progress waits for more chunks, for :meth:`flush`
      or for the hard cap, where recovery is tried once before the buffer is
      cleared.

    With ``eager_recovery=True`` every chunk that leaves the buffer
    unresolved is treated like headless debris.
    """

    def __init__(
        self,
        *,
        hard_cap: Optional[int] = None,
        soft_threshold: Optional[int] = None,
        eager_recovery: bool = False,
    ):
        self.hard_cap = hard_cap if hard_cap is not None else BLEConfig.REASSEMBLY_HARD_CAP
        self.soft_threshold = (
            soft_threshold
            if soft_threshold is not None
            else BLEConfig.REASSEMBLY_SOFT_THRESHOLD
        )
        self.eager_recovery = eager_recovery
        self._lock = RLock()
        self._buffer = ""

    @property
    def buffered(self) -> str:
        """Text currently waiting for the rest of its message."""
        with self._lock:
            return self._buffer

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def reset(self) -> None:
        with self._lock:
            if self._buffer:
                logger.debug("Discarding %d buffered characters", len(self._buffer))
            self._buffer = ""

    def feed(self, chunk: str) -> List[Frame]:
        """
        Append `chunk` and return every frame that became available.

        Returns:
            List[Frame]: complete objects in arrival order, or a single
            recovered frame; empty when more data is needed.
        """
        with self._lock:
            self._buffer += chunk
            candidates, pending = self._drain()
            frames = [Frame(text) for text in candidates]
            if frames:
                logger.debug("Reassembled %d message(s)", len(frames))

            if not frames and self._buffer and (self.eager_recovery or not pending):
                if (
                    _DEBRIS_MARKER.search(self._buffer)
                    or len(self._buffer) > self.soft_threshold
                ):
                    recovered = self._recover()
                    if recovered is not None:
                        frames.append(recovered)

            if len(self._buffer) > self.hard_cap:
                logger.warning(
                    "Reassembly buffer exceeded %d characters; resetting",
                    self.hard_cap,
                )
                if not frames:
                    recovered = self._recover()
                    if recovered is not None:
                        frames.append(recovered)
                self._buffer = ""
            return frames

    def flush(self) -> Optional[Frame]:
        """
        Resolve whatever is buffered after the stream went quiet.

        The buffer is always empty afterwards.

        Returns:
            Optional[Frame]: a recovered frame, or None if nothing was salvageable.
        """
        with self._lock:
            if not self._buffer:
                return None
            frame = self._recover()
            if frame is None:
                logger.debug(
                    "Dropping %d unrecoverable buffered characters", len(self._buffer)
                )
            self._buffer = ""
            return frame

    def _drain(self) -> Tuple[List[str], bool]:
        """Cut complete objects out of the buffer; report whether an object is still open."""
        candidates: List[str] = []
        depth = 0
        start = -1
        consumed = 0
        for index, char in enumerate(self._buffer):
            if char == "{":
                if depth == 0:
                    start = index
                depth += 1
            elif char == "}":
                if depth == 0:
                    continue
                depth -= 1
                if depth == 0:
                    candidates.append(self._buffer[start : index + 1])
                    consumed = index + 1
        if consumed:
            self._buffer = self._buffer[consumed:]
        return candidates, depth > 0

    def _recover(self) -> Optional[Frame]:
        text = recover_partial(self._buffer)
        if text is None:
            return None
        logger.debug("Recovered partial message from %r", self._buffer[:100])
        self._buffer = ""
        return Frame(text, recovered=True)
