"""Turn decoded sensor messages into canonical readings."""

import json
import math
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from watersensor.ble.constants import BLEConfig, DEFAULT_DEVICE_ID, logger
from watersensor.ble.exceptions import MalformedMessage
from watersensor.ble.models import SensorReading, WaterQuality
from watersensor.ble.utils import _now_ms

_QUALITY_BY_KEY = {
    "".join(quality.value.lower().split()): quality for quality in WaterQuality
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_float(value: Any) -> Optional[float]:
    """Coerce numbers and numeric strings; None for anything else."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def _to_int(value: Any) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def derive_quality(tds: Optional[float]) -> WaterQuality:
    """
    Classify water by its TDS value.

    Returns:
        WaterQuality: Clean up to 300 ppm, Unsafe up to 400 ppm, Extremely
        Unsafe above that, Unknown when there is no usable value.
    """
    if tds is None:
        return WaterQuality.UNKNOWN
    if tds <= BLEConfig.TDS_CLEAN_MAX:
        return WaterQuality.CLEAN
    if tds <= BLEConfig.TDS_UNSAFE_MAX:
        return WaterQuality.UNSAFE
    return WaterQuality.EXTREMELY_UNSAFE


def parse_quality(value: Any) -> Optional[WaterQuality]:
    """Match a wire quality string ignoring case and spacing."""
    if not isinstance(value, str):
        return None
    return _QUALITY_BY_KEY.get("".join(value.lower().split()))


class MessageNormalizer:
    """
    Validate and coerce sensor messages into :class:`SensorReading` records.

    `now` supplies the client receive time and `now_ms` the fallback device
    timestamp; both are injectable for tests.
    """

    def __init__(
        self,
        *,
        now: Optional[Callable[[], datetime]] = None,
        now_ms: Optional[Callable[[], int]] = None,
    ):
        self._now = now or _utc_now
        self._now_ms = now_ms or _now_ms

    def normalize(self, text: str, *, recovered: bool = False) -> SensorReading:
        """
        Parse one JSON message.

        Raises:
            MalformedMessage: if `text` is not JSON or not a JSON object.
        """
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as e:
            raise MalformedMessage(f"Invalid JSON format: {e}", raw=text) from e
        if not isinstance(payload, dict):
            raise MalformedMessage(
                f"Expected a JSON object, got {type(payload).__name__}", raw=text
            )
        return self.normalize_payload(payload, recovered=recovered)

    def normalize_payload(
        self, payload: Mapping[str, Any], *, recovered: bool = False
    ) -> SensorReading:
        """Coerce an already-parsed message; unknown keys are ignored."""
        tds_value = _to_float(payload.get("tds"))
        tds = tds_value if tds_value is not None else 0.0
        low, high = BLEConfig.TDS_EXPECTED_RANGE
        if not low <= tds <= high:
            logger.warning("TDS reading outside expected range: %s", tds)

        quality = parse_quality(payload.get("quality"))
        if quality is None:
            if payload.get("quality") is not None:
                logger.warning(
                    "Unexpected quality status %r; deriving from TDS",
                    payload.get("quality"),
                )
            quality = derive_quality(tds_value)

        vibration = _to_float(payload.get("vibration"))

        device_timestamp = _to_int(payload.get("timestamp"))
        if device_timestamp is None:
            device_timestamp = self._now_ms()

        device_id = payload.get("deviceId")
        if not isinstance(device_id, str) or not device_id:
            device_id = DEFAULT_DEVICE_ID

        battery_level = _to_int(payload.get("batteryLevel"))
        if battery_level is None:
            battery_level = 100
        elif not 0 <= battery_level <= 100:
            logger.warning("Battery level %d out of range; clamping", battery_level)
            battery_level = max(0, min(100, battery_level))

        reading = SensorReading(
            tds=tds,
            quality=quality,
            vibration=vibration if vibration is not None else 0.0,
            device_timestamp=device_timestamp,
            received_at=self._now(),
            device_id=device_id,
            battery_level=battery_level,
            recovered=bool(recovered or payload.get("recovered") is True),
            x_axis=_to_float(payload.get("xAxis")),
            y_axis=_to_float(payload.get("yAxis")),
            z_axis=_to_float(payload.get("zAxis")),
        )
        logger.debug("Normalized reading: %s", reading)
        return reading
