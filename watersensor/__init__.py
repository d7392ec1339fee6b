"""Client core for the ESP32 water quality sensor."""

from watersensor.ble import SessionManager, SensorReading, WaterQuality

__version__ = "0.1.0"

__all__ = ["SessionManager", "SensorReading", "WaterQuality", "__version__"]
