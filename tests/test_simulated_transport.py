"""Tests for SimulatedTransport, alone and driven by a SessionManager."""

import json
import random
from unittest.mock import MagicMock

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from watersensor.ble.constants import CHARACTERISTIC_UUID, SERVICE_UUID, UNRESOLVED_GATT_PATTERN
from watersensor.ble.events import DataReceived, Disconnected, EventBus
from watersensor.ble.exceptions import TransportError
from watersensor.ble.models import WaterQuality
from watersensor.ble.normalizer import derive_quality
from watersensor.ble.reassembly import FrameReassembler
from watersensor.ble.session import SessionManager
from watersensor.ble.simulated import SIMULATED_DEVICES, SimulatedTransport
from watersensor.ble.state import ConnectionState


@pytest.fixture
def simulated():
    transport = SimulatedTransport(
        rng=random.Random(42), interval=0, advertise_interval=0
    )
    yield transport
    transport.close()


def _connect(transport, address="sim-esp32-001"):
    return transport.connect(address, timeout=1.0, on_disconnect=MagicMock())


class TestSimulatedTransport:
    def test_scan_reports_every_device(self, simulated):
        seen = []

        simulated.start_scan(seen.append)
        simulated.stop_scan()

        assert seen == list(SIMULATED_DEVICES)

    def test_connect_returns_device_name(self, simulated):
        assert _connect(simulated) == "ESP32-Sensor (Simulated)"
        assert simulated.connected_address == "sim-esp32-001"
        assert simulated.discover_services() == {SERVICE_UUID: [CHARACTERISTIC_UUID]}

    def test_connect_to_unknown_device_fails(self, simulated):
        with pytest.raises(TransportError):
            _connect(simulated, "aa:bb:cc:dd:ee:ff")

    def test_read_requires_connection(self, simulated):
        with pytest.raises(TransportError):
            simulated.read(CHARACTERISTIC_UUID, timeout=1.0)

    def test_read_returns_firmware_message(self, simulated):
        _connect(simulated)

        payload = json.loads(simulated.read(CHARACTERISTIC_UUID, timeout=1.0))

        assert 80.0 <= payload["tds"] <= 450.0
        assert payload["quality"] == derive_quality(payload["tds"]).value
        assert 0 <= payload["batteryLevel"] <= 100

    def test_unknown_characteristic_looks_unresolved(self, simulated):
        _connect(simulated)

        with pytest.raises(TransportError) as excinfo:
            simulated.read("0000ffff-0000-1000-8000-00805f9b34fb", timeout=1.0)

        assert UNRESOLVED_GATT_PATTERN.search(str(excinfo.value))

    def test_emit_fragments_to_mtu(self, simulated):
        _connect(simulated)
        chunks = []
        simulated.start_notify(CHARACTERISTIC_UUID, chunks.append, timeout=1.0)

        count = simulated.emit({"tds": 123.4, "quality": "Clean"})

        assert count == len(chunks) > 1
        assert all(len(chunk) <= simulated.mtu for chunk in chunks)
        reassembler = FrameReassembler()
        frames = [f for chunk in chunks for f in reassembler.feed(chunk.decode())]
        assert [json.loads(f.text) for f in frames] == [{"tds": 123.4, "quality": "Clean"}]

    def test_emit_without_subscriber(self, simulated):
        _connect(simulated)

        assert simulated.emit() == 0

    def test_stop_notify_ends_stream(self, simulated):
        _connect(simulated)
        simulated.start_notify(CHARACTERISTIC_UUID, MagicMock(), timeout=1.0)

        simulated.stop_notify(CHARACTERISTIC_UUID, timeout=1.0)

        assert not simulated.notifying
        assert simulated.emit() == 0

    def test_simulate_disconnect_invokes_callback(self, simulated):
        on_disconnect = MagicMock()
        simulated.connect("sim-esp32-002", timeout=1.0, on_disconnect=on_disconnect)

        simulated.simulate_disconnect("out of range")

        on_disconnect.assert_called_once_with("out of range")
        assert simulated.connected_address is None

    def test_invalid_mtu(self):
        with pytest.raises(ValueError):
            SimulatedTransport(mtu=0)


class TestSimulatedSession:
    """The full session stack running against the simulated sensor."""

    def test_monitoring_round_trip(self, simulated):
        events = []
        readings = []
        with SessionManager(simulated, event_bus=EventBus()) as session:
            session.subscribe(events.append)
            session.connect("sim-esp32-001")
            session.start_monitoring(readings.append)

            simulated.emit({"tds": 420.0, "vibration": 0.3, "batteryLevel": 64})
            single = session.request_single_reading()

            assert session.state == ConnectionState.MONITORING
        assert [r.quality for r in readings] == [WaterQuality.EXTREMELY_UNSAFE]
        assert readings[0].battery_level == 64
        assert single.device_id == "ESP32-Water-Sensor"
        assert [e.reading for e in events if isinstance(e, DataReceived)] == readings
        assert isinstance(events[-1], Disconnected)

    def test_link_loss_reaches_session(self, simulated):
        with SessionManager(simulated, event_bus=EventBus()) as session:
            session.connect("sim-esp32-001")
            session.start_monitoring()

            simulated.simulate_disconnect()

            assert session.state == ConnectionState.DISCONNECTED
