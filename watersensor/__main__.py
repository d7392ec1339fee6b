"""
Command-line front end for the water sensor.

    python -m watersensor scan
    python -m watersensor read AA:BB:CC:DD:EE:FF
    python -m watersensor --simulate monitor sim-esp32-001

``--simulate`` swaps the radio for an in-process simulated sensor;
``--history PATH`` records every reading in a JSON testing log.
"""

import argparse
import logging
import sys
import time
from typing import List, Optional

from tabulate import tabulate

from watersensor.ble import (
    BleakTransport,
    DataError,
    Disconnected,
    SensorReading,
    SessionManager,
    SimulatedTransport,
    TransportAdapter,
    WaterSensorError,
)
from watersensor.history import JsonFileStore, TestingHistoryRecorder

logger = logging.getLogger(__name__)


def _reading_row(reading: SensorReading) -> dict:
    return {
        "Received": reading.received_at.strftime("%H:%M:%S"),
        "TDS (ppm)": f"{reading.tds:.1f}",
        "Quality": reading.quality.value,
        "Vibration": f"{reading.vibration:.3f}",
        "Battery": f"{reading.battery_level}%",
        "Device": reading.device_id,
        "Recovered": "yes" if reading.recovered else "",
    }


def _print_reading(reading: SensorReading) -> None:
    print(tabulate([_reading_row(reading)], headers="keys", tablefmt="simple"))


def make_transport(args: argparse.Namespace) -> TransportAdapter:
    if args.simulate:
        return SimulatedTransport(interval=args.interval)
    return BleakTransport()


def cmd_scan(session: SessionManager, args: argparse.Namespace) -> int:
    scan = session.scan(
        lambda device: logger.info("Found %s", device.label), timeout=args.timeout
    )
    scan.wait()
    rows = [
        {"N": i + 1, "Address": d.id, "Name": d.name, "RSSI": d.rssi}
        for i, d in enumerate(scan.devices)
    ]
    if not rows:
        print("No sensors found")
        return 1
    print(tabulate(rows, headers="keys", missingval="N/A", tablefmt="fancy_grid"))
    return 0


def cmd_read(
    session: SessionManager,
    args: argparse.Namespace,
    recorder: Optional[TestingHistoryRecorder],
) -> int:
    session.connect(args.address)
    reading = session.request_single_reading()
    _print_reading(reading)
    if recorder is not None:
        recorder.record(reading, test_type="manual")
    return 0


def cmd_monitor(session: SessionManager, args: argparse.Namespace) -> int:
    def _on_event(event):
        if isinstance(event, Disconnected):
            logger.warning("Sensor disconnected (%s)", event.cause or "unknown cause")
        elif isinstance(event, DataError):
            logger.warning("Unreadable sensor message: %s", event.reason)

    session.subscribe(_on_event)
    connection = session.connect(args.address)
    logger.info(
        "Connected to %s; press Ctrl+C to stop", connection.device.label
    )
    session.start_monitoring(_print_reading)
    deadline = time.monotonic() + args.duration if args.duration else None
    while session.get_status().is_connected:
        if deadline is not None and time.monotonic() >= deadline:
            break
        time.sleep(0.5)
    session.stop_monitoring()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="watersensor",
        description="Scan for, read from and monitor an ESP32 water quality sensor.",
    )
    parser.add_argument(
        "--simulate", action="store_true", help="Use a simulated sensor instead of Bluetooth."
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    parser.add_argument(
        "--history", metavar="PATH", help="Record readings in a JSON testing-history file."
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=2.0,
        help="Seconds between simulated notifications (default: %(default)s).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="List nearby sensors.")
    scan.add_argument("--timeout", type=float, default=None, help="Scan duration in seconds.")

    read = sub.add_parser("read", help="Take a single reading.")
    read.add_argument("address", help="Sensor address or identifier.")

    monitor = sub.add_parser("monitor", help="Stream readings until interrupted.")
    monitor.add_argument("address", help="Sensor address or identifier.")
    monitor.add_argument(
        "--duration", type=float, default=None, help="Stop after this many seconds."
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    recorder = TestingHistoryRecorder(JsonFileStore(args.history)) if args.history else None
    try:
        with SessionManager(make_transport(args)) as session:
            if recorder is not None:
                recorder.attach(session.events)
            if args.command == "scan":
                return cmd_scan(session, args)
            if args.command == "read":
                return cmd_read(session, args, recorder)
            return cmd_monitor(session, args)
    except KeyboardInterrupt:
        logger.info("Exiting...")
        return 0
    except WaterSensorError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
