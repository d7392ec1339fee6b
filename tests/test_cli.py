"""Tests for the command-line front end, run against the simulated sensor."""

import json

from watersensor.__main__ import build_parser, main
from watersensor.ble.constants import BLEConfig
from watersensor.history import HISTORY_KEY


class TestCli:
    def test_parser_reads_global_options(self):
        parser = build_parser()

        args = parser.parse_args(["--simulate", "read", "sim-esp32-001"])

        assert args.simulate
        assert args.address == "sim-esp32-001"
        assert args.command == "read"

    def test_read_prints_reading(self, capsys):
        assert main(["--simulate", "read", "sim-esp32-001"]) == 0

        out = capsys.readouterr().out
        assert "TDS (ppm)" in out
        assert "ESP32-Water-Sensor" in out

    def test_read_records_history(self, tmp_path):
        path = tmp_path / "history.json"

        assert main(["--simulate", "--history", str(path), "read", "sim-esp32-002"]) == 0

        data = json.loads(path.read_text(encoding="utf-8"))
        history = json.loads(data[HISTORY_KEY])
        assert len(history) == 1
        assert history[0]["testType"] == "manual"

    def test_unknown_device_fails(self, monkeypatch):
        monkeypatch.setattr(BLEConfig, "CONNECT_RETRY_DELAY", 0.0)
        assert main(["--simulate", "read", "aa:bb:cc:dd:ee:ff"]) == 1

    def test_scan_without_results(self, capsys):
        assert main(["--simulate", "scan", "--timeout", "0.05"]) == 1

        assert "No sensors found" in capsys.readouterr().out

    def test_monitor_records_streamed_readings(self, tmp_path):
        path = tmp_path / "history.json"

        code = main(
            [
                "--simulate",
                "--interval",
                "0.05",
                "--history",
                str(path),
                "monitor",
                "sim-esp32-001",
                "--duration",
                "0.2",
            ]
        )

        assert code == 0
        history = json.loads(json.loads(path.read_text(encoding="utf-8"))[HISTORY_KEY])
        assert history
        assert {entry["testType"] for entry in history} == {"automatic"}
