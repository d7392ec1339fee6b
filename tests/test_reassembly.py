"""Tests for FrameReassembler and partial-message recovery."""

import json

import pytest  # type: ignore[import-untyped]  # pylint: disable=E0401

from watersensor.ble.constants import DEFAULT_DEVICE_ID
from watersensor.ble.models import Frame
from watersensor.ble.reassembly import FrameReassembler, recover_partial

MESSAGES = [
    '{"tds":245.6,"quality":"Clean","vibration":0.12,"timestamp":45231,'
    '"deviceId":"ESP32-Water-Sensor","batteryLevel":87}',
    '{"tds":351.0,"quality":"Unsafe","vibration":0.4,"xAxis":0.01,"yAxis":-0.02,'
    '"zAxis":9.81,"timestamp":47231,"deviceId":"ESP32-Water-Sensor","batteryLevel":86}',
]


def _split(text, size):
    return [text[i : i + size] for i in range(0, len(text), size)]


class TestFrameReassembly:
    """Cutting complete objects out of the chunk stream."""

    @pytest.mark.parametrize("size", [1, 2, 3, 7, 20, 64, 512])
    def test_any_chunking_yields_the_original_messages(self, size):
        """However the stream is split, each message comes out once and intact."""
        reassembler = FrameReassembler()
        frames = []

        for chunk in _split("".join(MESSAGES), size):
            frames.extend(reassembler.feed(chunk))

        assert [f.text for f in frames] == MESSAGES
        assert not any(f.recovered for f in frames)
        assert len(reassembler) == 0

    def test_several_objects_in_one_chunk(self):
        reassembler = FrameReassembler()

        frames = reassembler.feed('{"tds":1}{"tds":2}{"tds":3}{"td')

        assert [f.text for f in frames] == ['{"tds":1}', '{"tds":2}', '{"tds":3}']
        assert reassembler.buffered == '{"td'

    def test_nested_objects_stay_together(self):
        reassembler = FrameReassembler()

        frames = reassembler.feed('{"tds":1,"meta":{"fw":"1.2"}}')

        assert frames == [Frame('{"tds":1,"meta":{"fw":"1.2"}}')]

    def test_incomplete_object_waits_for_more(self):
        reassembler = FrameReassembler()

        assert reassembler.feed('{"tds":123.4,"vibrat') == []
        assert reassembler.buffered == '{"tds":123.4,"vibrat'

    def test_invalid_json_is_still_a_candidate(self):
        """Brace matching alone decides the frame; validation happens downstream."""
        reassembler = FrameReassembler()

        assert reassembler.feed("{not json}") == [Frame("{not json}")]

    def test_leading_closing_brace_is_skipped(self):
        reassembler = FrameReassembler()

        frames = reassembler.feed('}{"tds":7}')

        assert frames == [Frame('{"tds":7}')]

    def test_reset_discards_buffer(self):
        reassembler = FrameReassembler()
        reassembler.feed('{"tds":1')

        reassembler.reset()

        assert len(reassembler) == 0
        assert reassembler.feed('2}') == []


class TestBufferLimits:
    """Hard cap and debris handling."""

    def test_buffer_never_exceeds_hard_cap(self):
        reassembler = FrameReassembler()

        for _ in range(60):
            reassembler.feed('{"note":"' + "x" * 40)
            assert len(reassembler) <= 1000

    def test_unrecoverable_overflow_is_dropped(self):
        reassembler = FrameReassembler(hard_cap=50)

        frames = reassembler.feed("{" + "x" * 60)

        assert frames == []
        assert len(reassembler) == 0

    def test_overflow_recovers_once_before_reset(self):
        reassembler = FrameReassembler(hard_cap=50)

        frames = reassembler.feed('{"tds":12.5,"junk":"' + "a" * 60)

        assert len(frames) == 1
        assert frames[0].recovered
        assert json.loads(frames[0].text)["tds"] == 12.5
        assert len(reassembler) == 0

    def test_headless_debris_with_marker_is_recovered(self):
        reassembler = FrameReassembler()

        frames = reassembler.feed('"tds":55.5,"quality":"Clean"}')

        assert len(frames) == 1
        payload = json.loads(frames[0].text)
        assert payload["tds"] == 55.5
        assert payload["quality"] == "Clean"
        assert len(reassembler) == 0

    def test_short_headless_debris_without_marker_waits(self):
        reassembler = FrameReassembler()

        assert reassembler.feed("garbage") == []
        assert reassembler.buffered == "garbage"

    def test_eager_recovery_salvages_open_object(self):
        reassembler = FrameReassembler(eager_recovery=True)

        frames = reassembler.feed('{"tds":50.5,"quality":"Clean"')

        assert len(frames) == 1
        assert frames[0].recovered
        assert len(reassembler) == 0


class TestFlush:
    """Idle flush of an unfinished message."""

    def test_flush_recovers_tds_from_fragment(self):
        reassembler = FrameReassembler()
        reassembler.feed('{"tds":123.4,"vibrat')

        frame = reassembler.flush()

        assert frame is not None and frame.recovered
        payload = json.loads(frame.text)
        assert payload["tds"] == 123.4
        assert "vibration" not in payload
        assert payload["deviceId"] == DEFAULT_DEVICE_ID
        assert payload["batteryLevel"] == 100
        assert payload["recovered"] is True
        assert len(reassembler) == 0

    def test_flush_without_sensor_fields_drops_buffer(self):
        reassembler = FrameReassembler()
        reassembler.feed('{"status":"boot')

        assert reassembler.flush() is None
        assert len(reassembler) == 0

    def test_flush_of_empty_buffer(self):
        assert FrameReassembler().flush() is None


class TestRecoverPartial:
    """Field extraction from broken text."""

    def test_extracts_every_known_field(self):
        text = recover_partial(
            'xx"tds": -3.5, "quality":"Unsafe","vibration":1.25,"timestamp":"9001"'
        )

        payload = json.loads(text)
        assert payload["tds"] == -3.5
        assert payload["quality"] == "Unsafe"
        assert payload["vibration"] == 1.25
        assert payload["timestamp"] == 9001

    def test_vibration_alone_is_enough(self):
        payload = json.loads(recover_partial('"vibration":0.8'))

        assert payload["vibration"] == 0.8
        assert "tds" not in payload

    @pytest.mark.parametrize("text", ["", '{"quality":"Clean"', '"timestamp":123'])
    def test_nothing_to_recover(self, text):
        assert recover_partial(text) is None
