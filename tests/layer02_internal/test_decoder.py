"""Unit tests for event frame decoding."""

import json

import pytest

from core.types import DecodeError, EventKind
from streaming.decoder import decode_frame, decode_payload, extract_payload
from streaming.frames import FrameParser


def frame(**payload) -> str:
    return f"data: {json.dumps(payload)}"


class TestExtractPayload:
    """Only data: lines carry payload."""

    def test_single_data_line(self):
        assert extract_payload('data: {"a": 1}') == '{"a": 1}'

    def test_marker_without_space(self):
        assert extract_payload('data:{"a": 1}') == '{"a": 1}'

    def test_auxiliary_lines_ignored(self):
        text = 'event: progress\nid: 7\n: comment\ndata: {"a": 1}\nretry: 1000'
        assert extract_payload(text) == '{"a": 1}'

    def test_multiple_data_lines_joined(self):
        assert extract_payload('data: {"a":\ndata:  1}') == '{"a":\n 1}'

    def test_no_data_line(self):
        assert extract_payload(": keep-alive") is None


class TestDecodeFrame:
    """Valid payloads become typed events."""

    def test_progress_event(self):
        event = decode_frame(
            frame(job_id="j1", event_type="progress", percent=55, message="scanning users")
        )
        assert event.kind is EventKind.PROGRESS
        assert event.job_id == "j1"
        assert event.percent == 55
        assert event.message == "scanning users"
        assert event.source == "stream"

    def test_missing_discriminator_defaults_to_progress(self):
        event = decode_frame(frame(job_id="j1", percent=20, message="working"))
        assert event.kind is EventKind.PROGRESS

    def test_resource_event(self):
        event = decode_frame(
            frame(
                job_id="j1",
                event_type="resource",
                percent=40,
                message="users done",
                resource_type="users",
                resource_count=12,
            )
        )
        assert event.kind is EventKind.RESOURCE
        assert event.resource_type == "users"
        assert event.resource_count == 12
        assert event.display_message == "users: 12 found"

    def test_completed_without_percent_defaults_to_100(self):
        event = decode_frame(frame(job_id="j1", event_type="completed"))
        assert event.kind is EventKind.COMPLETED
        assert event.percent == 100
        assert event.is_terminal

    def test_error_event(self):
        event = decode_frame(
            frame(job_id="j1", event_type="error", percent=30, message="AccessDenied")
        )
        assert event.kind is EventKind.ERROR
        assert event.message == "AccessDenied"
        assert event.is_terminal

    def test_alias_field_names_accepted(self):
        event = decode_frame(frame(scan_id="s1", type="progress", progress=70, message="m"))
        assert event.job_id == "s1"
        assert event.percent == 70

    def test_empty_discriminator_defaults_to_progress(self):
        event = decode_frame(frame(job_id="j1", event_type="", percent=20))
        assert event.kind is EventKind.PROGRESS

    def test_float_percent_rounded(self):
        assert decode_frame(frame(job_id="j1", percent=33.6)).percent == 34

    def test_comment_only_frame_returns_none(self):
        assert decode_frame(": ping") is None

    def test_round_trip_through_parser(self):
        data = (frame(job_id="j1", event_type="progress", percent=55, message="scanning users") + "\n\n").encode()
        parser = FrameParser()
        frames = parser.feed(data[:9]) + parser.feed(data[9:])

        event = decode_frame(frames[0])
        assert event.percent == 55
        assert event.message == "scanning users"


class TestDecodeErrors:
    """Malformed payloads raise DecodeError."""

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[1, 2, 3]",
            '"just a string"',
            json.dumps({"percent": 10, "message": "no job"}),
            json.dumps({"job_id": "", "percent": 10}),
            json.dumps({"job_id": 5, "percent": 10}),
            json.dumps({"job_id": "j1", "message": "no percent"}),
            json.dumps({"job_id": "j1", "percent": 101}),
            json.dumps({"job_id": "j1", "percent": -1}),
            json.dumps({"job_id": "j1", "percent": "50"}),
            json.dumps({"job_id": "j1", "percent": True}),
            json.dumps({"job_id": "j1", "percent": 5, "event_type": "paused"}),
            json.dumps({"job_id": "j1", "percent": 5, "event_type": ["progress"]}),
            json.dumps({"job_id": "j1", "percent": 5, "type": {"a": 1}}),
            json.dumps({"job_id": "j1", "percent": 5, "event_type": 3}),
            json.dumps({"job_id": "j1", "percent": 5, "message": 42}),
            json.dumps(
                {"job_id": "j1", "percent": 5, "event_type": "resource", "resource_count": -3}
            ),
        ],
    )
    def test_malformed_payload(self, payload):
        with pytest.raises(DecodeError):
            decode_payload(payload)

    def test_decode_error_keeps_payload(self):
        with pytest.raises(DecodeError) as exc_info:
            decode_frame("data: {broken")
        assert exc_info.value.frame == "{broken"
