"""Decode event-stream frames into ProgressEvent values.

A frame is a block of lines. Only lines starting with the ``data:`` marker
carry payload; ``event:``, ``id:``, ``retry:`` and ``:`` comment lines are
allowed by the protocol and ignored. Multiple data lines are joined with a
newline before parsing, as event-stream consumers do.

Payload fields:
    job_id (alias scan_id)      required, non-empty string
    event_type (alias type)     progress|resource|completed|error, default progress
    percent (alias progress)    number in [0, 100]; optional for completed/error
    message                     string, default ""
    resource_type               string, resource events only
    resource_count              non-negative integer, resource events only
"""
import json
from typing import Any

from core.types import DecodeError, EventKind, ProgressEvent

DATA_MARKER = "data:"

_KINDS = {kind.value: kind for kind in EventKind}

# Percent assumed when a terminal event omits it
_TERMINAL_DEFAULT_PERCENT = {
    EventKind.COMPLETED: 100,
    EventKind.ERROR: 0,
}


def extract_payload(frame: str) -> str | None:
    """Join the data lines of a frame; None when the frame has none."""
    data_lines = []
    for line in frame.split("\n"):
        if line.startswith(DATA_MARKER):
            value = line[len(DATA_MARKER):]
            if value.startswith(" "):
                value = value[1:]
            data_lines.append(value)
    if not data_lines:
        return None
    return "\n".join(data_lines)


def _first(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def parse_percent(value: Any) -> int:
    """Validate a percent value, returning it as an int in [0, 100]."""
    # bool is an int subclass; "true" is not a percentage
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"percent must be a number, got {value!r}")
    if not 0 <= value <= 100:
        raise ValueError(f"percent out of range: {value}")
    return int(round(value))


def decode_payload(payload: str, source: str = "stream") -> ProgressEvent:
    """
    Parse one payload string into an event.

    Raises:
        DecodeError: If the payload is not a valid event
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Payload is not JSON: {e.msg}", payload) from e

    if not isinstance(data, dict):
        raise DecodeError("Payload is not an object", payload)

    job_id = _first(data, "job_id", "scan_id")
    if not isinstance(job_id, str) or not job_id:
        raise DecodeError("Payload has no job_id", payload)

    kind_name = _first(data, "event_type", "type")
    if kind_name in (None, ""):
        kind_name = EventKind.PROGRESS.value
    if not isinstance(kind_name, str):
        raise DecodeError(f"event_type must be a string, got {kind_name!r}", payload)
    kind = _KINDS.get(kind_name)
    if kind is None:
        raise DecodeError(f"Unknown event_type: {kind_name!r}", payload)

    raw_percent = _first(data, "percent", "progress")
    if raw_percent is None:
        if kind not in _TERMINAL_DEFAULT_PERCENT:
            raise DecodeError("Payload has no percent", payload)
        percent = _TERMINAL_DEFAULT_PERCENT[kind]
    else:
        try:
            percent = parse_percent(raw_percent)
        except ValueError as e:
            raise DecodeError(str(e), payload) from e

    message = data.get("message") or ""
    if not isinstance(message, str):
        raise DecodeError("message must be a string", payload)

    resource_type = None
    resource_count = None
    if kind is EventKind.RESOURCE:
        resource_type = data.get("resource_type")
        resource_count = data.get("resource_count")
        if resource_type is not None and not isinstance(resource_type, str):
            raise DecodeError("resource_type must be a string", payload)
        if resource_count is not None and (
            isinstance(resource_count, bool)
            or not isinstance(resource_count, int)
            or resource_count < 0
        ):
            raise DecodeError("resource_count must be a non-negative integer", payload)

    return ProgressEvent(
        kind=kind,
        job_id=job_id,
        percent=percent,
        message=message,
        resource_type=resource_type,
        resource_count=resource_count,
        source=source,
    )


def decode_frame(frame: str) -> ProgressEvent | None:
    """
    Decode one frame.

    Returns:
        The event, or None for frames without a data line (comments,
        keep-alives)

    Raises:
        DecodeError: If the data payload is malformed
    """
    payload = extract_payload(frame)
    if payload is None:
        return None
    return decode_payload(payload)
