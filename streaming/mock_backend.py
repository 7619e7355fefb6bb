"""Simulated scan server for development and testing.

Serves the three scan endpoints through httpx.MockTransport, so the real
ScanApiClient, drivers and session run unchanged against it:

    backend = MockScanBackend(stream_mode="drop")
    api = ScanApiClient(settings, transport=backend.transport)

Stream modes:
    full         stream every event through to completed/error
    drop         close the stream after `drop_after` frames, no terminal event
    read_error   raise httpx.ReadError after `drop_after` frames
    unsupported  answer the stream endpoint with 404
    refuse       raise httpx.ConnectError for the stream endpoint
"""
import asyncio
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import httpx

STREAM_MODES = {"full", "drop", "read_error", "unsupported", "refuse"}

DEFAULT_RESOURCE_COUNTS = {
    "users": 12,
    "groups": 4,
    "roles": 9,
    "policies": 31,
    "attachments": 18,
    "role_definitions": 57,
    "role_assignments": 23,
}


@dataclass
class MockJob:
    """One simulated scan job."""

    job_id: str
    targets: list[str]
    fail_with: str | None = None
    cursor: int = 0  # status polls answered so far
    summary: dict[str, int] = field(default_factory=dict)

    def events(self) -> list[dict[str, Any]]:
        """Every event the job emits, in order, ending with a terminal one."""
        events: list[dict[str, Any]] = [
            {
                "job_id": self.job_id,
                "event_type": "progress",
                "percent": 0,
                "message": "Starting scan...",
            }
        ]
        total = len(self.targets)
        for index, target in enumerate(self.targets, start=1):
            count = DEFAULT_RESOURCE_COUNTS.get(target, 1)
            events.append(
                {
                    "job_id": self.job_id,
                    "event_type": "resource",
                    "percent": int(index / total * 90),
                    "message": f"Scanned {target}",
                    "resource_type": target,
                    "resource_count": count,
                }
            )
        if self.fail_with:
            events.append(
                {
                    "job_id": self.job_id,
                    "event_type": "error",
                    "percent": 90,
                    "message": self.fail_with,
                }
            )
        else:
            events.append(
                {
                    "job_id": self.job_id,
                    "event_type": "completed",
                    "percent": 100,
                    "message": "Scan completed",
                }
            )
        return events

    def next_status(self) -> dict[str, Any]:
        """Advance one step and describe the job the way the status endpoint does."""
        events = self.events()
        event = events[min(self.cursor, len(events) - 1)]
        self.cursor += 1

        if event["event_type"] == "resource":
            self.summary[event["resource_type"]] = event["resource_count"]

        status = {
            "progress": "running",
            "resource": "running",
            "completed": "completed",
            "error": "failed",
        }[event["event_type"]]
        body: dict[str, Any] = {
            "scan_id": self.job_id,
            "status": status,
            "progress": event["percent"],
            "message": event["message"],
        }
        if status == "completed":
            body["summary"] = dict(self.summary)
        return body


class MockScanBackend:
    """In-process scan API built on httpx.MockTransport."""

    def __init__(
        self,
        stream_mode: str = "full",
        drop_after: int = 2,
        fail_with: str | None = None,
        chunk_size: int | None = None,
        frame_delay: float = 0.0,
        status_failures: int = 0,
        start_failures: int = 0,
    ):
        """
        Args:
            stream_mode: One of STREAM_MODES
            drop_after: Frames sent before a drop/read_error
            fail_with: Make every job end with this server-side error
            chunk_size: Split the stream body into chunks of this many bytes
            frame_delay: Seconds to wait between frames
            status_failures: Number of initial status requests answered 503
            start_failures: Number of initial start requests answered 500
        """
        if stream_mode not in STREAM_MODES:
            raise ValueError(f"Unknown stream_mode: {stream_mode}")
        self.stream_mode = stream_mode
        self.drop_after = drop_after
        self.fail_with = fail_with
        self.chunk_size = chunk_size
        self.frame_delay = frame_delay
        self.status_failures = status_failures
        self.start_failures = start_failures
        self.jobs: dict[str, MockJob] = {}
        self.requests: list[tuple[str, str]] = []
        self._job_counter = 1000

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def _create_job(self, request: httpx.Request) -> MockJob:
        body = json.loads(request.content or b"{}")
        config = body.get("config", {})
        targets = [name for name, on in config.get("scan_targets", {}).items() if on]
        self._job_counter += 1
        job = MockJob(
            job_id=f"mock-scan-{self._job_counter}",
            targets=targets or ["users"],
            fail_with=self.fail_with,
        )
        self.jobs[job.job_id] = job
        return job

    async def handle(self, request: httpx.Request) -> httpx.Response:
        """Route one request."""
        path = request.url.path
        self.requests.append((request.method, path))
        parts = [p for p in path.split("/") if p]
        tail = parts[parts.index("scan") + 1:] if "scan" in parts else []

        # .../scan/{provider}/stream
        if request.method == "POST" and len(tail) == 2 and tail[1] == "stream":
            return self._handle_stream(request)

        # .../scan/{job_id}/status
        if request.method == "GET" and len(tail) == 2 and tail[1] == "status":
            return self._handle_status(tail[0])

        # .../scan/{provider}
        if request.method == "POST" and len(tail) == 1:
            return self._handle_start(request)

        return httpx.Response(404, json={"detail": "Not Found"})

    def _handle_stream(self, request: httpx.Request) -> httpx.Response:
        if self.stream_mode == "refuse":
            raise httpx.ConnectError("Connection refused", request=request)
        if self.stream_mode == "unsupported":
            return httpx.Response(404, json={"detail": "Not Found"})

        job = self._create_job(request)
        return httpx.Response(
            200,
            headers={"content-type": "text/event-stream"},
            content=self._stream_body(job, request),
        )

    def _handle_start(self, request: httpx.Request) -> httpx.Response:
        if self.start_failures > 0:
            self.start_failures -= 1
            return httpx.Response(
                500,
                json={"error": {"message": "Scanner unavailable", "code": "SCAN_START_FAILED"}},
            )
        job = self._create_job(request)
        return httpx.Response(200, json={"scan_id": job.job_id, "status": "in_progress"})

    def _handle_status(self, job_id: str) -> httpx.Response:
        if self.status_failures > 0:
            self.status_failures -= 1
            return httpx.Response(503, json={"detail": "Service temporarily unavailable"})
        job = self.jobs.get(job_id)
        if job is None:
            return httpx.Response(404, json={"detail": "Scan not found"})
        return httpx.Response(200, json=job.next_status())

    async def _stream_body(self, job: MockJob, request: httpx.Request) -> AsyncIterator[bytes]:
        events = job.events()
        if self.stream_mode in ("drop", "read_error"):
            events = events[: self.drop_after]

        body = b"".join(
            f"data: {json.dumps(event)}\n\n".encode("utf-8") for event in events
        )
        # Stream progress also advances the job seen by the status endpoint
        job.cursor = len(events)
        for event in events:
            if event["event_type"] == "resource":
                job.summary[event["resource_type"]] = event["resource_count"]

        if self.chunk_size:
            for start in range(0, len(body), self.chunk_size):
                yield body[start:start + self.chunk_size]
                if self.frame_delay:
                    await asyncio.sleep(self.frame_delay)
        else:
            for event in events:
                yield f"data: {json.dumps(event)}\n\n".encode("utf-8")
                if self.frame_delay:
                    await asyncio.sleep(self.frame_delay)

        if self.stream_mode == "read_error":
            raise httpx.ReadError("Connection reset by peer", request=request)
