"""
Polling delivery: periodic status requests for a known job.

Snapshots map onto the same events the stream produces:
    running          -> progress
    completed        -> completed (polling stops)
    failed / error   -> error (polling stops)

A failed request is logged and retried on the next tick. Only a failure the
server reports for the job ends polling.
"""
import asyncio
from typing import Callable

from core.logging_config import get_logger
from core.metrics import record_event_dispatched, record_poll
from core.types import ApiError, EventKind, ProgressEvent, StatusSnapshot
from .api import ScanApiClient
from .callbacks import ScanCallbacks

logger = get_logger(__name__)

DEFAULT_INTERVAL_MS = 500

DEFAULT_RUNNING_MESSAGE = "Scanning..."
DEFAULT_FAILED_MESSAGE = "Scan failed"


def snapshot_to_event(snapshot: StatusSnapshot) -> ProgressEvent:
    """Map a status snapshot to the stream's event shape."""
    if snapshot.status == "completed":
        return ProgressEvent(
            kind=EventKind.COMPLETED,
            job_id=snapshot.job_id,
            percent=100,
            message=snapshot.message,
            source="polling",
        )
    if snapshot.status in ("failed", "error"):
        return ProgressEvent(
            kind=EventKind.ERROR,
            job_id=snapshot.job_id,
            percent=snapshot.percent,
            message=snapshot.message or DEFAULT_FAILED_MESSAGE,
            source="polling",
        )
    return ProgressEvent(
        kind=EventKind.PROGRESS,
        job_id=snapshot.job_id,
        percent=snapshot.percent,
        message=snapshot.message or DEFAULT_RUNNING_MESSAGE,
        source="polling",
    )


class PollingDriver:
    """
    Polls the status endpoint for one job on a fixed interval.

    The first request is issued immediately on start(). Requests are
    sequential: the next tick is scheduled only after the previous request
    and its callback have finished.
    """

    def __init__(
        self,
        api: ScanApiClient,
        on_snapshot: Callable[[StatusSnapshot], None] | None = None,
    ):
        """
        Args:
            api: Scan API client used for status requests
            on_snapshot: Optional hook receiving every snapshot before it is
                mapped to an event (the session uses it to keep the summary)
        """
        self.api = api
        self.on_snapshot = on_snapshot
        self.requests_made = 0
        self.failures = 0
        self._task: asyncio.Task | None = None
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(
        self,
        job_id: str,
        callbacks: ScanCallbacks,
        interval_ms: int = DEFAULT_INTERVAL_MS,
    ) -> Callable[[], None]:
        """
        Start polling in the background.

        Args:
            job_id: Job to poll
            callbacks: Receives progress/completed/error events
            interval_ms: Delay between the end of one request and the next

        Returns:
            cancel function; after it returns no callback fires, even for a
            request already in flight
        """
        if self._task is not None:
            raise RuntimeError("PollingDriver instances are single-use")
        if interval_ms <= 0:
            raise ValueError(f"interval_ms must be positive, got {interval_ms}")

        self._task = asyncio.create_task(
            self._poll_loop(job_id, callbacks, interval_ms / 1000),
            name=f"poll-{job_id}",
        )
        return self.cancel

    def cancel(self) -> None:
        """Stop the timer; idempotent."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait until polling ends (terminal status or cancellation)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise

    async def _poll_loop(
        self, job_id: str, callbacks: ScanCallbacks, interval: float
    ) -> None:
        logger.info("polling_started", job_id=job_id, interval_seconds=interval)

        while not self._cancelled:
            snapshot = await self._poll_once(job_id)

            if snapshot is not None and not self._cancelled:
                if self.on_snapshot is not None:
                    self.on_snapshot(snapshot)
                event = snapshot_to_event(snapshot)
                await callbacks.dispatch(event)
                record_event_dispatched("polling", event.kind.value)

                if event.is_terminal:
                    logger.info(
                        "polling_finished",
                        job_id=job_id,
                        status=snapshot.status,
                        requests=self.requests_made,
                    )
                    return

            await asyncio.sleep(interval)

    async def _poll_once(self, job_id: str) -> StatusSnapshot | None:
        self.requests_made += 1
        try:
            snapshot = await self.api.get_status(job_id)
        except ApiError as e:
            # Transient errors are OK - keep polling
            self.failures += 1
            record_poll(ok=False)
            logger.warning(
                "status_poll_failed",
                job_id=job_id,
                error=e.message,
                status_code=e.status_code,
                failures=self.failures,
            )
            return None

        record_poll(ok=True)
        logger.debug(
            "status_polled",
            job_id=job_id,
            status=snapshot.status,
            percent=snapshot.percent,
        )
        return snapshot
