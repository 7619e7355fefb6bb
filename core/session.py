"""Scan session: the state machine between "Scan" and the resource list.

    idle -> streaming -> completed | failed | cancelled
                      -> polling -> completed | failed | cancelled
    idle -> polling              (stream disabled in settings)
    idle -> cancelled

streaming -> polling is the only lateral move. It happens silently when the
stream could not be opened or ended without a completed/error event.

Every event handed to the session is tagged with the session token that was
current when its driver started. cancel() and the fallback both advance the
token, so late events from a retired driver are dropped, as are events whose
job_id differs from the job this session is following.
"""
import asyncio
import inspect
import itertools
import time
from typing import Any, Awaitable, Callable

from streaming.api import ScanApiClient
from streaming.callbacks import ScanCallbacks
from streaming.polling_driver import PollingDriver
from streaming.stream_driver import StreamDriver
from .config import ClientSettings
from .logging_config import get_logger
from .metrics import record_fallback, record_session_finished, record_session_started
from .types import (
    ApiError,
    EventKind,
    ProgressEvent,
    ScanConfig,
    SessionState,
    StateTransitionError,
    StatusSnapshot,
    StreamUnavailableError,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
)

logger = get_logger(__name__)

STARTING_MESSAGE = "Starting scan..."
COMPLETED_MESSAGE = "Scan completed"
FAILED_MESSAGE = "Scan failed"
CANCELLED_MESSAGE = "Scan cancelled"
UNAVAILABLE_MESSAGE = "Scan could not be started or monitored"

# Shared by all sessions in the process so tokens never repeat
_session_tokens = itertools.count(1)

AdvanceHook = Callable[[str], Awaitable[Any] | Any]


class ScanSession:
    """
    One scan attempt, from start to a terminal state.

    Usage:
        async with ScanSession(api, callbacks, on_advance=show_resources) as session:
            session.start(config)
            state = await session.wait()

    percent, message and state can be read at any time (see snapshot()).
    A session is single-use; start a new one for a new scan.
    """

    def __init__(
        self,
        api: ScanApiClient,
        callbacks: ScanCallbacks | None = None,
        on_advance: AdvanceHook | None = None,
        settings: ClientSettings | None = None,
        owns_api: bool = False,
    ):
        """
        Args:
            api: Client for the scan endpoints
            callbacks: Caller callbacks; receive only events the session accepted
            on_advance: Called once with the job_id when the scan completes
            settings: Overrides api.settings (poll interval, stream switch)
            owns_api: Close the API client when the session is closed
        """
        self.api = api
        self.callbacks = callbacks or ScanCallbacks()
        self.on_advance = on_advance
        self.settings = settings or api.settings
        self.owns_api = owns_api

        self.state = SessionState.IDLE
        self.token = next(_session_tokens)
        self.job_id: str | None = None
        self.percent = 0
        self.message = ""
        self.error: str | None = None
        self.summary: dict[str, int] | None = None
        self.delivery: str | None = None  # "stream"|"polling"

        self._stream_driver: StreamDriver | None = None
        self._polling_driver: PollingDriver | None = None
        self._task: asyncio.Task | None = None
        self._done = asyncio.Event()
        self._failure: BaseException | None = None
        self._advanced = False
        self._started_at: float | None = None

    # ------------------------------------------------------------------
    # Caller surface
    # ------------------------------------------------------------------

    def start(self, config: ScanConfig) -> "ScanSession":
        """
        Start the scan in the background. Must be called from a running loop.

        Raises:
            StateTransitionError: If the session was already started
        """
        # The task moves the state out of idle only once it runs
        if self._task is not None or self.state is not SessionState.IDLE:
            raise StateTransitionError(
                "Session already started; start a new session to scan again"
            )

        self._started_at = time.monotonic()
        self.message = STARTING_MESSAGE
        record_session_started()
        logger.info(
            "scan_session_started",
            token=self.token,
            provider=config.provider,
            targets=config.enabled_targets,
        )
        self._task = asyncio.create_task(self._run(config), name=f"scan-session-{self.token}")
        return self

    async def wait(self) -> SessionState:
        """
        Wait for a terminal state.

        Raises:
            Exception: Whatever a caller callback raised, if one did
        """
        await self._done.wait()
        if self._failure is not None:
            raise self._failure
        return self.state

    async def run(self, config: ScanConfig) -> SessionState:
        """Start the scan and wait for its terminal state."""
        self.start(config)
        return await self.wait()

    def cancel(self) -> None:
        """
        Cancel the scan. Idempotent and safe from any state.

        No callback fires after this returns. Cancellation is cooperative: a
        stream blocked on a read is closed when its next chunk arrives or
        when the session is closed.
        """
        if self.state in TERMINAL_STATES:
            return

        # Retire every callback bound to the current token
        self.token = next(_session_tokens)
        self._transition(SessionState.CANCELLED)
        self.message = CANCELLED_MESSAGE
        self._release_drivers()
        self._finish("cancelled")
        self._done.set()

    def snapshot(self) -> dict[str, Any]:
        """Current progress for rendering."""
        return {
            "status": self.state.value,
            "percent": self.percent,
            "message": self.message,
            "job_id": self.job_id,
            "delivery": self.delivery,
            "summary": dict(self.summary) if self.summary else None,
            "error": self.error,
        }

    async def close(self) -> None:
        """Cancel if still running and release the connection."""
        self.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self.owns_api:
            await self.api.close()

    async def __aenter__(self) -> "ScanSession":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _run(self, config: ScanConfig) -> None:
        if self.state in TERMINAL_STATES:
            # Cancelled before the task got to run
            self._done.set()
            return
        try:
            if self.settings.stream_enabled:
                fallback_reason = await self._run_stream(config)
            else:
                fallback_reason = "disabled"

            if fallback_reason is not None and self.state not in TERMINAL_STATES:
                await self._run_polling(config, fallback_reason)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A caller callback raised; stop monitoring and report it from wait()
            logger.error("scan_session_aborted", token=self.token, job_id=self.job_id, error=repr(e))
            self._failure = e
            if self.state not in TERMINAL_STATES:
                self.error = str(e) or FAILED_MESSAGE
                self._transition(SessionState.FAILED)
                self._finish("failed")
        finally:
            self._release_drivers()
            self._done.set()

    async def _run_stream(self, config: ScanConfig) -> str | None:
        """Run the stream. Returns the fallback reason, or None if no fallback is needed."""
        self._transition(SessionState.STREAMING)
        self.delivery = "stream"
        driver = StreamDriver(self.api)
        self._stream_driver = driver

        try:
            await driver.open(config, self._bind(self.token))
            reason = "ended_without_terminal"
        except StreamUnavailableError as e:
            logger.info("stream_unavailable", token=self.token, reason=str(e))
            reason = "connect_failed"
        finally:
            self._stream_driver = None

        if self.state is not SessionState.STREAMING:
            return None
        return reason

    async def _run_polling(self, config: ScanConfig, reason: str) -> None:
        record_fallback(reason)
        # Stream callbacks are retired from here on
        self.token = next(_session_tokens)
        self._transition(SessionState.POLLING)
        self.delivery = "polling"
        logger.info("polling_fallback", token=self.token, job_id=self.job_id, reason=reason)

        job_id = self.job_id
        if job_id is None:
            try:
                job_id = await self.api.start_scan(config)
            except ApiError as e:
                if self.state is not SessionState.POLLING:
                    return
                logger.error(
                    "scan_unavailable",
                    token=self.token,
                    fallback_reason=reason,
                    error=e.message,
                    status_code=e.status_code,
                )
                await self._fail_unavailable()
                return
            if self.state is not SessionState.POLLING:
                return
            self.job_id = job_id

        driver = PollingDriver(self.api, on_snapshot=self._on_snapshot)
        self._polling_driver = driver
        driver.start(job_id, self._bind(self.token), interval_ms=self.settings.poll_interval_ms)
        await driver.wait()

    def _bind(self, token: int) -> ScanCallbacks:
        """Callbacks for a driver, stamped with the token current at its start."""

        async def deliver(event: ProgressEvent) -> None:
            await self._on_event(token, event)

        return ScanCallbacks(
            on_progress=deliver,
            on_resource=deliver,
            on_completed=deliver,
            on_error=deliver,
        )

    def _on_snapshot(self, snapshot: StatusSnapshot) -> None:
        if snapshot.summary is not None:
            self.summary = snapshot.summary

    async def _on_event(self, token: int, event: ProgressEvent) -> None:
        if token != self.token or self.state in TERMINAL_STATES:
            logger.debug(
                "stale_event_discarded",
                token=token,
                current_token=self.token,
                state=self.state.value,
                kind=event.kind.value,
            )
            return

        if self.job_id is None:
            self.job_id = event.job_id
        elif event.job_id != self.job_id:
            logger.warning(
                "foreign_job_event_discarded",
                job_id=self.job_id,
                event_job_id=event.job_id,
                kind=event.kind.value,
            )
            return

        if event.kind is EventKind.COMPLETED:
            self.percent = 100
            self.message = COMPLETED_MESSAGE
            self._transition(SessionState.COMPLETED)
            self._finish("completed")
            await self.callbacks.dispatch(event)
            await self._advance()
            self._done.set()
            return

        if event.kind is EventKind.ERROR:
            self.error = event.message or FAILED_MESSAGE
            self.message = self.error
            self._transition(SessionState.FAILED)
            self._finish("failed")
            await self.callbacks.dispatch(event)
            self._done.set()
            return

        # After a fallback the server may report less than the stream did
        self.percent = max(self.percent, event.percent)
        self.message = event.display_message
        await self.callbacks.dispatch(event)

    async def _advance(self) -> None:
        if self._advanced or self.on_advance is None:
            return
        self._advanced = True
        result = self.on_advance(self.job_id)
        if inspect.isawaitable(result):
            await result

    async def _fail_unavailable(self) -> None:
        self.error = UNAVAILABLE_MESSAGE
        self.message = UNAVAILABLE_MESSAGE
        self._transition(SessionState.FAILED)
        self._finish("failed")
        await self.callbacks.dispatch(
            ProgressEvent(
                kind=EventKind.ERROR,
                job_id=self.job_id or "",
                percent=self.percent,
                message=UNAVAILABLE_MESSAGE,
                source="session",
            )
        )
        self._done.set()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState) -> None:
        """Move to new_state with state machine validation."""
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise StateTransitionError(
                f"Invalid transition: {self.state.value} → {new_state.value}"
            )
        logger.debug(
            "scan_session_transition",
            token=self.token,
            job_id=self.job_id,
            from_state=self.state.value,
            to_state=new_state.value,
        )
        self.state = new_state

    def _finish(self, status: str) -> None:
        duration = None
        if self._started_at is not None:
            duration = time.monotonic() - self._started_at
        record_session_finished(status, duration)
        logger.info(
            "scan_session_finished",
            token=self.token,
            job_id=self.job_id,
            status=status,
            delivery=self.delivery,
            duration_seconds=round(duration, 3) if duration is not None else None,
            error=self.error,
        )

    def _release_drivers(self) -> None:
        if self._stream_driver is not None:
            self._stream_driver.cancel()
        if self._polling_driver is not None:
            self._polling_driver.cancel()
