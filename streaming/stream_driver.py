"""
Stream delivery: one long-lived POST whose response is an event stream.

Stream success means the connection closed after a completed or error event
was observed. Anything else (early close, read failure) is an inconclusive
end that the session answers by switching to polling. Failing to connect at
all raises StreamUnavailableError.
"""
from dataclasses import dataclass, field

import httpx

from core.logging_config import get_logger
from core.metrics import record_event_dispatched, record_malformed_frame
from core.types import DecodeError, ProgressEvent, ScanConfig
from .api import ScanApiClient
from .callbacks import ScanCallbacks
from .decoder import decode_frame
from .frames import FrameParser

logger = get_logger(__name__)


@dataclass
class StreamResult:
    """How a stream ended."""

    terminal_event: ProgressEvent | None = None
    job_id: str | None = None
    events_dispatched: int = 0
    malformed_frames: int = 0
    cancelled: bool = False
    read_error: str | None = None
    frames: int = field(default=0, repr=False)

    @property
    def succeeded(self) -> bool:
        """True when a terminal event was observed before the stream ended."""
        return self.terminal_event is not None


class StreamDriver:
    """
    Reads one progress stream and dispatches decoded events in order.

    Chunks are read one at a time; every frame a chunk completes is decoded
    and its event dispatched (and awaited) before the next chunk is read.
    cancel() is cooperative: the flag is checked before each dispatch, so
    once it is set no further callback fires, even for frames that were
    already buffered. The connection is then closed on the way out.
    """

    def __init__(self, api: ScanApiClient):
        self.api = api
        self._cancelled = False
        self._opened = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Stop dispatching events; safe to call at any time."""
        self._cancelled = True

    async def open(self, config: ScanConfig, callbacks: ScanCallbacks) -> StreamResult:
        """
        Run the stream until the server closes it or the driver is cancelled.

        Returns:
            StreamResult describing how the stream ended

        Raises:
            StreamUnavailableError: If the stream could not be established
            RuntimeError: If the driver was already used
        """
        if self._opened:
            raise RuntimeError("StreamDriver instances are single-use")
        self._opened = True

        result = StreamResult()
        # One parser per connection, never shared
        parser = FrameParser()

        async with self.api.stream_scan(config) as response:
            logger.debug("stream_opened", provider=config.provider)
            try:
                async for chunk in response.aiter_bytes():
                    if self._cancelled:
                        break
                    for frame in parser.feed(chunk):
                        if not await self._handle_frame(frame, callbacks, result):
                            break
                    if self._cancelled:
                        break
                else:
                    for frame in parser.close():
                        if not await self._handle_frame(frame, callbacks, result):
                            break

            except (httpx.TransportError, httpx.DecodingError) as e:
                # Dropped connection mid-stream: inconclusive, not a job failure
                result.read_error = repr(e)
                logger.warning(
                    "stream_read_failed",
                    job_id=result.job_id,
                    error=repr(e),
                    events_dispatched=result.events_dispatched,
                )

        result.cancelled = self._cancelled
        logger.info(
            "stream_closed",
            job_id=result.job_id,
            terminal=result.terminal_event.kind.value if result.terminal_event else None,
            cancelled=result.cancelled,
            events_dispatched=result.events_dispatched,
            malformed_frames=result.malformed_frames,
        )
        return result

    async def _handle_frame(
        self, frame: str, callbacks: ScanCallbacks, result: StreamResult
    ) -> bool:
        """Decode and dispatch one frame. Returns False once dispatch must stop."""
        result.frames += 1
        try:
            event = decode_frame(frame)
        except DecodeError as e:
            result.malformed_frames += 1
            record_malformed_frame()
            logger.warning(
                "malformed_frame_skipped",
                job_id=result.job_id,
                reason=str(e),
                frame=frame[:200],
            )
            return True

        if event is None:
            return True

        if self._cancelled:
            return False

        if result.job_id is None:
            result.job_id = event.job_id

        await callbacks.dispatch(event)
        result.events_dispatched += 1
        record_event_dispatched("stream", event.kind.value)

        if event.is_terminal and result.terminal_event is None:
            result.terminal_event = event
        return True
