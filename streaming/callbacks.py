"""Callback registration shared by the stream and polling drivers."""
import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from core.types import EventKind, ProgressEvent

EventCallback = Callable[[ProgressEvent], Awaitable[Any] | Any]


@dataclass
class ScanCallbacks:
    """
    The four progress callbacks a caller registers for one scan.

    Drivers never call the fields directly: they hand each decoded event to
    dispatch(), which routes on the event's kind. Callbacks may be plain
    functions or coroutines; a coroutine is awaited before the next event is
    delivered.
    """

    on_progress: EventCallback | None = None
    on_resource: EventCallback | None = None
    on_completed: EventCallback | None = None
    on_error: EventCallback | None = None

    def for_kind(self, kind: EventKind) -> EventCallback | None:
        return {
            EventKind.PROGRESS: self.on_progress,
            EventKind.RESOURCE: self.on_resource,
            EventKind.COMPLETED: self.on_completed,
            EventKind.ERROR: self.on_error,
        }[kind]

    async def dispatch(self, event: ProgressEvent) -> None:
        callback = self.for_kind(event.kind)
        if callback is None:
            return
        result = callback(event)
        if inspect.isawaitable(result):
            await result
