"""
Progress channel for update and rollback operations.

A ProgressChannel is a one-way, ordered stream of events from an
orchestrator to a single observer. Events are log lines (optionally tagged
as warnings), exactly one terminal status, and finally a ``finished`` marker
emitted by ``close()``.

Two transports are provided:
- QueueProgressChannel: feeds a server-push (SSE) response that a remote
  observer reads incrementally. The observer may disconnect at any time;
  the channel then drops events while the pipeline continues.
- CallbackProgressChannel: hands every event to a callable, for observers
  that live inside the same request or process (the CLI, tests).
"""

from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from panel_updater.errors import InternalError
from panel_updater.logging import get_logger

logger = get_logger(__name__)


class TerminalStatus(str, Enum):
    """Terminal outcome of an operation, as seen by the observer."""

    SUCCESS = "success"
    ERROR = "error"
    RESTARTING = "restarting"


FINISHED = "finished"


class ProgressEvent(BaseModel):
    """
    A single event on a progress channel.

    Serialized with unset fields omitted, e.g. ``{"log": "..."}`` or
    ``{"status": "error", "message": "..."}``.
    """

    log: str | None = Field(default=None, description="A log line")
    level: str | None = Field(
        default=None,
        description="'warning' for stderr output that is not known to be benign",
    )
    status: str | None = Field(
        default=None,
        description="success, error, restarting or finished",
    )
    message: str | None = Field(default=None, description="Human-readable outcome")
    version: dict[str, Any] | None = Field(
        default=None,
        description="Serialized version state for version-check streams",
    )

    def to_dict(self) -> dict[str, Any]:
        """Return the event with unset fields omitted."""
        return self.model_dump(exclude_none=True)

    def to_sse(self) -> str:
        """Frame the event as a server-sent-events message."""
        return f"data: {json.dumps(self.to_dict())}\n\n"

    @property
    def is_terminal(self) -> bool:
        """Whether this event carries a terminal status."""
        return self.status in {s.value for s in TerminalStatus}


class ProgressChannel(ABC):
    """
    Base class for progress channels.

    Enforces the ordering contract: log events may be emitted until the one
    terminal status; ``close()`` is only valid after that status and emits
    the ``finished`` marker.
    """

    def __init__(self) -> None:
        self._terminal: TerminalStatus | None = None
        self._closed = False

    @property
    def terminal_status(self) -> TerminalStatus | None:
        """Terminal status emitted so far, if any."""
        return self._terminal

    @property
    def closed(self) -> bool:
        """Whether ``close()`` has been called."""
        return self._closed

    @abstractmethod
    def _deliver(self, event: ProgressEvent) -> None:
        """Hand one event to the transport."""

    def emit(self, line: str, *, warning: bool = False) -> None:
        """
        Emit a log line.

        Args:
            line: The text to show the observer.
            warning: Tag the line as a warning.

        Raises:
            InternalError: If the terminal status was already emitted.
        """
        if self._terminal is not None:
            raise InternalError(
                "Cannot emit log lines after the terminal status",
                details={"line": line, "terminal_status": self._terminal.value},
            )
        self._deliver(ProgressEvent(log=line, level="warning" if warning else None))

    def emit_status(
        self,
        status: TerminalStatus | str,
        message: str | None = None,
        *,
        version: dict[str, Any] | None = None,
    ) -> None:
        """
        Emit the terminal status. Valid exactly once per channel.

        Raises:
            InternalError: If a terminal status was already emitted.
        """
        status = TerminalStatus(status)
        if self._terminal is not None:
            raise InternalError(
                "Terminal status already emitted",
                details={
                    "existing": self._terminal.value,
                    "attempted": status.value,
                },
            )
        self._terminal = status
        self._deliver(
            ProgressEvent(status=status.value, message=message, version=version)
        )

    def close(self) -> None:
        """
        Emit the ``finished`` marker and end the stream.

        Raises:
            InternalError: If no terminal status was emitted or the channel
                is already closed.
        """
        if self._terminal is None:
            raise InternalError("Cannot close a channel before its terminal status")
        if self._closed:
            raise InternalError("Channel already closed")
        self._closed = True
        self._deliver(ProgressEvent(status=FINISHED))


class CallbackProgressChannel(ProgressChannel):
    """Channel that passes each event to a callable as it is emitted."""

    def __init__(self, callback: Callable[[ProgressEvent], None]) -> None:
        super().__init__()
        self._callback = callback

    def _deliver(self, event: ProgressEvent) -> None:
        self._callback(event)


class CollectingProgressChannel(CallbackProgressChannel):
    """Channel that keeps every event in ``events``."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []
        super().__init__(self.events.append)


class QueueProgressChannel(ProgressChannel):
    """
    Channel backed by a bounded asyncio queue, drained by ``stream()``.

    Emitting never blocks the pipeline: when the observer has detached, or
    is so slow that the queue is full, events are dropped and logged.
    Status events, including the ``finished`` marker, always reach a
    connected reader.
    """

    DEFAULT_MAX_EVENTS = 1000

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        super().__init__()
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(
            maxsize=max_events
        )
        self._detached = False
        self.dropped = 0

    @property
    def detached(self) -> bool:
        """Whether the observer has gone away."""
        return self._detached

    def detach(self) -> None:
        """Mark the observer as gone; later events are dropped."""
        if not self._detached:
            logger.info("Progress observer detached; pipeline continues")
        self._detached = True

    def _deliver(self, event: ProgressEvent) -> None:
        if self._detached:
            self.dropped += 1
            logger.debug("Dropped progress event", extra={"event": event.to_dict()})
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            if event.status is None:
                self.dropped += 1
                logger.warning(
                    "Progress queue full; dropping log line",
                    extra={"event": event.to_dict()},
                )
                return
            # Status events must reach the observer: make room for them.
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(event)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in emission order until the channel closes."""
        while True:
            event = await self._queue.get()
            yield event
            if event.status == FINISHED:
                return

    async def stream(self) -> AsyncIterator[str]:
        """
        Yield SSE-framed events until the channel closes.

        If the consumer stops iterating (client disconnect), the channel is
        detached; the producing pipeline is not affected.
        """
        try:
            async for event in self.events():
                yield event.to_sse()
        finally:
            if not self._closed:
                self.detach()
