"""Progress events emitted during a sync cycle.

Events are published by the engine and the transfer executor into a
:class:`ProgressStream`. Consumers pull them at their own pace by iterating
the stream; every stream ends with exactly one terminal event
(``COMPLETED`` or ``ABORTED``).
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Optional


class SyncProgressEvent(str, Enum):
    """Types of progress events."""

    PHASE_CHANGED = "phase_changed"
    """The engine entered a new phase"""

    SCAN_COMPLETE = "scan_complete"
    """Both sides were scanned"""

    PLAN_READY = "plan_ready"
    """The resolved plan is known; total is the number of actions"""

    ACTION_START = "action_start"
    ACTION_RETRY = "action_retry"
    ACTION_COMPLETE = "action_complete"
    ACTION_FAILED = "action_failed"
    ACTION_SKIPPED = "action_skipped"

    COMPLETED = "completed"
    """Terminal: the cycle finished (summary attached)"""

    ABORTED = "aborted"
    """Terminal: the cycle stopped early (reason in message)"""

    @property
    def is_terminal(self) -> bool:
        return self in (SyncProgressEvent.COMPLETED, SyncProgressEvent.ABORTED)


@dataclass
class SyncProgressInfo:
    """Information about sync progress."""

    event: SyncProgressEvent
    phase: str = ""
    path: str = ""
    action: str = ""
    message: str = ""

    completed: int = 0
    """Actions finished so far (succeeded, failed or skipped)"""

    total: int = 0
    """Actions in the plan"""

    bytes_transferred: int = 0
    attempt: int = 0

    summary: Optional[Any] = None
    """CycleSummary attached to COMPLETED and ABORTED events"""

    timestamp: float = field(default_factory=time.time)


class ProgressStream:
    """Thread-safe, replayable stream of progress events.

    Publishers call :meth:`publish`; any number of subscribers iterate the
    stream, each from the first event. Iteration blocks until new events
    arrive and stops after the terminal event. Events published after the
    terminal event are dropped.
    """

    def __init__(self, callback: Optional[Callable[[SyncProgressInfo], None]] = None):
        """Initialize the stream.

        Args:
            callback: Optional function called synchronously for every event
        """
        self._events: list[SyncProgressInfo] = []
        self._condition = threading.Condition()
        self._closed = False
        self._callback = callback

    @property
    def closed(self) -> bool:
        """Whether the terminal event has been published."""
        with self._condition:
            return self._closed

    def publish(self, info: SyncProgressInfo) -> bool:
        """Append an event.

        Returns:
            False if the stream was already closed and the event was dropped
        """
        with self._condition:
            if self._closed:
                return False
            self._events.append(info)
            if info.event.is_terminal:
                self._closed = True
            self._condition.notify_all()
        if self._callback:
            self._callback(info)
        return True

    def emit(self, event: SyncProgressEvent, **kwargs: Any) -> bool:
        """Create and publish an event."""
        return self.publish(SyncProgressInfo(event=event, **kwargs))

    def events(self) -> list[SyncProgressInfo]:
        """Snapshot of the events published so far."""
        with self._condition:
            return list(self._events)

    def __iter__(self) -> Iterator[SyncProgressInfo]:
        index = 0
        while True:
            with self._condition:
                while index >= len(self._events):
                    self._condition.wait()
                info = self._events[index]
            index += 1
            yield info
            if info.event.is_terminal:
                return
