"""OS signal component.

Signal handlers do nothing but queue an event and ring a Doorbell; the event
loop thread does the actual work.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import queue
import signal
from collections.abc import Iterator
from types import FrameType

import structlog

from .eventloop import Doorbell

logger = structlog.get_logger()


@enum.unique
class SignalEvent(enum.Enum):
    """The signals we care about."""

    WINCH = "winch"
    INT = "int"
    TERM = "term"


SIGNALS = {
    "SIGWINCH": SignalEvent.WINCH,
    "SIGINT": SignalEvent.INT,
    "SIGTERM": SignalEvent.TERM,
}


class Signals:
    """A pollable source of OS signals."""

    def __init__(self) -> None:
        # SimpleQueue.put() is reentrant, and thus safe to call from a signal handler
        self._queue: queue.SimpleQueue[SignalEvent] = queue.SimpleQueue()
        self._doorbell = Doorbell()
        self._events: dict[int, SignalEvent] = {}

    def fileno(self) -> int:
        """Return the handle to register with the event loop."""
        return self._doorbell.fileno()

    def drain(self) -> Iterator[SignalEvent]:
        """Yield all signals received since the last call."""
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return

    def subscribe(self) -> None:
        """Install the signal handlers; must be called from the main thread."""
        for name, event in SIGNALS.items():
            signum = getattr(signal, name, None)
            if signum is None:
                continue  # e.g. no SIGWINCH on this platform
            self._events[signum] = event
            signal.signal(signum, self._handle)
            logger.debug("Signal handler installed", signal=name)

    def _handle(self, signum: int, frame: FrameType | None) -> None:
        self._queue.put(self._events[signum])
        self._doorbell.ring()
