"""Event loop component.

A single-threaded, readiness-based dispatcher. Background producers (the IRC
reader, the DCC worker, signal handlers) never touch consumer state: they put
events in a queue and ring a Doorbell, whose read end is registered here.
Handlers thus always run in the thread that called run().
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import os
import selectors
from typing import Any, Callable, Protocol, Union

import structlog

logger = structlog.get_logger()

CONTROL_STOP = b"1"
CONTROL_RESCAN = b"2"


class HasFileno(Protocol):
    """Anything with a file descriptor, e.g. a socket, a file or a Doorbell."""

    def fileno(self) -> int: ...


Source = Union[int, HasFileno]
Handler = Callable[[], Any]


class Doorbell:
    """A one-byte-per-event wake channel.

    The payload of an event lives in a queue paired with the doorbell; the
    byte merely makes the read end readable, waking up the event loop.
    """

    def __init__(self) -> None:
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)

    def fileno(self) -> int:
        """Return the read end, to be registered with an EventLoop."""
        return self._read_fd

    def ring(self, signal: bytes = b"1") -> None:
        """Signal the event loop. Safe to call from any thread or signal handler."""
        os.write(self._write_fd, signal)

    def read(self, size: int = 1) -> bytes:
        """Consume pending bytes without blocking; returns b"" if none are pending."""
        try:
            return os.read(self._read_fd, size)
        except BlockingIOError:
            return b""

    def close(self) -> None:
        """Close both ends of the pipe."""
        for fd in (self._read_fd, self._write_fd):
            try:
                os.close(fd)
            except OSError:
                pass


def _fd(source: Source) -> int:
    return source if isinstance(source, int) else source.fileno()


class EventLoop:
    """A select()-style event multiplexer.

    Exactly one ready source's handler runs per wake; afterwards, one residual
    wake byte is drained from that source (unless it was registered with
    drain=False, e.g. a terminal whose input the handler reads itself).
    """

    def __init__(self) -> None:
        self.running = False
        self._selector = selectors.DefaultSelector()
        self._control = Doorbell()
        self._handlers: dict[int, tuple[Handler, bool]] = {}
        self.register(self._control, self._handle_control, drain=False)

    def register(self, source: Source, handler: Handler, drain: bool = True) -> None:
        """Add a source, replacing its handler if it has already been registered."""
        fd = _fd(source)
        if fd in self._handlers:
            self._selector.unregister(fd)
        self._selector.register(fd, selectors.EVENT_READ)
        self._handlers[fd] = (handler, drain)
        logger.debug("Source registered", fd=fd)
        if self.running:
            self._control.ring(CONTROL_RESCAN)

    def unregister(self, source: Source) -> None:
        """Remove a source; no-op if it was never registered."""
        fd = _fd(source)
        if fd == self._control.fileno() or fd not in self._handlers:
            return
        self._selector.unregister(fd)
        del self._handlers[fd]
        logger.debug("Source unregistered", fd=fd)
        if self.running:
            self._control.ring(CONTROL_RESCAN)

    def stop(self) -> None:
        """Ask the loop to stop. Safe to call from any thread."""
        self._control.ring(CONTROL_STOP)

    def _handle_control(self) -> None:
        while True:
            signals = self._control.read(512)
            if not signals:
                break
            if CONTROL_STOP in signals:
                self.running = False

    def run(self) -> None:
        """Block and dispatch events until stop() is called."""
        self.running = True
        logger.debug("Event loop started", sources=len(self._handlers))
        try:
            while self.running:
                ready = [key.fd for key, _ in self._selector.select()]
                if not ready:
                    continue

                # a pending control signal wins, so that nothing runs after a stop()
                fd = self._control.fileno() if self._control.fileno() in ready else ready[0]
                handler, drain = self._handlers[fd]
                try:
                    handler()
                except Exception:
                    logger.exception("Unhandled exception in event handler, stopping", fd=fd)
                    raise

                if drain and fd in self._handlers:
                    try:
                        os.read(fd, 1)
                    except BlockingIOError:
                        pass
                    except OSError as exc:
                        logger.critical("Unable to drain event source, stopping", fd=fd, error=str(exc))
                        break
        finally:
            self.running = False
            logger.debug("Event loop stopped")

    def close(self) -> None:
        """Release the selector and the control channel."""
        self._selector.close()
        self._control.close()
