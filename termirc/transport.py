"""Transport component.

Owns a single TCP connection to an IRC server. Once started, a background thread reads from
the socket, splits the byte stream into lines and hands them one by one to a
listener, in the manner of asyncio.Protocol.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import socket
import threading
from typing import Protocol

import structlog

logger = structlog.get_logger()

READ_CHUNK = 4096
READ_TIMEOUT = 1.0
CONNECT_TIMEOUT = 30.0


class TransportListener(Protocol):
    """Interface for the receiving end of a Transport."""

    def line_received(self, line: str) -> None:
        """Handle one complete line, without its terminator."""

    def connection_lost(self, exc: Exception) -> None:
        """Handle a fatal I/O error; the transport is closed afterwards."""


class Transport:
    """A line-based TCP connection with a dedicated reader thread."""

    def __init__(self, listener: TransportListener) -> None:
        self.listener = listener
        self.log = logger.new()
        self._sock: socket.socket | None = None
        self._send_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._name = "transport"

    @property
    def is_open(self) -> bool:
        """Return True if the socket has not been closed yet."""
        return self._sock is not None

    def open(self, address: str, port: int, timeout: float = CONNECT_TIMEOUT) -> None:
        """Connect to the server. Raises OSError on failure, or if not connected within timeout."""
        sock = socket.create_connection((address, port), timeout=timeout)
        sock.settimeout(READ_TIMEOUT)
        self._sock = sock
        self.log = self.log.bind(host=address, port=port)
        self._name = f"transport-{address}:{port}"
        self.log.info("Connected")

    def start(self) -> None:
        """Start handing lines to the listener, from a dedicated thread."""
        if self._sock is None or self._thread is not None:
            return
        self._thread = threading.Thread(name=self._name, target=self._read_forever, daemon=True)
        self._thread.start()

    def _read_forever(self) -> None:
        buffer = b""
        while True:
            sock = self._sock
            if sock is None:
                break

            try:
                data = sock.recv(READ_CHUNK)
                if not data:
                    raise ConnectionResetError("Connection closed by remote host")
            except socket.timeout:
                # read timeout; this is normal, just reschedule
                continue
            except OSError as exc:
                if self._sock is None:
                    break  # closed locally; nobody to report to
                self.log.info("Connection lost", error=str(exc))
                self.listener.connection_lost(exc)
                self.close()
                break

            buffer += data
            while b"\n" in buffer and self._sock is not None:
                bline, buffer = buffer.split(b"\n", 1)
                line = bline.rstrip(b"\r").decode("utf8", errors="replace")
                if not line:
                    continue
                self.log.debug("Data received", message=line)
                self.listener.line_received(line)

    def send(self, line: str) -> None:
        """Send a line to the server, appending the terminator."""
        line = line[:510]  # 512 including CRLF; RFC 2813, section 3.3
        sock = self._sock
        if sock is None:
            self.log.debug("Data not sent (conn closed)", message=line)
            return

        self.log.debug("Data sent", message=line)
        try:
            with self._send_lock:
                sock.sendall(line.encode("utf8") + b"\r\n")
        except OSError as exc:
            # the reader thread notices a broken connection and reports it
            self.log.debug("Unable to send", error=str(exc))

    def close(self) -> None:
        """Close the connection; safe to call more than once."""
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        sock.close()
        self.log.info("Disconnected")
