"""DCC file transfer component.

A single worker thread takes DCC offers (SEND, and ACCEPT in reply to our own
RESUME requests) off a queue and downloads files over a secondary TCP
connection. The receiver acknowledges data with 4-byte, big-endian byte
counts. Progress, resume requests and errors are reported as DCCUpdate
events, queued and announced through a Doorbell, mirroring the Client.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import enum
import ipaddress
import pathlib
import queue
import select
import socket
import struct
import threading
from collections.abc import Iterator
from typing import Any, BinaryIO

import prometheus_client
import structlog
from prometheus_client import Counter

from .config import DCCConfig
from .eventloop import Doorbell
from .message import CTCP_DELIMITER, Message

logger = structlog.get_logger()


class DCCError(Exception):
    """Exception raised when a transfer cannot proceed."""


@enum.unique
class UpdateKind(enum.Enum):
    """The kinds of events emitted by the DCC engine."""

    PROGRESS = "progress"
    RESUME = "resume"
    ERROR = "error"


@dataclasses.dataclass(frozen=True)
class DCCUpdate:
    """An event about a DCC transfer."""

    kind: UpdateKind
    filename: str
    nick: str = ""
    port: int = 0
    progress: float = 0.0
    position: int = 0
    text: str = ""

    def resume_request(self) -> str:
        """Return the PRIVMSG asking the sender to resume from our position."""
        filename = f'"{self.filename}"' if " " in self.filename else self.filename
        body = f"DCC RESUME {filename} {self.port} {self.position}"
        return f"PRIVMSG {self.nick} :{CTCP_DELIMITER}{body}{CTCP_DELIMITER}"


@dataclasses.dataclass(frozen=True)
class DCCConnection:
    """A negotiated transfer, waiting to be resumed, or in progress."""

    filename: str
    host: str
    port: int
    size: int


def decode_address(packed: str) -> str:
    """Decode a DCC address: an IPv4 address as a 32-bit, big-endian integer."""
    return str(ipaddress.IPv4Address(int(packed)))


def safe_filename(filename: str) -> str:
    """Strip any directory components off a filename offered by a peer."""
    name = pathlib.PurePath(filename.replace("\\", "/")).name
    if name in ("", ".", ".."):
        raise DCCError(f"Invalid filename {filename!r}")
    return name


class DCCEngine:
    """A worker downloading files offered over DCC, one at a time."""

    def __init__(
        self, config: DCCConfig | None = None, registry: prometheus_client.CollectorRegistry | None = None
    ) -> None:
        self.config = config or DCCConfig()
        self.running = False
        self._offers: queue.SimpleQueue[Message | None] = queue.SimpleQueue()
        self._updates: queue.SimpleQueue[DCCUpdate] = queue.SimpleQueue()
        self._doorbell = Doorbell()
        self._thread: threading.Thread | None = None
        self._stopped = threading.Event()
        # only ever touched by one worker thread at a time
        self._connections: dict[int, DCCConnection] = {}

        if registry is None:
            registry = prometheus_client.CollectorRegistry()
        self.metrics: dict[str, Any] = {
            "bytes": Counter("termirc_dcc_bytes", "Count of bytes received over DCC", registry=registry),
            "transfers": Counter("termirc_dcc_transfers", "Count of DCC transfers", ["outcome"], registry=registry),
        }

    def fileno(self) -> int:
        """Return the handle to register with the event loop."""
        return self._doorbell.fileno()

    def drain(self) -> Iterator[DCCUpdate]:
        """Yield all queued updates, in the order they were queued."""
        while True:
            try:
                yield self._updates.get_nowait()
            except queue.Empty:
                return

    def add(self, msg: Message) -> None:
        """Queue a DCC offer for the worker."""
        self._offers.put(msg)

    def start(self) -> None:
        """Start a worker thread.

        If a previous worker is still finishing a transfer, the new one waits
        for it before picking up offers.
        """
        if self.running:
            return
        self.running = True
        self._stopped = threading.Event()
        self._thread = threading.Thread(
            name="dcc", target=self._work, args=(self._offers, self._stopped, self._thread), daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the worker, dropping offers that have not been started yet.

        A transfer in progress is not interrupted.
        """
        self.running = False
        self._stopped.set()
        offers, self._offers = self._offers, queue.SimpleQueue()
        offers.put(None)

    def join(self, timeout: float | None = None) -> None:
        """Wait for the worker thread to exit."""
        if self._thread:
            self._thread.join(timeout)

    def _emit(self, update: DCCUpdate) -> None:
        self._updates.put(update)
        self._doorbell.ring()

    def _work(
        self,
        offers: queue.SimpleQueue[Message | None],
        stopped: threading.Event,
        previous: threading.Thread | None,
    ) -> None:
        if previous is not None:
            previous.join()
        while not stopped.is_set():
            msg = offers.get()
            if msg is None or stopped.is_set():
                break
            self.handle(msg)
        logger.debug("DCC worker stopped")

    def handle(self, msg: Message) -> None:
        """Process a single offer (called from the worker thread)."""
        dcc = msg.dcc
        if dcc is None:
            return
        log = logger.bind(nick=msg.nick, dcc=dcc.command)

        filename = dcc.params[0] if dcc.params else ""
        try:
            if dcc.command == "SEND":
                self._handle_send(msg.nick, dcc.params)
            elif dcc.command == "ACCEPT":
                self._handle_accept(msg.nick, dcc.params)
            else:
                raise DCCError(f"Unsupported DCC command {dcc.command}")
        except Exception as exc:
            log.info("Rejected DCC offer", error=str(exc))
            self.metrics["transfers"].labels("rejected").inc()
            self._emit(DCCUpdate(UpdateKind.ERROR, filename, msg.nick, text=f"DCC error: {exc}"))

    def _handle_send(self, nick: str, params: tuple[str, ...]) -> None:
        filename, packed, port_str, size_str = params[:4]
        filename = safe_filename(filename)
        host, port, size = decode_address(packed), int(port_str), int(size_str)

        path = self.config.directory / filename
        existing = path.stat().st_size if path.exists() else 0
        resumable = existing > 0 and port not in self._connections
        self._connections[port] = DCCConnection(filename, host, port, size)

        if resumable:
            logger.info("Asking to resume", filename=filename, position=existing)
            self._emit(
                DCCUpdate(
                    UpdateKind.RESUME,
                    filename,
                    nick,
                    port,
                    progress=existing / size if size else 1.0,
                    position=existing,
                    text=f"Resuming {filename} from {existing} bytes",
                )
            )
            return

        self._download(nick, self._connections[port], offset=0)

    def _handle_accept(self, nick: str, params: tuple[str, ...]) -> None:
        port = int(params[1])
        try:
            connection = self._connections[port]
        except KeyError:
            raise DCCError(f"No pending transfer on port {port}") from None

        path = self.config.directory / connection.filename
        offset = path.stat().st_size if path.exists() else 0
        self._download(nick, connection, offset=offset)

    def _download(self, nick: str, connection: DCCConnection, offset: int) -> None:
        """Receive a file, appending after the first offset bytes."""
        log = logger.bind(filename=connection.filename, host=connection.host, port=connection.port)
        directory = self.config.directory
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / connection.filename

        finished = False
        try:
            log.info("Starting download", size=connection.size, offset=offset)
            with socket.create_connection((connection.host, connection.port), timeout=self.config.timeout) as sock:
                mode = "ab" if offset else "wb"
                with path.open(mode) as fh:
                    finished = self._receive(sock, fh, nick, connection, offset)
        except Exception as exc:
            if not finished:
                log.warning("Download failed", error=str(exc))
                self.metrics["transfers"].labels("failed").inc()
                self._emit(
                    DCCUpdate(
                        UpdateKind.ERROR,
                        connection.filename,
                        nick,
                        connection.port,
                        text=f"Error downloading {connection.filename}: {exc}",
                    )
                )
        finally:
            self._connections.pop(connection.port, None)

        if finished:
            log.info("Download finished")
            self.metrics["transfers"].labels("finished").inc()

    def _receive(self, sock: socket.socket, fh: BinaryIO, nick: str, connection: DCCConnection, offset: int) -> bool:
        """Run the receive loop. Returns True once the whole file has been written."""
        packet_size, size = self.config.packet_size, connection.size
        buffer = b""
        received = written = 0

        def progress(value: float) -> None:
            self._emit(
                DCCUpdate(
                    UpdateKind.PROGRESS,
                    connection.filename,
                    nick,
                    connection.port,
                    progress=value,
                    position=offset + written,
                    text=f"Downloading {connection.filename}: {value:.0%}",
                )
            )

        def ack() -> None:
            sock.sendall(struct.pack("!I", written & 0xFFFFFFFF))

        reported = offset / size if size else 0.0
        progress(reported)
        remaining = size - offset
        while received < remaining:
            readable, _, _ = select.select([sock], [], [], self.config.timeout)
            if not readable:
                raise DCCError("Transfer interrupted (timed out)")

            data = sock.recv(packet_size)
            if not data:
                raise DCCError("Connection reset before the transfer completed")
            data = data[: remaining - received]
            received += len(data)
            buffer += data
            self.metrics["bytes"].inc(len(data))

            if received == remaining:
                break

            while received // packet_size > written // packet_size:
                fh.write(buffer[:packet_size])
                buffer = buffer[packet_size:]
                written += packet_size
                ack()

            current = (offset + received) / size
            if current - reported >= self.config.progress_step:
                reported = current
                progress(current)

        fh.write(buffer)
        written += len(buffer)
        fh.flush()
        ack()
        progress(1.0)
        return True
