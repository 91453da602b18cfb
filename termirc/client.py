"""IRC client component.

Implements the connection state machine: registration, keepalive, automatic
reconnection and sign-off. Lines arrive on the transport's reader thread;
everything the user should see is put in a queue and announced through a
Doorbell, to be consumed from the event loop thread with drain().
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import enum
import queue
import threading
import time
from collections.abc import Iterator
from typing import Any

import prometheus_client
import structlog
from prometheus_client import Counter, Gauge

from .config import ClientConfig, ServerConfig
from .eventloop import Doorbell
from .message import CTCP, Message, MessageType
from .transport import Transport

logger = structlog.get_logger()


@enum.unique
class ConnectionState(enum.Enum):
    """The states of a connection, in the order they are normally traversed."""

    CLOSED = "closed"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    CONNECTED = "connected"
    CLOSING = "closing"


class Client:
    """An IRC client connection.

    Exposes a pollable handle (fileno) and an ordered queue of parsed
    messages (drain), plus connect(), send() and close() to drive it.
    """

    def __init__(
        self,
        server: ServerConfig,
        config: ClientConfig | None = None,
        registry: prometheus_client.CollectorRegistry | None = None,
    ) -> None:
        self.server = server
        self.config = config or ClientConfig()
        self.nick = server.nick
        self.log = logger.new(host=server.host, port=server.port)

        self._state = ConnectionState.CLOSED
        self._state_lock = threading.RLock()
        self._generation = 0
        self._transport: Transport | None = None
        self._queue: queue.SimpleQueue[Message] = queue.SimpleQueue()
        self._doorbell = Doorbell()
        self._keepalive: threading.Thread | None = None
        self._keepalive_wakeup = threading.Event()

        if registry is None:
            registry = prometheus_client.CollectorRegistry()
        self.metrics: dict[str, Any] = {
            "received": Counter("termirc_lines_received", "Count of lines received from the server", registry=registry),
            "sent": Counter("termirc_lines_sent", "Count of lines sent to the server", registry=registry),
            "reconnects": Counter("termirc_reconnects", "Count of automatic reconnections", registry=registry),
            "errors": Counter("termirc_errors", "Count of errors and exceptions", ["type"], registry=registry),
            "state": Gauge("termirc_connection_state", "Current connection state", ["state"], registry=registry),
        }
        self._update_state_metric()

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""
        return self._state

    def _set_state(self, state: ConnectionState) -> None:
        self.log.debug("State change", old=self._state.value, new=state.value)
        self._state = state
        self._update_state_metric()

    def _update_state_metric(self) -> None:
        for state in ConnectionState:
            self.metrics["state"].labels(state.value).set(1 if state is self._state else 0)

    def fileno(self) -> int:
        """Return the handle to register with the event loop."""
        return self._doorbell.fileno()

    def drain(self) -> Iterator[Message]:
        """Yield all queued messages, in the order they were queued."""
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return

    def _put(self, msg: Message) -> None:
        self._queue.put(msg)
        self._doorbell.ring()

    def _system(self, text: str) -> None:
        self._put(Message.system(text))

    def connect(self) -> bool:
        """Open a new connection. Returns False if we are not currently closed."""
        return self._connect()

    def _connect(self, generation: int | None = None) -> bool:
        """Open a new connection, unless disconnect() was called since generation."""
        with self._state_lock:
            if self._state is not ConnectionState.CLOSED:
                return False
            if generation is not None and generation != self._generation:
                return False
            self._generation += 1
            generation = self._generation
            self._set_state(ConnectionState.CONNECTING)

        # the state lock is never held across the blocking connect
        self.log.info("Connecting")
        transport = Transport(self)
        try:
            transport.open(self.server.host, self.server.port, self.config.connect_timeout)
        except OSError as exc:
            self.log.warning("Unable to connect", error=str(exc))
            self.metrics["errors"].labels("connect").inc()
            with self._state_lock:
                if generation != self._generation:
                    return False
                self._set_state(ConnectionState.CLOSED)
            self._system(f"Unable to connect to {self.server.host}:{self.server.port}: {exc}")
            return False

        with self._state_lock:
            if generation != self._generation:
                self.log.info("Connection attempt abandoned")
                transport.close()
                return False
            self._transport = transport
            transport.start()
        return True

    def disconnect(self) -> None:
        """Tear down the connection immediately, without signing off."""
        with self._state_lock:
            if self._state is ConnectionState.CLOSED:
                return
            self._generation += 1
            self._set_state(ConnectionState.CLOSED)
            self._keepalive_wakeup.set()
            if self._transport:
                self._transport.close()
                self._transport = None

    def close(self, reason: str | None = None) -> bool:
        """Sign off with a QUIT. Returns False unless we are connected.

        The connection is torn down once the server acknowledges with ERROR.
        """
        with self._state_lock:
            if self._state is not ConnectionState.CONNECTED:
                return False
            self._set_state(ConnectionState.CLOSING)
            self._keepalive_wakeup.set()
        self._send(f"QUIT :{reason}" if reason else "QUIT")
        return True

    def send(self, text: str) -> bool:
        """Send a raw line, as typed by the user. Returns False unless we are connected."""
        if self._state is not ConnectionState.CONNECTED:
            return False
        self._send(text)
        return True

    def _send(self, line: str) -> None:
        transport = self._transport
        if transport is None:
            return
        transport.send(line)
        self.metrics["sent"].inc()

    def _register(self) -> None:
        if self.server.password:
            self._send(f"PASS {self.server.password}")
        self._send(f"NICK {self.nick}")
        self._send(f"USER {self.nick} 0 * :{self.server.realname or self.nick}")

    def _start_keepalive(self) -> None:
        # one event per keepalive thread, so that a stale thread never outlives its connection
        self._keepalive_wakeup = threading.Event()
        self._keepalive = threading.Thread(
            name="keepalive", target=self._periodic_ping, args=(self._keepalive_wakeup,), daemon=True
        )
        self._keepalive.start()

    def _periodic_ping(self, wakeup: threading.Event) -> None:
        while self._state is ConnectionState.CONNECTED:
            if wakeup.wait(self.config.ping_interval):
                break
            if self._state is not ConnectionState.CONNECTED:
                break
            self._send(str(Message("PING", [str(int(time.time()))])))
        self.log.debug("Keepalive stopped")

    def line_received(self, line: str) -> None:
        """Handle a line from the transport (called from the reader thread)."""
        self.metrics["received"].inc()
        try:
            msg = Message.from_message(line)
        except ValueError:
            # ignore unparseable commands
            self.log.debug("Ignoring unparseable line", message=line)
            self.metrics["errors"].labels("parse").inc()
            return

        response = None
        if msg.command == "PING":
            # answer right away, and do not bother the user with it
            self._send(str(Message("PONG", msg.params[:1])))
            return
        elif msg.command == "ERROR" and self._state is ConnectionState.CLOSING:
            self.disconnect()
            self.log.info("Connection closed by server", reason=msg.text)
        elif msg.command == "PRIVMSG" and msg.type is MessageType.CTCP:
            response = self._handle_ctcp(msg)
        elif msg.command == "NICK" and msg.nick == self.nick and msg.params:
            self.nick = msg.params[0]

        with self._state_lock:
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.REGISTERING)
                self._register()
            elif self._state is ConnectionState.REGISTERING and msg.command == "001":
                if msg.params:
                    self.nick = msg.params[0]  # the server may have changed our nick
                self._set_state(ConnectionState.CONNECTED)
                self.log = self.log.bind(nick=self.nick)
                self.log.info("Registered")
                self._start_keepalive()

        self._put(msg)
        if response is not None:
            self._put(response)

    def _handle_ctcp(self, msg: Message) -> Message | None:
        """Answer the CTCP requests we know about, returning the response sent."""
        if msg.ctcp is None or msg.ctcp.command != "VERSION" or msg.ctcp.params:
            return None

        body = f"VERSION {self.config.version}"
        response = Message("NOTICE", [msg.nick, body], self.nick, MessageType.CTCP, ctcp=CTCP.from_body(body))
        self._send(f"NOTICE {msg.nick} :\x01{body}\x01")
        self.log.debug("Answered CTCP VERSION", nick=msg.nick)
        return response

    def connection_lost(self, exc: Exception) -> None:
        """Handle a transport failure (called from the reader thread)."""
        self.metrics["errors"].labels("transport").inc()
        with self._state_lock:
            state = self._state
            if state is ConnectionState.CLOSED:
                return

            self.disconnect()
            if state is ConnectionState.CLOSING:
                self._system(f"Connection closed: {exc}")
                return

            self._system(f"Connection error: {exc}; reconnecting")
            self.metrics["reconnects"].inc()
            self.log.warning("Connection lost, reconnecting", error=str(exc))
            generation = self._generation
        self._connect(generation)

    def __repr__(self) -> str:
        """Return a user-readable description of the client."""
        return f"<{self.__class__.__name__} {self.nick}@{self.server.host}:{self.server.port} {self._state.value}>"
