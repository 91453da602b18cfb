"""Console component.

A deliberately plain, line-oriented front end: one printed line per message
and one read line per command. Anything fancier (windows, colors, raw key
handling) belongs to a proper terminal UI.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import os
import sys
from typing import TextIO

from .message import Message, MessageType


def format_message(msg: Message) -> str:
    """Render a message as a single line of text."""
    time = msg.timestamp.astimezone().strftime("%H:%M")
    if msg.type is MessageType.SYSTEM:
        return f"{time} *** {msg.text}"
    if msg.type is MessageType.ACTION:
        return f"{time} * {msg.nick} {msg.text}"
    if msg.type in (MessageType.CTCP, MessageType.DCC):
        return f"{time} -{msg.nick}- [{msg.command} {msg.text}]"
    if msg.command in ("PRIVMSG", "NOTICE"):
        return f"{time} <{msg.nick}> {msg.text}"
    if msg.command in ("JOIN", "PART", "QUIT", "KICK", "MODE", "NICK"):
        return f"{time} -- {msg.nick} {msg.command} {' '.join(msg.params)}"
    # numerics and everything else: skip our own nick, the first param of every reply
    params = msg.params[1:] if msg.command.isdigit() else msg.params
    return f"{time} {' '.join(params)}"


class ConsoleView:
    """Prints the messages of the active room to a stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout

    def show(self, room: str, msg: Message) -> None:
        """Print a message that arrived in the active room."""
        print(format_message(msg), file=self.stream, flush=True)

    def notify(self, room: str) -> None:
        """Tell the user that a background room has unread messages."""
        print(f"[activity in {room}]", file=self.stream, flush=True)

    def switch(self, room: str, backlog: list[Message]) -> None:
        """Print the backlog of a room that just became active."""
        print(f"=== {room} ===", file=self.stream, flush=True)
        for msg in backlog:
            self.show(room, msg)


class LineInput:
    """A source of input lines, registered with the event loop with drain=False.

    Reads straight from the file descriptor, since a buffered readline() could
    swallow lines the event loop would then never hear about.
    """

    def __init__(self, stream: TextIO | None = None, encoding: str = "utf8") -> None:
        self.stream = stream or sys.stdin
        self.encoding = encoding
        self.eof = False
        self._buffer = b""

    def fileno(self) -> int:
        """Return the handle to register with the event loop."""
        return self.stream.fileno()

    def readlines(self) -> list[str] | None:
        """Read the complete lines available, or None at end of file."""
        data = os.read(self.fileno(), 4096)
        if not data:
            self.eof = True
            return None
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        return [line.rstrip(b"\r").decode(self.encoding, errors="replace") for line in lines]
