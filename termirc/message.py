"""IRC message component.

Parses and builds RFC 1459 messages, including IRCv3 message tags, and
recognizes the CTCP sub-protocol (and its ACTION and DCC flavors) embedded in
PRIVMSG and NOTICE bodies.

Each parsing step consumes a prefix of the line and returns what is left, so
that every step can be exercised on its own.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import datetime
import enum
import re

CTCP_DELIMITER = "\x01"

# a double-quoted string counts as a single token (filenames with spaces)
DCC_TOKEN_RE = re.compile(r'"([^"]*)"|(\S+)')


@enum.unique
class MessageType(enum.Enum):
    """The flavor of a message, as far as the user interface is concerned."""

    MESSAGE = "message"
    ACTION = "action"
    CTCP = "ctcp"
    DCC = "dcc"
    SYSTEM = "system"


@dataclasses.dataclass(frozen=True)
class CTCP:
    """A CTCP (or DCC) request: a command token and its parameters."""

    command: str
    params: tuple[str, ...] = ()

    @classmethod
    def from_body(cls, body: str) -> CTCP:
        """Split a plain CTCP body, e.g. "VERSION" or "PING 12345"."""
        tokens = body.split()
        if not tokens:
            return cls("")
        return cls(tokens[0], tuple(tokens[1:]))

    @classmethod
    def from_dcc_body(cls, body: str) -> CTCP:
        """Split a DCC body (without the "DCC " prefix), honoring double quotes."""
        tokens = [quoted or bare for quoted, bare in DCC_TOKEN_RE.findall(body)]
        if not tokens:
            return cls("")
        return cls(tokens[0], tuple(tokens[1:]))

    def __str__(self) -> str:
        return " ".join((self.command, *self.params)).rstrip()


def parse_tags(line: str) -> tuple[dict[str, str], str]:
    """Parse a leading "@key=value;..." block.

    Malformed tag text degrades to an empty mapping; the rest of the line is
    returned regardless, so that parsing can continue.
    """
    if not line.startswith("@"):
        return {}, line

    block, _, rest = line.partition(" ")
    tags: dict[str, str] = {}
    for item in block[1:].split(";"):
        key, sep, value = item.partition("=")
        if not sep or not key:
            return {}, rest
        tags[key] = value
    return tags, rest


def parse_prefix(line: str) -> tuple[str | None, str]:
    """Parse a leading ":prefix" token."""
    if not line.startswith(":"):
        return None, line
    prefix, _, rest = line.partition(" ")
    return prefix[1:] or None, rest


def parse_command(line: str) -> tuple[str, str]:
    """Parse the (mandatory) command token."""
    line = line.lstrip(" ")
    command, _, rest = line.partition(" ")
    if not command:
        raise ValueError("Invalid IRC message (no command specified)")
    return command.upper(), rest


def parse_params(line: str) -> list[str]:
    """Parse the middle params and the optional trailing param."""
    params = []
    rest = line
    while rest:
        if rest.startswith(":"):
            params.append(rest[1:])
            break
        token, _, rest = rest.partition(" ")
        # skip multiple spaces in middle of message, as per RFC 1459
        if token:
            params.append(token)
    return params


def parse_ctcp(body: str) -> tuple[MessageType, str, CTCP | None, CTCP | None]:
    """Detect an embedded CTCP request in a PRIVMSG/NOTICE body.

    Returns a tuple of the message type, the (possibly unwrapped) body, and
    the CTCP and DCC descriptors, when applicable.
    """
    if len(body) < 2 or body[0] != CTCP_DELIMITER or body[-1] != CTCP_DELIMITER:
        return MessageType.MESSAGE, body, None, None

    body = body[1:-1]
    if body.startswith("ACTION "):
        return MessageType.ACTION, body[len("ACTION ") :], None, None
    if body.startswith("DCC "):
        return MessageType.DCC, body, None, CTCP.from_dcc_body(body[len("DCC ") :])
    return MessageType.CTCP, body, CTCP.from_body(body), None


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=datetime.timezone.utc)


@dataclasses.dataclass
class Message:
    """Represents an IRC message, either received from the wire or synthesized locally.

    Can be either initialized:
    * with its constructor using a command, params and (optionally) a prefix
    * given a raw line, using the from_message() class method
    * as a local system notice, using the system() class method

    The timestamp is informational and does not take part in comparisons.
    """

    command: str
    params: list[str] = dataclasses.field(default_factory=list)
    prefix: str | None = None
    type: MessageType = MessageType.MESSAGE
    tags: dict[str, str] = dataclasses.field(default_factory=dict)
    ctcp: CTCP | None = None
    dcc: CTCP | None = None
    timestamp: datetime.datetime = dataclasses.field(default_factory=_now, compare=False)

    @classmethod
    def from_message(cls, message: str) -> Message:
        """Parse a raw IRC line (without the terminator). Returns an instance of Message."""
        tags, rest = parse_tags(message)
        prefix, rest = parse_prefix(rest)
        command, rest = parse_command(rest)
        params = parse_params(rest)

        msgtype, ctcp, dcc = MessageType.MESSAGE, None, None
        if command in ("PRIVMSG", "NOTICE") and params:
            msgtype, params[-1], ctcp, dcc = parse_ctcp(params[-1])

        return cls(command, params, prefix, msgtype, tags, ctcp, dcc)

    @classmethod
    def system(cls, text: str, source: str = "SYSTEM") -> Message:
        """Create a locally generated notice, never sent to the server."""
        return cls(source, [text], source, MessageType.SYSTEM)

    @classmethod
    def local(cls, nick: str, command: str, params: list[str], msgtype: MessageType = MessageType.MESSAGE) -> Message:
        """Create a local echo of something we sent ourselves."""
        return cls(command, list(params), nick, msgtype)

    @property
    def nick(self) -> str:
        """Return the nickname part of the prefix, or the server name."""
        if not self.prefix:
            return ""
        return self.prefix.partition("!")[0]

    @property
    def text(self) -> str:
        """Return the trailing param, or an empty string."""
        return self.params[-1] if self.params else ""

    def refresh(self, text: str) -> None:
        """Replace the trailing param in place, e.g. to refresh a status line."""
        if self.params:
            self.params[-1] = text
        else:
            self.params.append(text)

    def __str__(self) -> str:
        """Generate an RFC-compliant formatted string for the instance."""
        components = []

        if self.tags:
            components.append("@" + ";".join(f"{key}={value}" for key, value in self.tags.items()))

        if self.prefix:
            components.append(":" + self.prefix)

        components.append(self.command)

        if self.params:
            *middle, trailing = (str(param) for param in self.params)
            if self.type is MessageType.ACTION:
                trailing = f"{CTCP_DELIMITER}ACTION {trailing}{CTCP_DELIMITER}"
            elif self.type in (MessageType.CTCP, MessageType.DCC):
                trailing = f"{CTCP_DELIMITER}{trailing}{CTCP_DELIMITER}"
            components.extend(middle)
            components.append(":" + trailing)

        return " ".join(components)
