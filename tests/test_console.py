"""Test the plain console front end."""

from __future__ import annotations

import io
import re

import pytest

from termirc.console import ConsoleView, format_message
from termirc.message import Message


@pytest.mark.parametrize(
    "line,expected",
    [
        (":alice!a@example.com PRIVMSG #chan :hello", "<alice> hello"),
        (":alice!a@example.com NOTICE tester :psst", "<alice> psst"),
        (":alice!a@example.com PRIVMSG #chan :\x01ACTION waves\x01", "* alice waves"),
        (":alice!a@example.com PRIVMSG tester :\x01PING 123\x01", "-alice- [PRIVMSG PING 123]"),
        (":alice!a@example.com JOIN #chan", "-- alice JOIN #chan"),
        (":op!o@example.com KICK #chan alice :bye", "-- op KICK #chan alice bye"),
        (":irc.example.com 372 tester :- Message of the day", "- Message of the day"),
        ("ERROR :Closing Link", "Closing Link"),
    ],
)
def test_format_message(line: str, expected: str) -> None:
    """Test the rendering of each kind of message, after the time of day."""
    time, _, text = format_message(Message.from_message(line)).partition(" ")
    assert re.fullmatch(r"\d\d:\d\d", time)
    assert text == expected


def test_format_system() -> None:
    """Test the rendering of local notices."""
    assert format_message(Message.system("Connection closed")).endswith(" *** Connection closed")


def test_view() -> None:
    """Test that the view prints one line per message, and room changes with their backlog."""
    stream = io.StringIO()
    view = ConsoleView(stream)
    msg = Message.from_message(":alice!a@example.com PRIVMSG #chan :hello")

    view.show("#chan", msg)
    view.notify("#other")
    view.switch("#other", [msg, msg])

    lines = stream.getvalue().splitlines()
    assert len(lines) == 5
    assert lines[0].endswith("<alice> hello")
    assert lines[1] == "[activity in #other]"
    assert lines[2] == "=== #other ==="
    assert lines[3] == lines[4] == lines[0]
