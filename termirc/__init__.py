"""termirc: a terminal IRC client.

termirc is a small IRC client for the terminal. Its core is a concurrent
network engine: a readiness-driven event loop, a connection state machine, a
wire message parser with support for tags, CTCP and DCC, and a DCC transfer
engine able to resume interrupted downloads.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from ._version import __version__
from .client import Client, ConnectionState
from .dcc import DCCEngine, DCCUpdate, UpdateKind
from .eventloop import Doorbell, EventLoop
from .main import run
from .message import CTCP, Message, MessageType

__all__ = [
    "CTCP",
    "Client",
    "ConnectionState",
    "DCCEngine",
    "DCCUpdate",
    "Doorbell",
    "EventLoop",
    "Message",
    "MessageType",
    "UpdateKind",
    "__version__",
    "run",
]
