"""Session component.

The single consumer of every event source: it owns the rooms, their
scroll-back and the active-room selection, routes incoming messages, turns
user input into IRC commands and hands DCC offers over to the DCC engine.
Everything here runs in the event loop thread, hence without any locking.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import collections
from typing import TYPE_CHECKING

import structlog

from .client import Client
from .config import ClientConfig
from .dcc import DCCEngine, DCCUpdate, UpdateKind
from .message import Message, MessageType
from .signals import SignalEvent

if TYPE_CHECKING:
    from .console import ConsoleView, LineInput
    from .eventloop import EventLoop
    from .signals import Signals

logger = structlog.get_logger()

CHANNEL_PREFIXES = "#&+!"


def is_channel(name: str) -> bool:
    """Return True if the name is a channel, as opposed to a nickname."""
    return name[:1] in CHANNEL_PREFIXES and len(name) > 1


class Room:
    """A channel, a private conversation or the server window."""

    def __init__(self, title: str, buffer_size: int = 1000) -> None:
        self.title = title
        self.messages: collections.deque[Message] = collections.deque(maxlen=buffer_size)
        self.is_read = True
        self.is_left = False

    def add(self, msg: Message) -> None:
        """Append a message, evicting the oldest one when the scroll-back is full."""
        self.messages.append(msg)

    def matches(self, name: str) -> bool:
        """Return True if this room is the one called name.

        Channel names are case-insensitive; nicknames of private conversations
        are a separate, case-sensitive namespace.
        """
        if is_channel(name):
            return is_channel(self.title) and self.title.lower() == name.lower()
        return not is_channel(self.title) and self.title == name

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.title}>"


class Session:
    """The user's view of an IRC connection."""

    def __init__(
        self,
        client: Client,
        engine: DCCEngine,
        loop: EventLoop,
        view: ConsoleView,
        config: ClientConfig | None = None,
    ) -> None:
        self.client = client
        self.engine = engine
        self.loop = loop
        self.view = view
        self.config = config or client.config

        self.server_room = Room(client.server.host, self.config.buffer_size)
        self.rooms: list[Room] = [self.server_room]
        self.active = self.server_room
        self.expected_room: str | None = None
        self.quitting = False
        self._first_message = True
        # DCC status lines, refreshed in place as a transfer progresses
        self._transfers: dict[tuple[str, str], Message] = {}
        self.signals: Signals | None = None
        self.line_input: LineInput | None = None

    def attach(self, signals: Signals | None = None, line_input: LineInput | None = None) -> None:
        """Register all of our event sources with the event loop."""
        self.signals, self.line_input = signals, line_input
        self.loop.register(self.client, self.handle_client)
        self.loop.register(self.engine, self.handle_dcc)
        if signals is not None:
            self.loop.register(signals, self.handle_signals)
        if line_input is not None:
            self.loop.register(line_input, self.handle_input, drain=False)

    # rooms

    def find_room(self, name: str) -> Room | None:
        """Return the room called name, if we have one."""
        for room in self.rooms:
            if room.matches(name):
                return room
        return None

    def room_for(self, name: str) -> Room:
        """Return the room called name, creating it if needed."""
        room = self.find_room(name)
        if room is None:
            room = Room(name, self.config.buffer_size)
            self.rooms.append(room)
            logger.debug("Room created", room=name)
        return room

    def add(self, room: Room, msg: Message) -> None:
        """Add a message to a room, showing it if the room is active."""
        room.add(msg)
        if room is self.active:
            self.view.show(room.title, msg)
        elif room.is_read:
            room.is_read = False
            self.view.notify(room.title)

    def system_message(self, text: str, room: Room | None = None) -> Message:
        """Show a locally generated message."""
        msg = Message.system(text)
        self.add(room or self.active, msg)
        return msg

    def change_room(self, room: Room) -> None:
        """Make a room the active one."""
        self.active = room
        room.is_read = True
        self.view.switch(room.title, list(room.messages))

    def remove_room(self, room: Room) -> None:
        """Forget a room, switching to its left neighbor if it was active."""
        if room is self.server_room or room not in self.rooms:
            return
        index = self.rooms.index(room)
        self.rooms.remove(room)
        if room is self.active:
            self.change_room(self.rooms[max(index - 1, 0)])

    # event handlers

    def handle_client(self) -> None:
        """Consume everything the client has queued."""
        for msg in self.client.drain():
            self.route(msg)

    def route(self, msg: Message) -> None:
        """Place an incoming message in the right room."""
        command = msg.command
        if command in ("PRIVMSG", "NOTICE"):
            self._route_privmsg(msg)
        elif command in ("JOIN", "PART", "MODE", "353"):
            self._route_membership(msg)
        elif command == "366":
            pass  # end of NAMES
        elif command == "KICK":
            if len(msg.params) < 2:
                return
            channel, user = msg.params[:2]
            room = self.find_room(channel)
            if room is None:
                return
            if user == self.client.nick:
                room.is_left = True
            self.add(room, msg)
        elif command == "ERROR":
            self.add(self.server_room, msg)
            if self.quitting:
                logger.info("Signed off", reason=msg.text)
                self.loop.stop()
        else:
            self.add(self.active, msg)

    def _route_privmsg(self, msg: Message) -> None:
        if not msg.params:
            return  # bad format

        # the first message on connect normally comes from the server
        if self._first_message and msg.type is not MessageType.SYSTEM:
            self._first_message = False
            if msg.prefix and "!" not in msg.prefix:
                self.server_room.title = msg.prefix

        target = msg.params[0]
        if msg.nick == "Global" or target == "*" or not msg.prefix or "!" not in msg.prefix:
            room = self.server_room
        elif target == self.client.nick:
            room = self.room_for(msg.nick)
        else:
            room = self.room_for(target)
        self.add(room, msg)

        if msg.type is MessageType.DCC and msg.command == "PRIVMSG":
            self.engine.add(msg)

    def _route_membership(self, msg: Message) -> None:
        if msg.command == "353":
            name = msg.params[2] if len(msg.params) > 2 else ""
        else:
            name = msg.params[0] if msg.params else ""

        if msg.command == "MODE" and not is_channel(name):
            # user modes
            self.add(self.server_room, msg)
            return
        if not name:
            return

        if msg.command == "PART" and msg.nick == self.client.nick:
            room = self.find_room(name)
            if room is not None:
                self.remove_room(room)
            return

        room = self.room_for(name)
        room.is_left = False
        if self.expected_room is not None and room.matches(self.expected_room):
            self.expected_room = None
            room.add(msg)
            self.change_room(room)
        else:
            self.add(room, msg)

    def handle_dcc(self) -> None:
        """Consume everything the DCC engine has queued."""
        for update in self.engine.drain():
            self.dcc_update(update)

    def dcc_update(self, update: DCCUpdate) -> None:
        """Reflect a DCC update in the conversation with the sender."""
        room = self.room_for(update.nick) if update.nick else self.server_room
        key = (update.nick, update.filename)

        if update.kind is UpdateKind.RESUME:
            self.client.send(update.resume_request())
            self.system_message(update.text, room)
        elif update.kind is UpdateKind.ERROR:
            self._transfers.pop(key, None)
            self.system_message(update.text, room)
        elif update.progress >= 1.0:
            self._transfers.pop(key, None)
            self.system_message(f"Download finished for \x02{update.filename}\x02", room)
        elif key in self._transfers:
            status = self._transfers[key]
            status.refresh(update.text)
            if room is self.active:
                self.view.show(room.title, status)
        else:
            self._transfers[key] = self.system_message(update.text, room)

    def handle_signals(self) -> None:
        """Consume pending OS signals."""
        if self.signals is None:
            return
        for event in self.signals.drain():
            logger.debug("Signal received", signal=event.value)
            if event in (SignalEvent.INT, SignalEvent.TERM):
                self.quit()

    def handle_input(self) -> None:
        """Read and act on the lines typed by the user."""
        if self.line_input is None:
            return
        lines = self.line_input.readlines()
        if lines is None:
            self.loop.unregister(self.line_input)
            self.quit()
            return
        for line in lines:
            if line:
                self.submit(line)

    # user commands

    def quit(self, reason: str | None = None) -> None:
        """Sign off, or stop right away if we are not connected."""
        self.quitting = True
        if not self.client.close(reason):
            self.client.disconnect()
            self.loop.stop()

    def submit(self, text: str) -> None:
        """Handle a line typed by the user: a /command or a message to the active room."""
        if not text.startswith("/"):
            self.say(text)
            return

        command, _, args = text[1:].partition(" ")
        handler = getattr(self, f"cmd_{command.lower()}", None)
        if handler is None:
            # unknown commands are passed to the server as they are
            self.client.send(text[1:])
            return
        handler(args.strip())

    def say(self, text: str) -> None:
        """Send a message to the active room."""
        room = self.active
        if room is self.server_room:
            self.system_message("You are not in a channel; use /join or /msg")
        elif room.is_left:
            self.system_message("You've left this room")
        else:
            self.add(room, Message.local(self.client.nick, "PRIVMSG", [room.title, text]))
            self.client.send(f"PRIVMSG {room.title} :{text}")

    def cmd_join(self, args: str) -> None:
        """Join channels, switching to the first one once joined."""
        if args:
            first = args.split()[0].split(",")[0]
            self.expected_room = first
            self.client.send(f"JOIN {args}")
        elif is_channel(self.active.title) and self.active.is_left:
            self.client.send(f"JOIN {self.active.title}")

    def cmd_part(self, args: str) -> None:
        """Leave the active channel, or close the active private room."""
        room = self.active
        if room is self.server_room:
            return
        if is_channel(room.title) and not room.is_left:
            self.client.send(f"PART {room.title} :{args}" if args else f"PART {room.title}")
        else:
            self.remove_room(room)

    cmd_q = cmd_part

    def cmd_msg(self, args: str) -> None:
        """Send a private message, opening a room for the conversation."""
        nick, _, text = args.partition(" ")
        if not nick:
            return
        room = self.room_for(nick)
        if text:
            room.add(Message.local(self.client.nick, "PRIVMSG", [nick, text]))
            self.client.send(f"PRIVMSG {nick} :{text}")
        self.change_room(room)

    def cmd_me(self, args: str) -> None:
        """Send an action to the active room."""
        room = self.active
        if room is self.server_room or not args:
            return
        self.add(room, Message.local(self.client.nick, "PRIVMSG", [room.title, args], MessageType.ACTION))
        self.client.send(f"PRIVMSG {room.title} :\x01ACTION {args}\x01")

    def cmd_quit(self, args: str) -> None:
        """Sign off."""
        self.quit(args or None)

    def cmd_kick(self, args: str) -> None:
        """Kick a user from the active channel."""
        who, _, reason = args.partition(" ")
        if not who or not is_channel(self.active.title):
            return
        command = f"KICK {self.active.title} {who}"
        if reason:
            command += f" :{reason}"
        self.client.send(command)

    def cmd_mode(self, args: str) -> None:
        """Change the modes of the active channel."""
        if not args or not is_channel(self.active.title):
            return
        self.client.send(f"MODE {self.active.title} {args}")

    def cmd_raw(self, args: str) -> None:
        """Send a line to the server verbatim."""
        if args:
            self.client.send(args)
