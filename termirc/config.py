"""Configuration values.

The configuration file is parsed once, by main; each component receives an
immutable value holding only the settings it needs.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import configparser
import dataclasses
import pathlib

from ._version import __version__

DEFAULT_CONFIG_PATHS = (
    pathlib.Path("termirc.conf"),
    pathlib.Path("~/.config/termirc.conf").expanduser(),
)


def _section(config: configparser.ConfigParser, name: str) -> configparser.SectionProxy:
    if not config.has_section(name):
        config.add_section(name)
    return config[name]


@dataclasses.dataclass(frozen=True)
class ServerConfig:
    """Where to connect to, and as whom."""

    host: str = "irc.rizon.net"
    port: int = 6667
    nick: str = ""
    password: str | None = None
    realname: str = ""

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> ServerConfig:
        section = _section(config, "server")
        nick = section.get("nick", "")
        return cls(
            host=section.get("host", cls.host),
            port=section.getint("port", cls.port),
            nick=nick,
            password=section.get("password") or None,
            realname=section.get("realname", nick),
        )


@dataclasses.dataclass(frozen=True)
class ClientConfig:
    """Client behavior, independent of the server."""

    buffer_size: int = 1000
    ping_interval: float = 60
    connect_timeout: float = 30
    version: str = f"termirc {__version__}"

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> ClientConfig:
        section = _section(config, "client")
        return cls(
            buffer_size=section.getint("buffer_size", cls.buffer_size),
            ping_interval=section.getfloat("ping_interval", cls.ping_interval),
            connect_timeout=section.getfloat("connect_timeout", cls.connect_timeout),
            version=section.get("version", cls.version),
        )


@dataclasses.dataclass(frozen=True)
class DCCConfig:
    """DCC file transfer settings."""

    download_dir: pathlib.Path = pathlib.Path("~/downloads/DCC")
    packet_size: int = 1024 * 1024
    progress_step: float = 0.05
    timeout: float = 60

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> DCCConfig:
        section = _section(config, "dcc")
        return cls(
            download_dir=pathlib.Path(section.get("download_dir", str(cls.download_dir))),
            packet_size=section.getint("packet_size", cls.packet_size),
            progress_step=section.getfloat("progress_step", cls.progress_step),
            timeout=section.getfloat("timeout", cls.timeout),
        )

    @property
    def directory(self) -> pathlib.Path:
        """Return the download directory, with the user's home expanded."""
        return self.download_dir.expanduser()
