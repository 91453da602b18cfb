"""Testing initialization."""

from __future__ import annotations

import configparser
import logging
import pathlib
from collections.abc import Generator

import pytest
import structlog

from termirc.client import Client
from termirc.config import ClientConfig, DCCConfig, ServerConfig

from .ircserver import FakeIRCServer


@pytest.fixture(autouse=True)
def fixture_configure_structlog() -> None:
    """Fixture to configure structlog. Currently just silences it entirely."""

    def dummy_processor(
        logger: logging.Logger, name: str, event_dict: structlog.typing.EventDict
    ) -> structlog.typing.EventDict:
        raise structlog.DropEvent

    structlog.reset_defaults()
    structlog.configure(processors=[dummy_processor])


@pytest.fixture(name="config")
def fixture_config() -> configparser.ConfigParser:
    """Fixture representing an example configuration."""
    config = configparser.ConfigParser()
    config.read_string(
        """
        [server]
        host = 127.0.0.1
        port = 6667
        nick = tester
        realname = Test User

        [client]
        buffer_size = 5
        ping_interval = 0.2
        connect_timeout = 5
        version = termirc-test 1.0

        [dcc]
        download_dir = /tmp/termirc-downloads
        packet_size = 1024
        progress_step = 0.1
        timeout = 2

        [prometheus]
        listen_address = 127.0.0.1
        # pick a random free port
        listen_port = 0
        """
    )
    return config


@pytest.fixture(name="ircserver")
def fixture_ircserver() -> Generator[FakeIRCServer, None, None]:
    """Fixture for a fake IRC server, listening on a random local port."""
    server = FakeIRCServer()
    yield server
    server.shutdown()


@pytest.fixture(name="client")
def fixture_client(ircserver: FakeIRCServer) -> Generator[Client, None, None]:
    """Return a Client pointed at the fake IRC server (not yet connected)."""
    server = ServerConfig(host=ircserver.address, port=ircserver.port, nick="tester", realname="Test User")
    client = Client(server, ClientConfig(ping_interval=0.2, version="termirc-test 1.0"))
    yield client
    client.disconnect()


@pytest.fixture(name="dcc_config")
def fixture_dcc_config(tmp_path: pathlib.Path) -> DCCConfig:
    """Return a DCC configuration downloading to a temporary directory, with small packets."""
    return DCCConfig(download_dir=tmp_path, packet_size=1024, progress_step=0.1, timeout=2)
