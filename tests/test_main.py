"""Command-line, configuration loading and logging tests."""

from __future__ import annotations

import configparser
import json
import logging
import os
import pathlib
from collections.abc import Generator
from unittest.mock import patch

import pytest
import structlog

import termirc.main
from termirc.config import ServerConfig
from termirc.console import LineInput
from termirc.signals import Signals

from .ircserver import FakeIRCServer


def parse_caplog(caplog: pytest.LogCaptureFixture) -> tuple[list[str], list[str]]:
    """Parse pytest's caplog, returning a list of logs pre-format and post-format.

    The formatted logs are formatted using our custom (structlog) formatter.
    """
    root_formatter = logging.getLogger().handlers[-1].formatter
    assert type(root_formatter) is structlog.stdlib.ProcessorFormatter

    capevents, caplogs = [], []
    for rec in caplog.records:
        assert isinstance(rec.msg, dict)
        assert "event" in rec.msg
        capevents.append(rec.msg["event"])
        caplogs.append(root_formatter.format(rec))

    return (capevents, caplogs)


@pytest.fixture(autouse=True)
def fixture_root_handlers() -> Generator[None, None, None]:
    """Restore the root logger's handlers, as configure_logging() adds one."""
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    yield
    for handler in root_logger.handlers:
        if handler not in handlers:
            handler.close()
    root_logger.handlers = handlers


def test_parse_args_help(capsys: pytest.CaptureFixture[str]) -> None:
    """Test whether --help returns usage and exits."""
    with pytest.raises(SystemExit) as exc:
        termirc.main.parse_args(["--help"])

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status == 0
    out, _ = capsys.readouterr()
    assert "usage: " in out


def test_parse_args() -> None:
    """Test the short options, and the upper-casing of log levels."""
    options = termirc.main.parse_args(["-c", "irc.example.net", "-p", "6697", "-u", "tester", "-s", "sekrit"])
    assert (options.server, options.port) == ("irc.example.net", 6697)
    assert (options.user, options.password) == ("tester", "sekrit")

    options = termirc.main.parse_args(["--log-level", "debug"])
    assert options.log_level == "DEBUG"


@pytest.mark.parametrize("log_format", ["plain", "console"])
def test_configure_logging(caplog: pytest.LogCaptureFixture, log_format: str) -> None:
    """Test that the plain and console logging configurations work."""
    termirc.main.configure_logging(log_format)
    log = structlog.get_logger("testlogger")
    caplog.clear()
    log.warning("this is a test log")

    capevents, caplogs = parse_caplog(caplog)
    assert ["this is a test log"] == capevents
    assert all("this is a test log" in c for c in caplogs)


def test_configure_logging_json(caplog: pytest.LogCaptureFixture) -> None:
    """Test that the json logging configuration works."""
    termirc.main.configure_logging("json")
    log = structlog.get_logger("testlogger")
    caplog.clear()
    log.warning("this is a json log", key="value")

    root_formatter = logging.getLogger().handlers[-1].formatter
    assert type(root_formatter) is structlog.stdlib.ProcessorFormatter
    parsed_logs = [json.loads(root_formatter.format(rec)) for rec in caplog.records]
    assert ["this is a json log"] == [rec["event"] for rec in parsed_logs]
    assert ["value"] == [rec["key"] for rec in parsed_logs]


def test_configure_logging_file(tmp_path: pathlib.Path) -> None:
    """Test that logs can be sent to a file, away from the console."""
    log_file = tmp_path / "termirc.log"
    termirc.main.configure_logging("plain", log_file)
    structlog.get_logger("testlogger").warning("this is a logged line")
    logging.getLogger().handlers[-1].flush()
    assert "this is a logged line" in log_file.read_text(encoding="utf-8")


def test_configure_logging_invalid() -> None:
    """Test that an invalid logging configuration does not work."""
    with pytest.raises(ValueError, match="Invalid logging format"):
        termirc.main.configure_logging("invalid")


def test_configure_log_levels() -> None:
    """Test that per-logger levels are read from the configuration, the override applying to the package."""
    config = configparser.ConfigParser()
    config.read_string("[loggers]\ntermirc.dcc = debug\n")
    termirc.main.configure_log_levels("WARNING", config["loggers"])
    assert logging.getLogger("termirc.dcc").level == logging.DEBUG
    assert logging.getLogger("termirc").level == logging.WARNING

    for name in ("termirc", "termirc.dcc"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_load_config(tmp_path: pathlib.Path) -> None:
    """Test that command-line options override the configuration file."""
    tmp_config = tmp_path / "termirc.conf"
    tmp_config.write_text("[server]\nhost = irc.example.com\nnick = fromfile\n")
    options = termirc.main.parse_args(["--config-file", str(tmp_config), "-u", "fromcli", "-p", "7000"])

    server = ServerConfig.from_config(termirc.main.load_config(options))
    assert server == ServerConfig("irc.example.com", 7000, "fromcli", None, "fromcli")


def test_load_config_nonexistent(caplog: pytest.LogCaptureFixture) -> None:
    """Test with non-existing configuration."""
    args = ("--config-file", "/nonexistent")

    caplog.clear()
    with pytest.raises(SystemExit) as exc:
        termirc.run(args)

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status < 0
    assert "No such file or directory" in caplog.records[-1].message


@pytest.mark.parametrize("test_config", ["[server]\nnick = a\nnick = b\n", "invalid config"])
def test_load_config_invalid(tmp_path: pathlib.Path, caplog: pytest.LogCaptureFixture, test_config: str) -> None:
    """Test with a syntactically invalid configuration."""
    tmp_config = tmp_path / "termirc-invalid.conf"
    tmp_config.write_text(test_config)
    args = ("--config-file", str(tmp_config))

    caplog.clear()
    with pytest.raises(SystemExit) as exc:
        termirc.run(args)

    exit_status = int(exc.value.code) if exc.value.code is not None else 0
    assert exit_status < 0
    assert "Invalid configuration" in caplog.records[-1].message


@pytest.mark.parametrize(
    "server,message",
    [
        (ServerConfig(nick=""), "User not specified"),
        (ServerConfig(nick="tester", port=0), "Bad port number 0"),
    ],
)
def test_validate(caplog: pytest.LogCaptureFixture, server: ServerConfig, message: str) -> None:
    """Test that we refuse to start without a nick, or with a bad port."""
    termirc.main.configure_logging("plain")
    caplog.clear()
    with pytest.raises(SystemExit) as exc:
        termirc.main.validate(server)
    assert exc.value.code == -1
    assert message in caplog.records[-1].message


def test_main(tmp_path: pathlib.Path, ircserver: FakeIRCServer) -> None:
    """Test the main/entry point function, signing off from the input."""
    tmp_config = tmp_path / "termirc.conf"
    tmp_config.write_text(f"[server]\nhost = {ircserver.address}\nport = {ircserver.port}\n")
    args = ("--config-file", str(tmp_config), "-u", "tester")

    read_fd, write_fd = os.pipe()
    os.write(write_fd, b"/quit\n")
    with os.fdopen(read_fd, encoding="utf8") as stdin:
        with patch.object(termirc.main, "LineInput", return_value=LineInput(stdin)):
            with patch.object(Signals, "subscribe", autospec=True) as mocked_subscribe:
                termirc.run(args)  # returns once /quit has been read
                mocked_subscribe.assert_called_once()
    os.close(write_fd)

    ircserver.wait_for_connection()


def test_main_interrupted(tmp_path: pathlib.Path) -> None:
    """Test that a Ctrl+C before the event loop takes over does not raise any exceptions."""
    tmp_config = tmp_path / "termirc.conf"
    tmp_config.write_text("[server]\nnick = tester\n")

    with patch.object(termirc.main, "start", side_effect=KeyboardInterrupt) as mocked_start:
        termirc.run(("--config-file", str(tmp_config)))
        mocked_start.assert_called_once()
