"""Command-line executable component.

Responsible for parsing the command-line arguments and the configuration file,
wiring up the client, the DCC engine and the console around a single event
loop, and running it until the user signs off.

Provides a run() function, used by __main__ or directly.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import configparser
import errno
import logging
import pathlib
import sys
from collections.abc import Sequence
from typing import TYPE_CHECKING

import prometheus_client
import structlog

from ._version import __version__
from .client import Client
from .config import DEFAULT_CONFIG_PATHS, ClientConfig, DCCConfig, ServerConfig
from .console import ConsoleView, LineInput
from .dcc import DCCEngine
from .eventloop import EventLoop
from .session import Session
from .signals import Signals

if TYPE_CHECKING:
    from .prometheus import PrometheusServer

logger = structlog.get_logger()


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments."""
    parser = argparse.ArgumentParser(
        prog="termirc",
        description="Terminal IRC client, with DCC file transfers",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    cfg_dflt = next((path for path in DEFAULT_CONFIG_PATHS if path.exists()), None)
    parser.add_argument("--config-file", type=pathlib.Path, default=cfg_dflt, help="Path to configuration file")
    parser.add_argument("--server", "-c", help="IRC server to connect to (overrides config)")
    parser.add_argument("--port", "-p", type=int, help="IRC server port (overrides config)")
    parser.add_argument("--user", "-u", help="Nickname (overrides config)")
    parser.add_argument("--pass", "-s", dest="password", help="Server password (overrides config)")

    log_levels = ("DEBUG", "INFO", "WARNING", "ERROR")
    parser.add_argument("--log-level", choices=log_levels, type=str.upper, help="Log level (overrides config)")
    log_formats = ("plain", "console", "json")
    log_dflt = "console" if sys.stderr.isatty() else "plain"
    parser.add_argument("--log-format", default=log_dflt, choices=log_formats, help="Log format")
    parser.add_argument("--log-file", type=pathlib.Path, help="Log to this file instead of stderr")
    return parser.parse_args(argv)


def configure_logging(log_format: str, log_file: pathlib.Path | None = None) -> None:
    """Configure logging parameters."""
    renderer: structlog.typing.Processor
    if log_format == "plain":
        timestamper = None
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    elif log_format == "console":
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False)
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    elif log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        raise ValueError(f"Invalid logging format specified: {log_format}")

    # This follows structlog's "most ambitious" approach: rendering using structlog-based formatters within logging
    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if timestamper:
        processors.append(timestamper)

    structlog.configure(
        processors=[
            *processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # stdout belongs to the console; never log there
    handler: logging.Handler
    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            *processors,
            structlog.stdlib.ExtraAdder(),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    handler.setFormatter(formatter)
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    # default level, only for events emitted before the config is parsed
    root_logger.setLevel(logging.WARN)


def configure_log_levels(override_level: str | int | None, config: configparser.SectionProxy | None = None) -> None:
    """Configure logging levels, using the config file and an override, typically given by a CLI argument."""
    if config:
        for key, level in config.items():
            this_logger_name = key if key != "root" else None
            this_logger = logging.getLogger(this_logger_name)
            this_logger.setLevel(level.upper())

    if override_level:
        # set the level for the entire package
        logging.getLogger("termirc").setLevel(override_level)


def load_config(options: argparse.Namespace) -> configparser.ConfigParser:
    """Read the configuration file, if any, and apply the command-line overrides."""
    config = configparser.ConfigParser(strict=True)
    if options.config_file:
        try:
            with options.config_file.open(encoding="utf-8") as config_fh:
                config.read_file(config_fh)
        except OSError as exc:
            logger.critical(f"Cannot open configuration file: {exc.strerror}", errno=errno.errorcode[exc.errno])
            raise SystemExit(-1) from exc
        except configparser.Error as exc:
            msg = repr(exc).replace("\n", " ")  # configparser exceptions sometimes include newlines
            logger.critical(f"Invalid configuration, {msg}")
            raise SystemExit(-1) from exc

    if not config.has_section("server"):
        config.add_section("server")
    overrides = {"host": options.server, "port": options.port, "nick": options.user, "password": options.password}
    for key, value in overrides.items():
        if value is not None:
            config["server"][key] = str(value)
    return config


def validate(server: ServerConfig) -> None:
    """Refuse to start with a configuration we cannot connect with."""
    if not server.nick:
        logger.critical("User not specified. Either set a nick in the config file or provide one with '-u'")
        raise SystemExit(-1)
    if server.port <= 0:
        logger.critical(f"Bad port number {server.port}")
        raise SystemExit(-1)


def start(config: configparser.ConfigParser) -> None:
    """Wire up all components around an event loop, and run it."""
    server = ServerConfig.from_config(config)
    validate(server)
    client_config = ClientConfig.from_config(config)
    dcc_config = DCCConfig.from_config(config)

    registry = prometheus_client.CollectorRegistry()
    client = Client(server, client_config, registry)
    engine = DCCEngine(dcc_config, registry)
    loop = EventLoop()
    session = Session(client, engine, loop, ConsoleView(), client_config)

    signals = Signals()
    session.attach(signals, LineInput())
    signals.subscribe()

    prom_server: PrometheusServer | None = None
    if "prometheus" in config:
        from .prometheus import PrometheusServer

        try:
            prom_server = PrometheusServer(config["prometheus"], registry)
        except OSError as exc:
            logger.critical(f"System error: {exc.strerror}", errno=errno.errorcode[exc.errno])
            raise SystemExit(-2) from exc
        prom_server.start()

    engine.start()
    client.connect()
    try:
        loop.run()
    finally:
        engine.stop()
        client.disconnect()
        loop.close()
        if prom_server is not None:
            prom_server.stop()


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    options = parse_args(argv)

    configure_logging(options.log_format, options.log_file)
    configure_log_levels(options.log_level or logging.INFO)
    logger.info("Starting termirc", config_file=str(options.config_file), version=__version__)

    config = load_config(options)

    # now that we've read the config, configure with the levels defined there (but CLI option takes precedence)
    if "loggers" in config:
        configure_log_levels(options.log_level, config["loggers"])

    try:
        start(config)
    except KeyboardInterrupt:
        pass
