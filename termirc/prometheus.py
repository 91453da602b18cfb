"""Prometheus instrumentation component.

Optionally spawns an HTTP server exposing the client's connection and DCC
transfer metrics on a Prometheus/OpenMetrics-compatible /metrics endpoint.

The metrics are not kept in prometheus_client's global registry: each Client
and DCCEngine registers its metrics in the registry it is given, and main
hands that same registry to the server here.

Note that there is a terminology clash: Prometheus calls this a "client", and
the Python module is called "prometheus_client", but this is definitely an HTTP
server, and as such we call the class here PrometheusServer.
"""

# SPDX-FileCopyrightText: termirc contributors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import configparser
import http.server
import socket
import threading

import prometheus_client
import structlog


class PrometheusServer(http.server.ThreadingHTTPServer):
    """A Prometheus HTTP server, exposing the metrics of a client's registry."""

    log = structlog.get_logger("termirc.prometheus")
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, config: configparser.SectionProxy, registry: prometheus_client.CollectorRegistry) -> None:
        self.registry = registry
        self._thread: threading.Thread | None = None

        listen_address = config.get("listen_address", fallback="127.0.0.1")
        if ":" in listen_address:
            self.address_family = socket.AF_INET6
        listen_port = config.getint("listen_port", fallback=9330)
        super().__init__((listen_address, listen_port), prometheus_client.MetricsHandler.factory(registry))
        # update address/port based on what bind() returned
        self.address, self.port = str(self.server_address[0]), self.server_address[1]
        self.log.info(
            "Listening for Prometheus HTTP",
            listen_address=self.address,
            listen_port=self.port,
            metrics=sorted(metric.name for metric in registry.collect()),
        )

    def server_bind(self) -> None:
        """Bind to an IP address.

        Override to set an opt to listen to both IPv4/IPv6 on the same socket.
        """
        if self.address_family == socket.AF_INET6:
            self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()

    def start(self) -> None:
        """Serve requests from a background thread, which does not keep the process alive."""
        self._thread = threading.Thread(name="prometheus", target=self.serve_forever, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop serving, and close the listening socket."""
        if self._thread is not None:
            self.shutdown()
            self._thread.join()
            self._thread = None
        self.server_close()
