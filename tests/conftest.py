"""A scripted munin-node running on a local socket."""

from __future__ import annotations

import logging
import socket
import socketserver
import struct
import threading
from collections import defaultdict

import pytest

from munin_exporter.client import MuninClient, MuninClientConfig, MuninConnection, RetryPolicy

CPU_CONFIG = "graph_title CPU usage\nusage.label CPU Usage\nusage.type GAUGE\n.\n"
NET_CONFIG = "graph_title Net\nrx.label bytes\nrx.type COUNTER\n.\n"


class _Handler(socketserver.StreamRequestHandler):
    def _reset(self) -> None:
        # linger 0: close() sends RST instead of FIN
        self.connection.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        self.rfile.close()
        self.wfile.close()
        self.connection.close()

    def handle(self) -> None:
        node: FakeMuninNode = self.server.node  # type: ignore[attr-defined]
        with node.lock:
            node.connections += 1
            accepting = node.accepting
        if not accepting:
            return
        self.wfile.write(node.banner.encode())
        for raw in self.rfile:
            cmd = raw.decode().strip()
            with node.lock:
                node.commands.append(cmd)
                fault = node.faults[cmd].pop(0) if node.faults[cmd] else None
                reply = node.replies.get(cmd, "# Unknown command\n")
            if fault == "close":
                return
            if fault == "reset":
                self._reset()
                return
            if fault == "truncate":
                self.wfile.write(reply.split("\n", 1)[0].encode() + b"\n")
                return
            self.wfile.write(reply.encode())


class _Server(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


class FakeMuninNode:
    def __init__(self, hostname: str = "host1"):
        self.banner = f"# munin node at {hostname}\n"
        self.replies: dict[str, str] = {
            "list": "cpu net\n",
            "config cpu": CPU_CONFIG,
            "config net": NET_CONFIG,
            "fetch cpu": "usage.value 42.5\n.\n",
            "fetch net": "rx.value 1000\n.\n",
        }
        # command -> queued faults ("close", "truncate" or "reset"), consumed in order
        self.faults: dict[str, list[str]] = defaultdict(list)
        self.commands: list[str] = []
        self.connections = 0
        self.accepting = True
        self.lock = threading.Lock()
        self._server = _Server(("127.0.0.1", 0), _Handler)
        self._server.node = self  # type: ignore[attr-defined]
        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)

    @property
    def port(self) -> int:
        return self._server.server_address[1]

    def start(self) -> "FakeMuninNode":
        self._thread.start()
        return self

    def stop(self) -> None:
        self._server.shutdown()
        self._server.server_close()


def pytest_configure(config):
    logging.basicConfig(level=logging.WARNING, force=True)


@pytest.fixture
def node():
    n = FakeMuninNode().start()
    yield n
    n.stop()


@pytest.fixture
def client_cfg(node: FakeMuninNode) -> MuninClientConfig:
    return MuninClientConfig(host="127.0.0.1", port=node.port, retry=RetryPolicy(interval_s=0.01))


@pytest.fixture
def connection(client_cfg: MuninClientConfig):
    conn = MuninConnection(client_cfg)
    conn.connect()
    yield conn
    conn.close()


@pytest.fixture
def client(connection: MuninConnection) -> MuninClient:
    return MuninClient(connection)
