from __future__ import annotations

import io
import logging
import re
import socket
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, TypeVar

from .errors import (
    ConnectError,
    MuninCommandError,
    ProtocolDesyncError,
    StreamTruncated,
    TransientParseError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

BANNER_RE = re.compile(r"# munin node at (.*)")
END_OF_REPLY = "."


@dataclass(frozen=True)
class RetryPolicy:
    interval_s: float = 1.0
    # None retries forever
    max_attempts: int | None = None


@dataclass(frozen=True)
class MuninClientConfig:
    host: str = "localhost"
    port: int = 4949
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass
class GraphConfig:
    graph_attrs: dict[str, str] = field(default_factory=dict)
    metrics: dict[str, dict[str, str]] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return self.graph_attrs.get("graph_title", "")


def parse_banner(line: str) -> str:
    """Return the hostname announced by a ``# munin node at <host>`` banner."""
    m = BANNER_RE.match(line.rstrip("\r\n"))
    if m is None:
        raise ConnectError(f"Unexpected line: {line!r}")
    return m.group(1)


def parse_config_line(line: str) -> tuple[str, str | None, str]:
    """Split ``key[.attr] value...`` into (key, attr, value)."""
    parts = line.split()
    if len(parts) < 2:
        raise TransientParseError(line, "expected key and value")
    key, value = parts[0], " ".join(parts[1:])
    key_parts = key.split(".")
    if len(key_parts) > 1:
        return key_parts[0], key_parts[1], value
    return key, None, value


def parse_fetch_line(line: str) -> tuple[str, float]:
    """Split ``metric[.suffix] value`` into (metric, value)."""
    parts = line.split()
    if len(parts) != 2:
        raise TransientParseError(line, "expected exactly two fields")
    metric = parts[0].split(".", 1)[0]
    try:
        value = float(parts[1])
    except ValueError as e:
        raise TransientParseError(line, "value is not a number") from e
    return metric, value


class MuninConnection:
    """The single TCP connection to a munin node, with reconnect handling."""

    def __init__(self, cfg: MuninClientConfig, cancel: threading.Event | None = None):
        self._cfg = cfg
        self._cancel = cancel or threading.Event()
        self._sock: socket.socket | None = None
        self._rfile: io.BufferedReader | None = None
        self.hostname: str | None = None

    @property
    def live(self) -> bool:
        return self._sock is not None

    def connect(self) -> str:
        logger.info("Connecting to %s", self._cfg.address)
        try:
            sock = socket.create_connection((self._cfg.host, self._cfg.port))
        except OSError as e:
            raise ConnectError(f"Could not connect to {self._cfg.address}: {e}") from e

        rfile = sock.makefile("rb")
        try:
            banner = rfile.readline().decode("utf-8", errors="replace")
        except OSError as e:
            rfile.close()
            sock.close()
            raise ConnectError(f"Could not read banner from {self._cfg.address}: {e}") from e
        try:
            hostname = parse_banner(banner)
        except ConnectError:
            rfile.close()
            sock.close()
            raise

        self._sock, self._rfile = sock, rfile
        self.hostname = hostname
        logger.info("Connected to munin node %s", hostname)
        return hostname

    def close(self) -> None:
        if self._rfile is not None:
            self._rfile.close()
            self._rfile = None
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                logger.debug("Error while closing socket", exc_info=True)
            self._sock = None

    def reconnect(self) -> str:
        self.close()
        policy = self._cfg.retry
        attempt = 0
        while True:
            if self._cancel.is_set():
                raise ConnectError("Reconnect cancelled")
            attempt += 1
            try:
                return self.connect()
            except ConnectError as e:
                logger.warning("Couldn't reconnect (attempt %d): %s", attempt, e)
                if policy.max_attempts is not None and attempt >= policy.max_attempts:
                    raise ConnectError(
                        f"Giving up on {self._cfg.address} after {attempt} attempts"
                    ) from e
            self._cancel.wait(policy.interval_s)

    def send(self, command: str) -> bool:
        """Write one command line. Returns False if a reconnect was needed."""
        if self._sock is None:
            self.reconnect()
            return False
        try:
            self._sock.sendall(f"{command}\n".encode("ascii"))
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Not connected anymore, closing connection")
            self.reconnect()
            return False
        except OSError as e:
            raise ProtocolDesyncError(f"Unexpected error while sending {command!r}: {e}") from e
        return True

    def ensure_live(self) -> bool:
        """Peek one byte of the reply. Returns False if a reconnect was needed."""
        if self._rfile is None:
            raise ProtocolDesyncError("Not connected")
        try:
            head = self._rfile.peek(1)
        except OSError as e:
            raise ProtocolDesyncError(f"Unexpected error: {e}") from e
        if not head:
            logger.warning("Not connected anymore, closing connection")
            self.reconnect()
            return False
        return True

    def readline(self) -> str:
        if self._rfile is None:
            raise ProtocolDesyncError("Not connected")
        try:
            raw = self._rfile.readline()
        except OSError as e:
            raise ProtocolDesyncError(f"Unexpected error: {e}") from e
        if not raw.endswith(b"\n"):
            raise StreamTruncated(f"Unexpected EOF after {raw!r}")
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")


class MuninClient:
    def __init__(self, conn: MuninConnection):
        self._conn = conn

    @property
    def hostname(self) -> str | None:
        return self._conn.hostname

    def _command(self, command: str, parse: Callable[[], T]) -> T:
        while True:
            if not self._conn.send(command) or not self._conn.ensure_live():
                continue
            try:
                return parse()
            except StreamTruncated as e:
                logger.warning("%s; reissuing %r", e, command)
                self._conn.reconnect()

    def _read_until_end(self) -> Iterator[str]:
        while True:
            line = self._conn.readline()
            if line == END_OF_REPLY:
                return
            yield line

    def list_graphs(self) -> list[str]:
        def parse() -> list[str]:
            response = self._conn.readline()
            if response.startswith("#"):
                raise MuninCommandError(f"Error getting items: {response}")
            return response.split()

        return self._command("list", parse)

    def config(self, graph: str) -> GraphConfig:
        def parse() -> GraphConfig:
            cfg = GraphConfig()
            for line in self._read_until_end():
                if line.startswith("#"):
                    continue
                try:
                    key, attr, value = parse_config_line(line)
                except TransientParseError as e:
                    logger.warning("config %s: skipping %s", graph, e)
                    continue
                if attr is not None:
                    cfg.metrics.setdefault(key, {})[attr] = value
                else:
                    cfg.graph_attrs[key] = value
            return cfg

        return self._command(f"config {graph}", parse)

    def fetch(self, graph: str) -> list[tuple[str, float]]:
        def parse() -> list[tuple[str, float]]:
            values = []
            for line in self._read_until_end():
                try:
                    values.append(parse_fetch_line(line))
                except TransientParseError as e:
                    logger.warning("fetch %s: skipping %s", graph, e)
            logger.debug("End of list for %s", graph)
            return values

        return self._command(f"fetch {graph}", parse)
