from __future__ import annotations


class MuninError(Exception):
    """Base class for everything raised while talking to a munin node."""


class ConnectError(MuninError):
    """Dial failure, malformed banner, or a reconnect loop that gave up."""


class ProtocolDesyncError(MuninError):
    """Unexpected I/O error mid-stream; the reply position is unknown."""


class StreamTruncated(MuninError):
    """The node closed the stream before the reply was complete."""


class TransientParseError(MuninError):
    """A single reply line could not be parsed."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line!r}")
        self.line = line
        self.reason = reason


class MuninCommandError(MuninError):
    """The node answered a command with a '#' error line."""


class DuplicateMetricError(MuninError):
    """Two (graph, metric) pairs map to the same exported name."""
