"""Plain data types shared across the sink."""

import enum
from dataclasses import dataclass, field


class Status(enum.Enum):
    """Outcome of one engine invocation."""

    READY = "READY"  # work done, call again immediately
    BACKOFF = "BACKOFF"  # no work or recoverable failure, wait before retrying


class ProbeResult(enum.Enum):
    """Answer of a remote path probe."""

    EXISTS = "EXISTS"
    ABSENT = "ABSENT"
    INDETERMINATE = "INDETERMINATE"


class EngineState(enum.Enum):
    """Per-invocation states of the batch sink engine."""

    IDLE = "IDLE"
    TXN_OPEN = "TXN_OPEN"
    RECORD_TAKEN = "RECORD_TAKEN"
    STAGED = "STAGED"
    ROLLED = "ROLLED"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


@dataclass
class Record:
    """An opaque payload taken from the channel.

    ``body`` is never parsed; it is staged as UTF-8 text plus a newline.
    """

    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_text(cls, text: str, **headers: str) -> "Record":
        """Build a record from a ``str`` body."""
        return cls(body=text.encode("utf-8"), headers=dict(headers))

    def text(self) -> str:
        """Body decoded as UTF-8, undecodable bytes replaced."""
        return self.body.decode("utf-8", errors="replace")
