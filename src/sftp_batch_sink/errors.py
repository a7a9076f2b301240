"""Exception hierarchy for the sink.

Startup failures (:class:`ConnectionFailure`) propagate and halt the process.
Per-invocation failures are raised by the staging and transfer layers and
converted by the engine into a single :class:`EventDeliveryError`.
"""

from __future__ import annotations

from sftp_batch_sink.models import Status


class SinkError(Exception):
    """Base class for all sink errors."""


class ConnectionFailure(SinkError):
    """Authentication or network failure while connecting to the SFTP host."""


class LocalIOFailure(SinkError):
    """A staging file could not be written, flushed, or closed."""


class RemoteDirectoryFailure(SinkError):
    """The remote destination directory could not be created."""


class RemoteUploadFailure(SinkError):
    """A finalized batch file could not be transferred."""


class EventDeliveryError(SinkError):
    """One engine invocation failed and its transaction was rolled back.

    ``status`` is always :attr:`Status.BACKOFF`; the original exception is
    available as ``__cause__``.
    """

    status = Status.BACKOFF


class ChannelError(SinkError):
    """Base class for channel errors."""


class ChannelFullError(ChannelError):
    """A put transaction would exceed the channel capacity."""


class TransactionStateError(ChannelError):
    """A transaction method was called in a state that does not allow it."""
