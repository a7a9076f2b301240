"""Start-up and tear-down of the sink.

The controller is the only owner of the SFTP session: it connects once in
:meth:`SinkController.start`, hands the same session to the engine, and
disconnects in :meth:`SinkController.stop`.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from sftp_batch_sink.channel import Channel
from sftp_batch_sink.config import ConnectionConfig, DestinationConfig
from sftp_batch_sink.engine import BatchSinkEngine
from sftp_batch_sink.errors import SinkError
from sftp_batch_sink.models import Status
from sftp_batch_sink.staging import StagingWriter
from sftp_batch_sink.transfer import SFTPTransferClient

logger = logging.getLogger(__name__)


class SinkController:
    """Owns the run configuration, the SFTP session, and the engine.

    Parameters
    ----------
    connection:
        SSH/SFTP connection settings.
    destination:
        Remote folder, file template, roll count, and staging directory.
    channel:
        Channel the engine drains.
    client_factory:
        Builds the transfer client from *connection*.  Defaults to
        :class:`SFTPTransferClient`.
    """

    def __init__(
        self,
        connection: ConnectionConfig,
        destination: DestinationConfig,
        channel: Channel,
        client_factory: Optional[Callable[[ConnectionConfig], SFTPTransferClient]] = None,
    ) -> None:
        self._connection = connection
        self._destination = destination
        self._channel = channel
        self._client_factory = client_factory or SFTPTransferClient

        self._client: Optional[SFTPTransferClient] = None
        self._writer: Optional[StagingWriter] = None
        self._engine: Optional[BatchSinkEngine] = None

    @property
    def engine(self) -> Optional[BatchSinkEngine]:
        return self._engine

    @property
    def started(self) -> bool:
        return self._engine is not None

    def start(self) -> None:
        """Connect to the server and build the engine.

        Raises
        ------
        ConnectionFailure
            If the session cannot be established.  Not retried.
        """
        if self._engine is not None:
            raise RuntimeError("SinkController already started")

        client = self._client_factory(self._connection)
        client.connect()
        self._client = client

        dest = self._destination
        self._writer = StagingWriter(dest.staging_dir, dest.file)
        self._engine = BatchSinkEngine(
            channel=self._channel,
            transfer=client,
            writer=self._writer,
            destination_folder=dest.folder,
            roll_count=dest.roll_count,
            file_template=dest.file,
        )
        logger.info(
            "Sink started (folder=%s, file=%s, roll_count=%d, staging_dir=%s)",
            dest.folder,
            dest.file,
            dest.roll_count,
            dest.staging_dir,
        )

    def process(self) -> Status:
        """Run one engine step.  See :meth:`BatchSinkEngine.process`."""
        if self._engine is None:
            raise RuntimeError("SinkController.process() called before start()")
        return self._engine.process()

    def stop(self) -> None:
        """Release the staging file and disconnect.  Never raises."""
        if self._writer is not None:
            try:
                self._writer.close()
            except (OSError, SinkError) as exc:
                logger.warning("Error closing staging file: %s", exc)
        if self._client is not None:
            try:
                self._client.disconnect()
            except Exception as exc:
                logger.warning("Error disconnecting from SFTP server: %s", exc)
        self._client = None
        self._writer = None
        self._engine = None
        logger.info("Sink stopped")

    def __enter__(self) -> SinkController:
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
