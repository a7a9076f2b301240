"""Batch sink engine: one transactional step per call.

Per-invocation state machine::

    IDLE → TXN_OPEN → (no record) ─────────────────────────→ COMMITTED  (BACKOFF)
                    → RECORD_TAKEN → STAGED → (below roll) → COMMITTED  (READY)
                                            → ROLLED ──────→ COMMITTED  (READY)
         any failure ───────────────────────────────────────→ ABORTED    (raise)

After COMMITTED or ABORTED the engine is back in IDLE for the next call.

Rollover (finalize, ensure remote folder, upload) runs inside the
transaction of the record that reached the threshold.  If it fails, that
record is rolled back to the channel, its line is cut from the staging file
and ``consumed_count`` is decremented, so the next attempt restages it onto
the same batch file and uploads the whole batch again under the same
sequence number.  Earlier batches that were already uploaded are not
touched.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Optional

from sftp_batch_sink.channel import Channel
from sftp_batch_sink.errors import EventDeliveryError, SinkError
from sftp_batch_sink.models import EngineState, ProbeResult, Record, Status
from sftp_batch_sink.staging import StagingWriter, batch_file_name
from sftp_batch_sink.transfer import TransferClient

logger = logging.getLogger(__name__)


class BatchSinkEngine:
    """Drains *channel* into count-rolled batch files shipped via *transfer*.

    Parameters
    ----------
    channel:
        Upstream transactional channel.
    transfer:
        Connected remote session.  Owned by the caller; never opened or
        closed here.
    writer:
        Staging writer for the local batch files.
    destination_folder:
        Remote directory for uploaded batches.
    roll_count:
        Number of records per batch.
    """

    def __init__(
        self,
        channel: Channel,
        transfer: TransferClient,
        writer: StagingWriter,
        destination_folder: str,
        roll_count: int,
        file_template: str,
    ) -> None:
        if roll_count < 1:
            raise ValueError(f"roll_count must be >= 1, got {roll_count}")
        self._channel = channel
        self._transfer = transfer
        self._writer = writer
        self._destination_folder = destination_folder
        self._roll_count = roll_count
        self._file_template = file_template

        self._consumed_count = 0
        self._state = EngineState.IDLE

    @property
    def consumed_count(self) -> int:
        """Records staged in the current batch."""
        return self._consumed_count

    @property
    def batch_sequence(self) -> int:
        """Number of batches uploaded so far (and sequence of the current one)."""
        return self._writer.sequence

    @property
    def state(self) -> EngineState:
        return self._state

    def remote_path(self, sequence: int) -> str:
        """Remote path of batch *sequence*."""
        return posixpath.join(
            self._destination_folder, batch_file_name(sequence, self._file_template)
        )

    def process(self) -> Status:
        """Move at most one record from the channel into the current batch.

        Returns
        -------
        Status
            ``READY`` when a record was staged (and possibly a batch shipped),
            ``BACKOFF`` when the channel was empty.

        Raises
        ------
        EventDeliveryError
            When staging or rollover failed.  The transaction has been rolled
            back and the caller should back off.
        """
        txn = self._channel.begin_transaction()
        self._state = EngineState.TXN_OPEN
        mark: Optional[int] = None
        try:
            record = txn.take()
            if record is None:
                txn.commit()
                self._state = EngineState.COMMITTED
                return Status.BACKOFF

            self._state = EngineState.RECORD_TAKEN
            mark = self._stage(record)
            self._state = EngineState.STAGED

            if self._consumed_count >= self._roll_count:
                self._roll_over()
                mark = None
                self._state = EngineState.ROLLED

            txn.commit()
            self._state = EngineState.COMMITTED
            return Status.READY

        except Exception as exc:
            self._state = EngineState.ABORTED
            logger.error("Delivery failed for batch %d: %s", self.batch_sequence, exc)
            try:
                txn.rollback()
            except Exception as rollback_exc:
                logger.error("Rollback failed: %s", rollback_exc)
            if mark is not None:
                self._unstage(mark)
            raise EventDeliveryError(str(exc)) from exc

        finally:
            txn.close()
            self._state = EngineState.IDLE

    # ── internal ────────────────────────────────────────────────────

    def _stage(self, record: Record) -> int:
        logger.debug("Staging record (%d bytes)", len(record.body))
        mark = self._writer.append(record)
        self._consumed_count += 1
        logger.debug("Staged %d of %d", self._consumed_count, self._roll_count)
        return mark

    def _unstage(self, mark: int) -> None:
        """Undo the staging of a record whose transaction was rolled back."""
        self._consumed_count -= 1
        try:
            self._writer.rewind(mark)
        except SinkError as exc:
            logger.error("Could not rewind staging file: %s", exc)

    def _roll_over(self) -> None:
        local_path = self._writer.finalize_current()
        self._ensure_remote_folder()

        destination = self.remote_path(self._writer.sequence)
        logger.info("Transferring file %s to %s", local_path, destination)
        self._transfer.upload(local_path, destination)

        self._consumed_count = 0
        self._writer.advance()
        logger.info("Batch %d shipped", self._writer.sequence - 1)

    def _ensure_remote_folder(self) -> None:
        result = self._transfer.probe(self._destination_folder)
        if result is ProbeResult.EXISTS:
            return
        logger.info(
            "Remote folder %s probe returned %s — creating it",
            self._destination_folder,
            result.value,
        )
        self._transfer.mkdir(self._destination_folder)
