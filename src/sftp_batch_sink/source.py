"""Line-oriented source feeding the channel.

Each input line (without its terminator) becomes one :class:`Record`.
Lines are committed to the channel in put-transactions of ``batch_size``;
when the channel is full the transaction is rolled back and retried after a
short pause.
"""

from __future__ import annotations

import logging
import threading
from typing import BinaryIO, Optional

from sftp_batch_sink.channel import MemoryChannel
from sftp_batch_sink.errors import ChannelFullError
from sftp_batch_sink.models import Record

logger = logging.getLogger(__name__)


class LineSource:
    """Reads newline-delimited records from *stream* into *channel*.

    Parameters
    ----------
    stream:
        Binary input stream (a file or ``sys.stdin.buffer``).
    channel:
        Destination channel.
    batch_size:
        Records per put-transaction.
    full_wait_s:
        Pause before retrying a batch the channel could not accept.
    """

    def __init__(
        self,
        stream: BinaryIO,
        channel: MemoryChannel,
        batch_size: int = 100,
        full_wait_s: float = 0.5,
    ) -> None:
        self._stream = stream
        self._channel = channel
        self._batch_size = batch_size
        self._full_wait_s = full_wait_s
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._count = 0
        self._error: Optional[BaseException] = None

    @property
    def finished(self) -> bool:
        """True once the stream is exhausted (or reading stopped)."""
        return self._finished.is_set()

    @property
    def count(self) -> int:
        """Records committed to the channel so far."""
        return self._count

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def start(self) -> None:
        """Read the stream on a daemon thread."""
        self._thread = threading.Thread(target=self.run, name="line-source", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def run(self) -> None:
        """Read until EOF or :meth:`stop`, then mark the source finished."""
        batch: list[Record] = []
        try:
            for line in self._stream:
                if self._stop.is_set():
                    break
                batch.append(Record(body=line.rstrip(b"\r\n")))
                if len(batch) >= self._batch_size:
                    self._commit(batch)
                    batch = []
            if batch and not self._stop.is_set():
                self._commit(batch)
        except Exception as exc:
            self._error = exc
            logger.error("Source failed after %d records: %s", self._count, exc)
        finally:
            self._finished.set()
            logger.info("Source finished (%d records)", self._count)

    def _commit(self, batch: list[Record]) -> None:
        while not self._stop.is_set():
            txn = self._channel.begin_transaction()
            try:
                for record in batch:
                    txn.put(record)
                txn.commit()
            except ChannelFullError:
                txn.rollback()
                logger.debug("Channel full — waiting %.1fs", self._full_wait_s)
                self._stop.wait(self._full_wait_s)
                continue
            finally:
                txn.close()
            self._count += len(batch)
            return
