"""Transactional in-memory channel between a source and the sink.

Transaction life cycle::

    OPEN → (commit) → COMPLETED → (close) → CLOSED
         → (rollback) → COMPLETED → (close) → CLOSED

Puts are buffered in the transaction and only become visible to takers on
commit.  Takes are removed from the queue immediately; a rollback returns
them to the *head* of the queue in their original order so the next taker
sees them again before anything newer.
"""

from __future__ import annotations

import enum
import logging
import threading
from collections import deque
from typing import Optional, Protocol

from sftp_batch_sink.errors import ChannelFullError, TransactionStateError
from sftp_batch_sink.models import Record

logger = logging.getLogger(__name__)


class Transaction(Protocol):
    """Unit of work against a channel."""

    def take(self) -> Optional[Record]: ...

    def put(self, record: Record) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def close(self) -> None: ...


class Channel(Protocol):
    """Anything that hands out begun transactions."""

    def begin_transaction(self) -> Transaction: ...


class TransactionState(enum.Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    CLOSED = "CLOSED"


class MemoryTransaction:
    """A transaction against a :class:`MemoryChannel`.

    Not thread-safe on its own; each thread uses its own transaction.
    """

    def __init__(self, channel: MemoryChannel, capacity: int) -> None:
        self._channel = channel
        self._capacity = capacity
        self._puts: list[Record] = []
        self._takes: list[Record] = []
        self._state = TransactionState.OPEN

    @property
    def state(self) -> TransactionState:
        return self._state

    def take(self) -> Optional[Record]:
        """Remove and return the head record, or ``None`` if the channel is empty."""
        self._require_open("take")
        if len(self._takes) >= self._capacity:
            raise ChannelFullError(
                f"Take list for transaction is full (capacity {self._capacity})"
            )
        record = self._channel._pop()
        if record is not None:
            self._takes.append(record)
        return record

    def put(self, record: Record) -> None:
        """Stage *record*; it becomes visible when the transaction commits."""
        self._require_open("put")
        if len(self._puts) >= self._capacity:
            raise ChannelFullError(
                f"Put list for transaction is full (capacity {self._capacity})"
            )
        self._puts.append(record)

    def commit(self) -> None:
        self._require_open("commit")
        if self._puts:
            self._channel._push_all(self._puts)
        self._puts = []
        self._takes = []
        self._state = TransactionState.COMPLETED

    def rollback(self) -> None:
        """Discard puts and return takes to the head of the channel."""
        if self._state is TransactionState.CLOSED:
            raise TransactionStateError("rollback called on a closed transaction")
        if self._state is TransactionState.COMPLETED:
            logger.debug("rollback after completion ignored")
            return
        if self._takes:
            self._channel._requeue(self._takes)
            logger.debug("Returned %d taken record(s) to the channel", len(self._takes))
        self._puts = []
        self._takes = []
        self._state = TransactionState.COMPLETED

    def close(self) -> None:
        """Release the transaction.  Idempotent.

        Closing an open transaction rolls it back first.
        """
        if self._state is TransactionState.CLOSED:
            return
        if self._state is TransactionState.OPEN:
            logger.warning("Closing an open transaction — rolling back")
            self.rollback()
        self._state = TransactionState.CLOSED

    def __enter__(self) -> MemoryTransaction:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None and self._state is TransactionState.OPEN:
            self.rollback()
        self.close()

    def _require_open(self, operation: str) -> None:
        if self._state is not TransactionState.OPEN:
            raise TransactionStateError(
                f"{operation} called on a {self._state.value.lower()} transaction"
            )


class MemoryChannel:
    """Bounded, thread-safe FIFO of :class:`Record` objects.

    Parameters
    ----------
    capacity:
        Maximum number of committed records held at once.
    transaction_capacity:
        Maximum number of puts (or takes) in a single transaction.
    """

    def __init__(self, capacity: int = 10000, transaction_capacity: int = 100) -> None:
        if capacity < 1 or transaction_capacity < 1:
            raise ValueError("capacity and transaction_capacity must be positive")
        if transaction_capacity > capacity:
            raise ValueError("transaction_capacity cannot exceed capacity")
        self._capacity = capacity
        self._transaction_capacity = transaction_capacity
        self._queue: deque[Record] = deque()
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def begin_transaction(self) -> MemoryTransaction:
        return MemoryTransaction(self, self._transaction_capacity)

    def put(self, record: Record) -> None:
        """Put a single record in its own committed transaction."""
        with self.begin_transaction() as txn:
            txn.put(record)
            txn.commit()

    # ── used by MemoryTransaction ───────────────────────────────────

    def _pop(self) -> Optional[Record]:
        with self._lock:
            return self._queue.popleft() if self._queue else None

    def _push_all(self, records: list[Record]) -> None:
        with self._lock:
            free = self._capacity - len(self._queue)
            if len(records) > free:
                raise ChannelFullError(
                    f"Cannot commit {len(records)} record(s): "
                    f"{free} of {self._capacity} slots free"
                )
            self._queue.extend(records)

    def _requeue(self, records: list[Record]) -> None:
        # Rolled-back takes were already counted against capacity.
        with self._lock:
            self._queue.extendleft(reversed(records))
