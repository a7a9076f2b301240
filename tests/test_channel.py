"""Tests for the channel module."""

import threading

import pytest

from sftp_batch_sink.channel import MemoryChannel, TransactionState
from sftp_batch_sink.errors import ChannelFullError, TransactionStateError
from sftp_batch_sink.models import Record


def _bodies(channel: MemoryChannel) -> list[bytes]:
    out = []
    txn = channel.begin_transaction()
    while (record := txn.take()) is not None:
        out.append(record.body)
    txn.commit()
    txn.close()
    return out


def test_puts_visible_only_after_commit() -> None:
    """Records put in a transaction are not visible until commit."""
    channel = MemoryChannel()
    txn = channel.begin_transaction()
    txn.put(Record(body=b"a"))
    assert len(channel) == 0
    txn.commit()
    txn.close()
    assert len(channel) == 1


def test_take_on_empty_channel_returns_none() -> None:
    """Taking from an empty channel yields None."""
    channel = MemoryChannel()
    txn = channel.begin_transaction()
    assert txn.take() is None
    txn.commit()
    txn.close()


def test_rollback_returns_takes_to_head_in_order() -> None:
    """Rolled-back takes go back to the head in their original order."""
    channel = MemoryChannel()
    for body in (b"a", b"b", b"c"):
        channel.put(Record(body=body))

    txn = channel.begin_transaction()
    assert txn.take().body == b"a"
    assert txn.take().body == b"b"
    txn.rollback()
    txn.close()

    assert _bodies(channel) == [b"a", b"b", b"c"]


def test_rollback_discards_puts() -> None:
    """Rolled-back puts never reach the queue."""
    channel = MemoryChannel()
    txn = channel.begin_transaction()
    txn.put(Record(body=b"a"))
    txn.rollback()
    txn.close()
    assert len(channel) == 0


def test_close_is_idempotent_and_rolls_back_open_transaction() -> None:
    """Closing twice is harmless and an open transaction is rolled back."""
    channel = MemoryChannel()
    channel.put(Record(body=b"a"))

    txn = channel.begin_transaction()
    txn.take()
    txn.close()
    txn.close()

    assert txn.state is TransactionState.CLOSED
    assert len(channel) == 1


def test_operations_after_commit_are_rejected() -> None:
    """A committed transaction refuses further take and put."""
    channel = MemoryChannel()
    txn = channel.begin_transaction()
    txn.commit()
    with pytest.raises(TransactionStateError):
        txn.take()
    with pytest.raises(TransactionStateError):
        txn.commit()
    txn.rollback()  # no-op after completion
    txn.close()
    with pytest.raises(TransactionStateError):
        txn.rollback()


def test_transaction_capacity() -> None:
    """A transaction holds at most transaction_capacity records."""
    channel = MemoryChannel(capacity=10, transaction_capacity=2)
    txn = channel.begin_transaction()
    txn.put(Record(body=b"a"))
    txn.put(Record(body=b"b"))
    with pytest.raises(ChannelFullError):
        txn.put(Record(body=b"c"))
    txn.rollback()
    txn.close()


def test_channel_capacity_on_commit() -> None:
    """Committing past channel capacity raises and keeps the transaction open."""
    channel = MemoryChannel(capacity=2, transaction_capacity=2)
    channel.put(Record(body=b"a"))

    txn = channel.begin_transaction()
    txn.put(Record(body=b"b"))
    txn.put(Record(body=b"c"))
    with pytest.raises(ChannelFullError):
        txn.commit()
    assert txn.state is TransactionState.OPEN
    txn.rollback()
    txn.close()
    assert len(channel) == 1


def test_context_manager_rolls_back_on_error() -> None:
    """Leaving the with-block on an exception rolls back."""
    channel = MemoryChannel()
    channel.put(Record(body=b"a"))

    with pytest.raises(RuntimeError):
        with channel.begin_transaction() as txn:
            txn.take()
            raise RuntimeError("boom")

    assert len(channel) == 1


def test_invalid_sizes() -> None:
    """Capacities must be positive."""
    with pytest.raises(ValueError):
        MemoryChannel(capacity=0)
    with pytest.raises(ValueError):
        MemoryChannel(capacity=5, transaction_capacity=10)


def test_concurrent_put_and_take() -> None:
    """Concurrent producers and a consumer lose no records."""
    channel = MemoryChannel(capacity=1000, transaction_capacity=10)
    taken: list[bytes] = []

    def producer() -> None:
        for i in range(200):
            channel.put(Record(body=str(i).encode()))

    thread = threading.Thread(target=producer)
    thread.start()
    while len(taken) < 200:
        txn = channel.begin_transaction()
        record = txn.take()
        txn.commit()
        txn.close()
        if record is not None:
            taken.append(record.body)
    thread.join()

    assert taken == [str(i).encode() for i in range(200)]
