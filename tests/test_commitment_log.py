from __future__ import annotations

import logging
from typing import Callable, List, Optional

import pytest

from models.records import Commitment
from services.commitment_log import CommitmentLogClient
from storage.mock_ledger import MockLedger

DEVICE = "0x" + "aa" * 16


def _hash(n: int) -> str:
    return "0x" + f"{n:064x}"


class ScriptedReader:
    """Ledger reader that replays a fixed history and lets tests push events."""

    def __init__(self, history: List[Commitment]) -> None:
        self.history = history
        self.callbacks: List[Callable[[Commitment], None]] = []
        self.unwatch_calls = 0

    def query_commitments(self, from_block: int = 0, to_block: Optional[int] = None) -> List[Commitment]:
        end = len(self.history) if to_block is None else to_block + 1
        return self.history[from_block:end]

    def watch(self, callback: Callable[[Commitment], None]) -> Callable[[], None]:
        self.callbacks.append(callback)

        def unwatch() -> None:
            self.unwatch_calls += 1
            self.callbacks.remove(callback)

        return unwatch

    def push(self, commitment: Commitment) -> None:
        for callback in list(self.callbacks):
            callback(commitment)


def _commitment(n: int, **overrides) -> Commitment:
    fields = dict(
        data_hash=_hash(n),
        device_id=DEVICE,
        seq=n,
        device_ts=1700000000 + n,
        block_ts=1700000100 + n,
        sensor_mask=7,
        submitter="gateway",
        block=n,
    )
    fields.update(overrides)
    return Commitment(**fields)


def test_backfill_returns_ledger_order_without_resorting() -> None:
    # Deliberately out of block_ts order; the client must not reorder.
    history = [_commitment(0, block_ts=5), _commitment(1, block_ts=3), _commitment(2, block_ts=4)]
    client = CommitmentLogClient(ScriptedReader(history))

    assert [c.block for c in client.backfill()] == [0, 1, 2]
    assert [c.block for c in client.backfill(1, 1)] == [1]
    assert client.backfill(2, 1) == []


def test_backfill_normalizes_event_payloads() -> None:
    raw = _commitment(1, data_hash=_hash(1).upper().replace("0X", "0x"), device_id="AA" * 16)
    client = CommitmentLogClient(ScriptedReader([raw]))

    [commitment] = client.backfill(0, "latest")

    assert commitment.data_hash == _hash(1)
    assert commitment.device_id == DEVICE


def test_backfill_rejects_unknown_range_end() -> None:
    client = CommitmentLogClient(ScriptedReader([]))

    with pytest.raises(ValueError):
        client.backfill(0, "pending")


def test_subscription_delivers_until_unsubscribed() -> None:
    reader = ScriptedReader([])
    client = CommitmentLogClient(reader)
    received: list[int] = []

    subscription = client.subscribe(lambda c: received.append(c.seq))
    reader.push(_commitment(1))
    reader.push(_commitment(2))
    subscription.unsubscribe()
    subscription.unsubscribe()

    assert received == [1, 2]
    assert subscription.active is False
    assert reader.unwatch_calls == 1
    assert reader.callbacks == []


def test_failing_handler_does_not_stop_the_feed(caplog) -> None:
    reader = ScriptedReader([])
    client = CommitmentLogClient(reader)
    received: list[int] = []

    def handler(commitment: Commitment) -> None:
        if commitment.seq == 1:
            raise RuntimeError("boom")
        received.append(commitment.seq)

    client.subscribe(handler)
    with caplog.at_level(logging.ERROR):
        reader.push(_commitment(1))
        reader.push(_commitment(2))

    assert received == [2]
    assert "Commitment handler failed" in caplog.text


def test_close_unsubscribes_everything() -> None:
    reader = ScriptedReader([])
    client = CommitmentLogClient(reader)
    first = client.subscribe(lambda _c: None)
    second = client.subscribe(lambda _c: None)

    client.close()

    assert not first.active and not second.active
    assert reader.callbacks == []


def test_live_feed_from_mock_ledger_is_in_append_order() -> None:
    ledger = MockLedger(name="test")
    client = CommitmentLogClient(ledger)
    received: list[int] = []
    client.subscribe(lambda c: received.append(c.block))

    ledger.submit_batch(DEVICE, [_hash(1), _hash(2)], [1, 2], [7, 7])
    ledger.submit_reading(DEVICE, _hash(3), 3, 7)

    assert received == [0, 1, 2]
    assert [c.block for c in client.backfill()] == [0, 1, 2]
    client.close()
