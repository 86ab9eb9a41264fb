"""Unit tests for the bounded reading cache."""

from __future__ import annotations

import json
import logging
import threading
import time
from pathlib import Path
from typing import Optional

import pytest

from app.schemas import CacheRecord
from datastore.reading_cache import ReadingCache
from models.records import Reading
from services.encoding import reading_hash

DEVICE = "0x" + "aa" * 16


def _record(device_ts: int = 1700000000, tx: Optional[str] = "0x01", **overrides) -> CacheRecord:
    fields = dict(
        device_id=DEVICE,
        device_ts=device_ts,
        temp_cx10=234,
        hum_pct_x10=651,
        lux=12000,
        rain=False,
        sensor_mask=7,
    )
    fields.update(overrides)
    reading = Reading(**fields)
    return CacheRecord.from_reading(reading, data_hash=reading_hash(reading), tx=tx, block_ts=device_ts)


def _wait_for(path: Path, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if path.exists():
            return
        time.sleep(0.01)
    pytest.fail(f"{path} was never written")


def test_put_is_idempotent() -> None:
    cache = ReadingCache(capacity=10)
    record = _record()

    assert cache.put(record) is True
    before = cache.recent(10)
    assert cache.put(record) is False

    assert len(cache) == 1
    assert cache.recent(10) == before


def test_first_writer_wins_for_a_digest() -> None:
    cache = ReadingCache(capacity=10)
    original = _record(tx=None)
    later = original.model_copy(update={"tx": "0xfeed"})

    cache.put(original)
    cache.put(later)

    stored = cache.get(original.data_hash)
    assert stored is not None
    assert stored.tx is None


def test_get_normalizes_the_key_and_never_fabricates() -> None:
    cache = ReadingCache(capacity=10)
    record = _record()
    cache.put(record)

    assert cache.get(record.data_hash.upper().replace("0X", "0x")) == record
    assert cache.get(record.data_hash[2:]) == record
    assert cache.get("0x" + "00" * 32) is None
    assert record.data_hash in cache


def test_overflow_evicts_oldest_inserted_record() -> None:
    cache = ReadingCache(capacity=3)
    records = [_record(device_ts=1700000000 + i) for i in range(4)]

    for record in records:
        cache.put(record)
    # Reading the oldest survivor must not protect it from eviction.
    cache.get(records[1].data_hash)
    cache.put(_record(device_ts=1700000100))

    assert len(cache) == 3
    assert cache.get(records[0].data_hash) is None
    assert cache.get(records[1].data_hash) is None
    assert [r.device_ts for r in cache.recent(10)] == [1700000100, 1700000003, 1700000002]


def test_recent_is_newest_first_and_bounded() -> None:
    cache = ReadingCache(capacity=5)
    for i in range(5):
        cache.put(_record(device_ts=1700000000 + i))

    assert [r.device_ts for r in cache.recent(2)] == [1700000004, 1700000003]
    assert len(cache.recent(50)) == 5
    assert cache.recent(0) == []


def test_snapshot_round_trip(tmp_path: Path) -> None:
    path = tmp_path / "db.json"
    records = [_record(device_ts=1700000000 + i, tx=None if i % 2 else f"0x{i:02x}") for i in range(3)]

    with ReadingCache.open(path, capacity=10, save_delay=5.0) as cache:
        for record in records:
            cache.put(record)

    payload = json.loads(path.read_text())
    assert [item["dataHash"] for item in payload] == [r.data_hash for r in records]
    assert set(payload[0]) >= {"deviceId", "deviceTs", "tempCx10", "humPctx10", "lux", "rain", "sensorMask", "tx"}

    reloaded = ReadingCache.open(path, capacity=10)
    assert len(reloaded) == 3
    for record in records:
        assert reloaded.get(record.data_hash) == record
    assert reloaded.recent(3) == list(reversed(records))


def test_burst_of_inserts_is_saved_once(tmp_path: Path, monkeypatch) -> None:
    import datastore.reading_cache as module

    writes: list[str] = []
    real_replace = module.os.replace

    def counting_replace(src, dst):
        writes.append(str(dst))
        real_replace(src, dst)

    monkeypatch.setattr(module.os, "replace", counting_replace)
    path = tmp_path / "db.json"
    cache = ReadingCache.open(path, capacity=10, save_delay=0.1)

    for i in range(5):
        cache.put(_record(device_ts=1700000000 + i))

    _wait_for(path)
    time.sleep(0.2)
    assert writes == [str(path)]
    assert len(json.loads(path.read_text())) == 5
    cache.close()


def test_close_flushes_pending_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "db.json"
    cache = ReadingCache.open(path, capacity=10, save_delay=60.0)
    cache.put(_record())

    assert not path.exists()
    cache.close()
    cache.close()

    assert len(json.loads(path.read_text())) == 1


def test_corrupt_snapshot_starts_empty(tmp_path: Path, caplog) -> None:
    path = tmp_path / "db.json"
    path.write_text("{not json")

    with caplog.at_level(logging.WARNING):
        cache = ReadingCache.open(path, capacity=10)

    assert len(cache) == 0
    assert "Snapshot load failed" in caplog.text


def test_snapshot_replay_ignores_duplicates_and_bad_rows(tmp_path: Path) -> None:
    path = tmp_path / "db.json"
    first = _record(device_ts=1700000000)
    second = _record(device_ts=1700000001)
    rows = [
        first.model_dump(mode="json", by_alias=True),
        first.model_dump(mode="json", by_alias=True),
        {"dataHash": "0x00"},
        second.model_dump(mode="json", by_alias=True),
    ]
    path.write_text(json.dumps(rows))

    cache = ReadingCache.open(path, capacity=10)

    assert len(cache) == 2
    assert [r.data_hash for r in cache.recent(10)] == [second.data_hash, first.data_hash]


def test_snapshot_replay_respects_capacity(tmp_path: Path) -> None:
    path = tmp_path / "db.json"
    records = [_record(device_ts=1700000000 + i) for i in range(4)]
    path.write_text(json.dumps([r.model_dump(mode="json", by_alias=True) for r in records]))

    cache = ReadingCache.open(path, capacity=2)

    assert [r.data_hash for r in cache.recent(10)] == [records[3].data_hash, records[2].data_hash]


def test_save_failure_is_not_fatal(tmp_path: Path, monkeypatch, caplog) -> None:
    import datastore.reading_cache as module

    def broken_mkstemp(*_args, **_kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(module.tempfile, "mkstemp", broken_mkstemp)
    cache = ReadingCache.open(tmp_path / "db.json", capacity=10, save_delay=60.0)
    record = _record()
    cache.put(record)

    with caplog.at_level(logging.WARNING):
        cache.flush()

    assert "Snapshot save failed" in caplog.text
    assert cache.get(record.data_hash) == record
    cache.close()


def test_instances_do_not_share_state(tmp_path: Path) -> None:
    first = ReadingCache.open(tmp_path / "a.json", capacity=10)
    second = ReadingCache.open(tmp_path / "b.json", capacity=10)

    first.put(_record())

    assert len(first) == 1
    assert len(second) == 0
    first.close()
    second.close()


def test_failed_save_is_retried_on_close(tmp_path: Path, monkeypatch) -> None:
    import datastore.reading_cache as module

    real_mkstemp = module.tempfile.mkstemp
    failures = [OSError("disk full")]

    def flaky_mkstemp(*args, **kwargs):
        if failures:
            raise failures.pop()
        return real_mkstemp(*args, **kwargs)

    monkeypatch.setattr(module.tempfile, "mkstemp", flaky_mkstemp)
    path = tmp_path / "db.json"
    cache = ReadingCache.open(path, capacity=10, save_delay=60.0)
    cache.put(_record())

    cache.flush()
    assert not path.exists()
    cache.close()

    assert len(json.loads(path.read_text())) == 1


def test_unusable_snapshot_directory_falls_back_to_memory(tmp_path: Path, caplog) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory")

    with caplog.at_level(logging.WARNING):
        cache = ReadingCache.open(blocker / "db.json", capacity=10, save_delay=0.01)

    assert "Snapshot directory unusable" in caplog.text
    assert cache.persistence_path is None
    record = _record()
    assert cache.put(record) is True
    assert cache.get(record.data_hash) == record
    cache.close()
    assert blocker.read_text() == "not a directory"


def test_concurrent_puts_keep_order_and_records_consistent() -> None:
    capacity = 8
    cache = ReadingCache(capacity=capacity)
    records = [_record(device_ts=1700000000 + i) for i in range(40)]
    start = threading.Barrier(6)
    inserted: list[bool] = []
    inserted_lock = threading.Lock()

    def worker(offset: int) -> None:
        start.wait()
        local = [cache.put(records[(offset * 5 + i) % len(records)]) for i in range(len(records))]
        with inserted_lock:
            inserted.extend(local)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    keys = [r.data_hash for r in cache.recent(capacity)]
    assert len(cache) == capacity
    assert len(keys) == len(set(keys)) == capacity
    assert list(cache._order) == list(reversed(keys))
    assert set(cache._records) == set(cache._order)
    # Re-inserts only happen after eviction, so every digest landed at least once.
    assert sum(inserted) >= len(records)
