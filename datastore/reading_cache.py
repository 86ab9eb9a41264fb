"""Bounded plaintext cache of readings keyed by their digest.

Records are stored at most once (first writer wins) and evicted in strict
arrival order once ``capacity`` is exceeded. State is snapshotted to a JSON
array after a short quiet period so a burst of inserts costs one write.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import tempfile
from collections import deque
from functools import lru_cache
from pathlib import Path
from threading import Lock, Timer
from typing import Deque, Dict, Optional, Union

from pydantic import ValidationError

from app.schemas import CacheRecord
from services.encoding import normalize_hash
from settings import get_settings

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 2000
DEFAULT_SAVE_DELAY = 0.3


class ReadingCache:

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        persistence_path: Optional[Path] = None,
        save_delay: float = DEFAULT_SAVE_DELAY,
    ) -> None:
        if capacity < 1:
            raise ValueError("Cache capacity must be at least 1.")
        self.capacity = capacity
        self.persistence_path = persistence_path
        self.save_delay = save_delay
        self._records: Dict[str, CacheRecord] = {}
        self._order: Deque[str] = deque()
        self._lock = Lock()
        self._write_lock = Lock()
        self._save_timer: Optional[Timer] = None
        self._dirty = False
        self._closed = False

    @classmethod
    def open(
        cls,
        path: Union[str, Path, None],
        capacity: int = DEFAULT_CAPACITY,
        save_delay: float = DEFAULT_SAVE_DELAY,
    ) -> "ReadingCache":
        """Create a cache and replay the snapshot at ``path``, if any."""
        persistence = Path(path) if path else None
        cache = cls(capacity=capacity, persistence_path=persistence, save_delay=save_delay)
        if persistence:
            try:
                persistence.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                logger.warning(
                    "Snapshot directory unusable, caching in memory only: %s",
                    exc,
                    extra={"path": str(persistence)},
                )
                cache.persistence_path = None
                return cache
            cache._load_from_disk()
        return cache

    def put(self, record: CacheRecord) -> bool:
        """Store ``record`` unless its digest is already present.

        Returns ``True`` when the record was inserted.
        """
        with self._lock:
            inserted = self._insert(record)
            if inserted:
                self._dirty = True
                self._schedule_save()
        if inserted:
            logger.debug(
                "Cached reading", extra={"data_hash": record.data_hash, "tx": record.tx}
            )
        return inserted

    def get(self, data_hash: str) -> Optional[CacheRecord]:
        with self._lock:
            return self._records.get(normalize_hash(data_hash))

    def recent(self, limit: int) -> list[CacheRecord]:
        """Return up to ``limit`` records, most recently inserted first."""
        bounded = max(0, min(int(limit), self.capacity))
        with self._lock:
            keys = list(itertools.islice(reversed(self._order), bounded))
            return [self._records[key] for key in keys]

    def flush(self) -> None:
        """Write the snapshot immediately, cancelling any pending save."""
        with self._lock:
            self._cancel_timer()
        self._save()

    def close(self) -> None:
        """Flush pending changes and stop scheduling saves. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancel_timer()
            pending = self._dirty
        if pending:
            self._save()

    def __enter__(self) -> "ReadingCache":
        return self

    def __exit__(self, *_exc_info) -> None:
        self.close()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, data_hash: object) -> bool:
        if not isinstance(data_hash, str):
            return False
        with self._lock:
            return normalize_hash(data_hash) in self._records

    def _insert(self, record: CacheRecord) -> bool:
        """De-duplicate, insert and evict. Must be called with lock held."""
        key = normalize_hash(record.data_hash)
        if key in self._records:
            return False
        self._records[key] = record
        self._order.append(key)
        while len(self._order) > self.capacity:
            evicted = self._order.popleft()
            self._records.pop(evicted, None)
        return True

    def _schedule_save(self) -> None:
        """Restart the debounce timer. Must be called with lock held."""
        if not self.persistence_path or self._closed:
            return
        self._cancel_timer()
        timer = Timer(self.save_delay, self._save)
        timer.daemon = True
        self._save_timer = timer
        timer.start()

    def _cancel_timer(self) -> None:
        if self._save_timer is not None:
            self._save_timer.cancel()
            self._save_timer = None

    def _save(self) -> None:
        if not self.persistence_path:
            return
        with self._lock:
            payload = [
                self._records[key].model_dump(mode="json", by_alias=True)
                for key in self._order
            ]
            self._dirty = False

        path = self.persistence_path
        with self._write_lock:
            try:
                fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as handle:
                        json.dump(payload, handle, indent=2)
                    os.replace(tmp_path, path)
                except BaseException:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
                    raise
            except (OSError, TypeError, ValueError) as exc:
                with self._lock:
                    self._dirty = True
                logger.warning(
                    "Snapshot save failed: %s",
                    exc,
                    extra={"path": str(path), "record_count": len(payload)},
                )
                return
        logger.debug(
            "Snapshot saved", extra={"path": str(path), "record_count": len(payload)}
        )

    def _load_from_disk(self) -> None:
        path = self.persistence_path
        if not path or not path.exists():
            return

        try:
            raw = path.read_text(encoding="utf-8") or "[]"
            data = json.loads(raw)
        except (OSError, ValueError) as exc:
            logger.warning(
                "Snapshot load failed, starting empty: %s", exc, extra={"path": str(path)}
            )
            return

        if not isinstance(data, list):
            logger.warning(
                "Snapshot is not a list of records, starting empty",
                extra={"path": str(path), "reason": type(data).__name__},
            )
            return

        loaded = 0
        skipped = 0
        with self._lock:
            for item in data:
                try:
                    record = CacheRecord.model_validate(item)
                except ValidationError:
                    skipped += 1
                    continue
                if self._insert(record):
                    loaded += 1
        if skipped:
            logger.warning(
                "Skipped malformed snapshot records",
                extra={"path": str(path), "record_count": skipped},
            )
        logger.info("Loaded cache snapshot", extra={"path": str(path), "record_count": loaded})


@lru_cache
def build_default_cache(
    path: Optional[str] = None,
    capacity: Optional[int] = None,
) -> ReadingCache:
    settings = get_settings()
    cache_path = settings.cache_path if path is None else path
    cache_capacity = settings.cache_capacity if capacity is None else capacity
    return ReadingCache.open(
        cache_path,
        capacity=cache_capacity,
        save_delay=settings.save_delay_seconds,
    )
