"""Merge the commitment log with cached plaintext into one live view.

The reconciler is shared by every consumer of the reading stream: the gateway
feeds it the local cache's ``get``, a remote client can feed it an HTTP
lookup. Both discovery paths (historical backfill and the live subscription)
go through the same seen-set, so a commitment is rendered at most once no
matter which path reaches it first.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from threading import Lock
from typing import Callable, Deque, List, Optional, Set

from app.schemas import CacheRecord
from datastore.reading_cache import build_default_cache
from models.records import Commitment, MergedRow
from services.aggregator import Aggregator, WindowSummary
from services.commitment_log import LATEST, CommitmentLogClient, Subscription
from services.encoding import normalize_device_id, normalize_hash, verify
from settings import get_settings
from storage.mock_ledger import build_default_ledger

logger = logging.getLogger(__name__)

ALL_DEVICES = "all"

STATUS_VERIFIED = "verified"
STATUS_REDACTED = "redacted"
STATUS_MISMATCH = "mismatch"

CacheLookup = Callable[[str], Optional[CacheRecord]]


@dataclass
class WindowedView:
    """Rows selected by a device/time filter, in chart and table order."""

    device: str
    window_hours: float
    chart: List[MergedRow]
    table: List[MergedRow]
    summary: WindowSummary


class Reconciler:

    def __init__(
        self,
        log_client: CommitmentLogClient,
        lookup: CacheLookup,
        working_set: int = 600,
        max_rows: int = 1000,
        lookup_attempts: int = 3,
        retry_delay: float = 0.2,
        aggregator: Optional[Aggregator] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.log_client = log_client
        self.lookup = lookup
        self.working_set = working_set
        self.max_rows = max_rows
        self.lookup_attempts = max(1, lookup_attempts)
        self.retry_delay = retry_delay
        self.aggregator = aggregator or Aggregator()
        self._sleep = sleep
        # Newest arrival first.
        self._rows: Deque[MergedRow] = deque()
        # Hashes of rows in the view, plus any trimmed before history loaded.
        self._seen: Set[str] = set()
        self._history_loaded = False
        self._lock = Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._subscription: Optional[Subscription] = None
        self._started = False

    def start(self) -> None:
        """Subscribe to new commitments, then load history."""
        with self._lock:
            if self._started:
                return
            self._started = True
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reconciler")
        self._subscription = self.log_client.subscribe(self._on_commitment)
        try:
            self._load_history()
        except BaseException:
            self.stop()
            with self._lock:
                self._started = False
            raise

    def stop(self) -> None:
        """Stop the live feed and background lookups. Idempotent."""
        with self._lock:
            subscription, self._subscription = self._subscription, None
            executor, self._executor = self._executor, None
        if subscription is not None:
            subscription.unsubscribe()
        if executor is not None:
            executor.shutdown(wait=False, cancel_futures=True)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until live commitments received so far are merged."""
        with self._lock:
            executor = self._executor
        if executor is None:
            return
        marker: Future[None] = executor.submit(lambda: None)
        marker.result(timeout=timeout)

    def rows(self) -> List[MergedRow]:
        with self._lock:
            return list(self._rows)

    def devices(self) -> List[str]:
        """Device ids present in the view, most recently seen first."""
        ordered: dict[str, None] = {}
        for row in self.rows():
            ordered.setdefault(row.device_id, None)
        return list(ordered)

    def view(
        self,
        device: str = ALL_DEVICES,
        window_hours: float = 6,
        now: Optional[float] = None,
    ) -> WindowedView:
        """Filter rows by device and by a trailing ``device_ts`` window."""
        selected = ALL_DEVICES if device == ALL_DEVICES else normalize_device_id(device)
        current = time.time() if now is None else now
        min_ts = current - window_hours * 3600
        table = [
            row
            for row in self.rows()
            if (selected == ALL_DEVICES or row.device_id == selected) and row.device_ts >= min_ts
        ]
        chart = sorted(table, key=lambda row: row.device_ts)
        return WindowedView(
            device=selected,
            window_hours=window_hours,
            chart=chart,
            table=table,
            summary=self.aggregator.aggregate(chart),
        )

    def _load_history(self) -> None:
        commitments = self.log_client.backfill(0, LATEST)
        newest = sorted(
            commitments, key=lambda item: (item.block_ts, item.block), reverse=True
        )[: self.working_set]

        with self._lock:
            pending = [item for item in newest if item.data_hash not in self._seen]
        candidates = [(item, self._safe_lookup(item.data_hash)) for item in pending]

        merged = 0
        with self._lock:
            for commitment, record in candidates:
                if not self._claim(commitment.data_hash):
                    continue
                self._rows.append(self._merge(commitment, record))
                merged += 1
            self._history_loaded = True
            self._trim()
        logger.info(
            "Reconciled ledger history",
            extra={"record_count": merged, "block": len(commitments)},
        )

    def _on_commitment(self, commitment: Commitment) -> None:
        with self._lock:
            executor = self._executor
            if executor is None or not self._claim(commitment.data_hash):
                return
        executor.submit(self._merge_live, commitment)

    def _merge_live(self, commitment: Commitment) -> None:
        record = self._lookup_with_retry(commitment)
        row = self._merge(commitment, record)
        with self._lock:
            self._rows.appendleft(row)
            self._trim()
        logger.debug(
            "Merged live commitment",
            extra={"data_hash": commitment.data_hash, "seq": commitment.seq, "status": row.status},
        )

    def _lookup_with_retry(self, commitment: Commitment) -> Optional[CacheRecord]:
        # The cache write can land slightly after the ledger event.
        for attempt in range(1, self.lookup_attempts + 1):
            record = self._safe_lookup(commitment.data_hash)
            if record is not None:
                return record
            if attempt < self.lookup_attempts:
                logger.debug(
                    "Plaintext not cached yet",
                    extra={"data_hash": commitment.data_hash, "attempt": attempt},
                )
                self._sleep(self.retry_delay)
        return None

    def _safe_lookup(self, data_hash: str) -> Optional[CacheRecord]:
        """Run ``lookup``; a failing lookup counts as a cache miss."""
        try:
            return self.lookup(data_hash)
        except Exception:
            logger.exception("Plaintext lookup failed", extra={"data_hash": data_hash})
            return None

    def _claim(self, data_hash: str) -> bool:
        """Record ``data_hash`` as shown. Must be called with lock held."""
        key = normalize_hash(data_hash)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def _trim(self) -> None:
        """Drop the oldest rows beyond ``max_rows``. Must be called with lock held.

        Once history is loaded only live commitments arrive, so a trimmed hash
        can leave the seen-set and the set stays bounded by ``max_rows``.
        """
        while len(self._rows) > self.max_rows:
            dropped = self._rows.pop()
            if self._history_loaded:
                self._seen.discard(normalize_hash(dropped.data_hash))

    @staticmethod
    def _merge(commitment: Commitment, record: Optional[CacheRecord]) -> MergedRow:
        if record is None:
            return MergedRow(commitment=commitment, status=STATUS_REDACTED)
        if not verify(record.reading(), commitment.data_hash):
            logger.warning(
                "Cached plaintext does not match its commitment",
                extra={"data_hash": commitment.data_hash, "device_id": commitment.device_id},
            )
            return MergedRow(commitment=commitment, status=STATUS_MISMATCH)
        return MergedRow(
            commitment=commitment,
            status=STATUS_VERIFIED,
            temp_cx10=record.temp_cx10,
            hum_pct_x10=record.hum_pct_x10,
            lux=record.lux,
            rain=record.rain,
        )


@lru_cache
def build_default_reconciler() -> Reconciler:
    """Factory that wires the reconciler with the default cache and ledger."""
    settings = get_settings()
    cache = build_default_cache()
    log_client = CommitmentLogClient(build_default_ledger())
    return Reconciler(
        log_client=log_client,
        lookup=cache.get,
        working_set=settings.reconciler_working_set,
        max_rows=settings.reconciler_max_rows,
    )
