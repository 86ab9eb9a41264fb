"""In-process append-only commitment ledger.

Stands in for the on-chain sensor registry: it accepts single and batch
commitment writes, assigns per-device sequence numbers and block times, and
serves range queries plus live notifications in append order.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict
from functools import lru_cache
from pathlib import Path
from threading import RLock
from typing import Callable, Dict, List, Optional, Sequence

from models.errors import LedgerError
from models.records import Commitment
from services.encoding import normalize_device_id, normalize_hash
from settings import get_settings

logger = logging.getLogger(__name__)

CommitmentCallback = Callable[[Commitment], None]


class MockLedger:

    def __init__(
        self,
        name: str,
        submitter: str = "gateway",
        persistence_path: Optional[Path] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.submitter = submitter
        self.persistence_path = persistence_path
        self._clock = clock
        self._entries: List[Commitment] = []
        self._next_seq: Dict[str, int] = {}
        self._watchers: Dict[int, CommitmentCallback] = {}
        self._watcher_ids = 0
        # Reentrant so a watcher may query the ledger from its callback.
        self._lock = RLock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_existing_entries()

    def submit_reading(
        self, device_id: str, data_hash: str, device_ts: int, sensor_mask: int
    ) -> str:
        """Append one commitment and return the write identifier."""
        return self.submit_batch(device_id, [data_hash], [device_ts], [sensor_mask])

    def submit_batch(
        self,
        device_id: str,
        data_hashes: Sequence[str],
        device_timestamps: Sequence[int],
        sensor_masks: Sequence[int],
    ) -> str:
        """Append several commitments for one device as a single write."""
        count = len(data_hashes)
        if count == 0:
            raise LedgerError("Batch must contain at least one commitment.")
        if count != len(device_timestamps) or count != len(sensor_masks):
            raise LedgerError("Batch arrays must have equal length.")
        try:
            device = normalize_device_id(device_id)
        except ValueError as exc:
            raise LedgerError(f"Invalid device id: {exc}") from exc

        tx = "0x" + hashlib.sha3_256(uuid.uuid4().bytes).hexdigest()
        with self._lock:
            block_ts = int(self._clock())
            appended: List[Commitment] = []
            seq = self._next_seq.get(device, 0)
            for data_hash, device_ts, mask in zip(data_hashes, device_timestamps, sensor_masks):
                seq += 1
                appended.append(
                    Commitment(
                        data_hash=normalize_hash(data_hash),
                        device_id=device,
                        seq=seq,
                        device_ts=int(device_ts),
                        block_ts=block_ts,
                        sensor_mask=int(mask),
                        submitter=self.submitter,
                        block=len(self._entries) + len(appended),
                        tx=tx,
                    )
                )
            self._append_to_disk(appended)
            self._entries.extend(appended)
            self._next_seq[device] = seq
            for commitment in appended:
                logger.debug(
                    "Commitment appended",
                    extra={
                        "data_hash": commitment.data_hash,
                        "seq": commitment.seq,
                        "block": commitment.block,
                        "tx": tx,
                    },
                )
                self._notify(commitment)
        return tx

    def query_commitments(
        self, from_block: int = 0, to_block: Optional[int] = None
    ) -> List[Commitment]:
        """Return commitments with ``from_block <= block <= to_block``."""
        if from_block < 0:
            raise LedgerError(f"Invalid block range start: {from_block}")
        with self._lock:
            end = len(self._entries) if to_block is None else min(to_block + 1, len(self._entries))
            return list(self._entries[from_block:end])

    def watch(self, callback: CommitmentCallback) -> Callable[[], None]:
        """Register ``callback`` for every future commitment.

        Returns a function that stops the notifications; calling it more than
        once has no further effect.
        """
        with self._lock:
            self._watcher_ids += 1
            watcher_id = self._watcher_ids
            self._watchers[watcher_id] = callback

        def unwatch() -> None:
            with self._lock:
                self._watchers.pop(watcher_id, None)

        return unwatch

    def head(self) -> int:
        """Number of commitments appended so far."""
        with self._lock:
            return len(self._entries)

    def _notify(self, commitment: Commitment) -> None:
        for callback in list(self._watchers.values()):
            callback(commitment)

    def _append_to_disk(self, commitments: Sequence[Commitment]) -> None:
        if not self.persistence_path:
            return
        lines = "".join(json.dumps(asdict(item), sort_keys=True) + "\n" for item in commitments)
        try:
            with self.persistence_path.open("a", encoding="utf-8") as handle:
                handle.write(lines)
        except OSError as exc:
            raise LedgerError(f"Ledger {self.name!r} could not persist write: {exc}") from exc

    def _load_existing_entries(self) -> None:
        assert self.persistence_path is not None
        if not self.persistence_path.exists():
            return
        with self.persistence_path.open("r", encoding="utf-8") as handle:
            for line_number, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    commitment = Commitment(**json.loads(line))
                except (TypeError, ValueError) as exc:
                    raise LedgerError(
                        f"Corrupt ledger entry at {self.persistence_path}:{line_number}"
                    ) from exc
                self._entries.append(commitment)
                self._next_seq[commitment.device_id] = max(
                    self._next_seq.get(commitment.device_id, 0), commitment.seq
                )
        logger.info(
            "Replayed ledger",
            extra={"path": str(self.persistence_path), "record_count": len(self._entries)},
        )


@lru_cache
def build_default_ledger(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> MockLedger:
    settings = get_settings()
    ledger_name = settings.ledger_name if name is None else name
    ledger_path = settings.ledger_persistence_path if path is None else path
    persistence = Path(ledger_path) if ledger_path else None
    return MockLedger(
        name=ledger_name,
        submitter=settings.ledger_submitter,
        persistence_path=persistence,
    )
