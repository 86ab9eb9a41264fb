"""Accept plaintext readings, commit their digests and cache the plaintext."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, List, Protocol, Sequence

from app.schemas import CacheRecord
from datastore.reading_cache import ReadingCache, build_default_cache
from models.errors import EncodingError
from models.records import Reading
from services.encoding import normalize_device_id, reading_hash
from storage.mock_ledger import build_default_ledger

logger = logging.getLogger(__name__)


class LedgerWriter(Protocol):
    def submit_reading(
        self, device_id: str, data_hash: str, device_ts: int, sensor_mask: int
    ) -> str: ...

    def submit_batch(
        self,
        device_id: str,
        data_hashes: Sequence[str],
        device_timestamps: Sequence[int],
        sensor_masks: Sequence[int],
    ) -> str: ...


@dataclass(frozen=True)
class SubmitResult:
    tx: str
    data_hash: str


@dataclass(frozen=True)
class BatchResult:
    tx: str
    hashes: List[str]


class IngestionService:
    """Coordinates digest computation, ledger writes and cache inserts."""

    def __init__(
        self,
        cache: ReadingCache,
        ledger: LedgerWriter,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.ledger = ledger
        self._clock = clock

    def submit_reading(self, reading: Reading) -> SubmitResult:
        """Commit one reading and cache it once the ledger confirms.

        Encoding and ledger errors propagate and leave the cache untouched.
        """
        data_hash = reading_hash(reading)
        tx = self.ledger.submit_reading(
            normalize_device_id(reading.device_id),
            data_hash,
            reading.device_ts,
            reading.sensor_mask,
        )
        record = CacheRecord.from_reading(
            reading, data_hash=data_hash, tx=tx, block_ts=int(self._clock())
        )
        self.cache.put(record)
        logger.info(
            "Reading committed",
            extra={"data_hash": data_hash, "device_id": record.device_id, "tx": tx},
        )
        return SubmitResult(tx=tx, data_hash=data_hash)

    def submit_batch(self, device_id: str, readings: Sequence[Reading]) -> BatchResult:
        """Commit several readings of one device as a single ledger write.

        The plaintext is cached before the ledger confirms, with ``tx`` left
        empty. A failed write leaves those records in place; the reconciler
        never shows them because no commitment references their digest.
        """
        if not readings:
            raise EncodingError("Batch must contain at least one reading.")
        device = normalize_device_id(device_id)
        for reading in readings:
            if normalize_device_id(reading.device_id) != device:
                raise EncodingError("All readings in a batch must share the batch deviceId.")

        hashes = [reading_hash(reading) for reading in readings]
        block_ts = int(self._clock())
        for reading, data_hash in zip(readings, hashes):
            self.cache.put(
                CacheRecord.from_reading(reading, data_hash=data_hash, tx=None, block_ts=block_ts)
            )

        try:
            tx = self.ledger.submit_batch(
                device,
                hashes,
                [reading.device_ts for reading in readings],
                [reading.sensor_mask for reading in readings],
            )
        except Exception:
            logger.warning(
                "Batch write failed; cached plaintext left unconfirmed",
                extra={"device_id": device, "record_count": len(hashes)},
            )
            raise
        logger.info(
            "Batch committed",
            extra={"device_id": device, "tx": tx, "record_count": len(hashes)},
        )
        return BatchResult(tx=tx, hashes=hashes)


@lru_cache
def build_default_ingestion() -> IngestionService:
    """Factory that wires ingestion with the default cache and ledger."""
    return IngestionService(cache=build_default_cache(), ledger=build_default_ledger())
