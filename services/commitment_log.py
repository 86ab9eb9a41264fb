"""Read-side client over the commitment ledger."""

from __future__ import annotations

import logging
from dataclasses import replace
from threading import Lock
from typing import Callable, List, Optional, Protocol, Union

from models.records import Commitment
from services.encoding import normalize_device_id, normalize_hash

logger = logging.getLogger(__name__)

CommitmentHandler = Callable[[Commitment], None]

LATEST = "latest"


class LedgerReader(Protocol):
    def query_commitments(
        self, from_block: int = 0, to_block: Optional[int] = None
    ) -> List[Commitment]: ...

    def watch(self, callback: CommitmentHandler) -> Callable[[], None]: ...


class Subscription:
    """Handle for a live commitment feed."""

    def __init__(self, on_close: Callable[["Subscription"], None]) -> None:
        self._unwatch: Optional[Callable[[], None]] = None
        self._on_close = on_close
        self._active = True
        self._lock = Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop delivering commitments. Safe to call repeatedly."""
        with self._lock:
            if not self._active:
                return
            self._active = False
        if self._unwatch is not None:
            self._unwatch()
        self._on_close(self)

    def _attach(self, unwatch: Callable[[], None]) -> None:
        self._unwatch = unwatch


def _canonical(commitment: Commitment) -> Commitment:
    return replace(
        commitment,
        data_hash=normalize_hash(commitment.data_hash),
        device_id=normalize_device_id(commitment.device_id),
    )


class CommitmentLogClient:
    """Historical range queries and live subscriptions over a ledger.

    Commitments are returned in the order the ledger reports them; the client
    never re-sorts or invents an order of its own.
    """

    def __init__(self, reader: LedgerReader) -> None:
        self._reader = reader
        self._subscriptions: set[Subscription] = set()
        self._lock = Lock()

    def backfill(
        self, from_seq: int = 0, to_seq: Union[int, str, None] = LATEST
    ) -> List[Commitment]:
        """One-shot query for commitments between two ledger positions."""
        if to_seq is None or to_seq == LATEST:
            upper: Optional[int] = None
        elif isinstance(to_seq, int):
            upper = to_seq
        else:
            raise ValueError(f"Unsupported range end: {to_seq!r}")
        if upper is not None and upper < from_seq:
            return []
        commitments = self._reader.query_commitments(from_seq, upper)
        logger.debug(
            "Backfilled commitments",
            extra={"block": from_seq, "record_count": len(commitments)},
        )
        return [_canonical(item) for item in commitments]

    def subscribe(self, handler: CommitmentHandler) -> Subscription:
        """Invoke ``handler`` for every commitment appended from now on."""
        subscription = Subscription(self._forget)

        def deliver(commitment: Commitment) -> None:
            if not subscription.active:
                return
            try:
                handler(_canonical(commitment))
            except Exception:  # noqa: BLE001 - one bad handler must not stop the feed
                logger.exception(
                    "Commitment handler failed",
                    extra={"data_hash": commitment.data_hash, "seq": commitment.seq},
                )

        subscription._attach(self._reader.watch(deliver))
        with self._lock:
            self._subscriptions.add(subscription)
        return subscription

    def close(self) -> None:
        """Unsubscribe every live subscription created by this client."""
        with self._lock:
            live = list(self._subscriptions)
        for subscription in live:
            subscription.unsubscribe()

    def _forget(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)

