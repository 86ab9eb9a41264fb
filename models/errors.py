"""Exception types raised across the gateway."""

from __future__ import annotations


class EncodingError(ValueError):
    """A reading is malformed and cannot be canonically encoded."""


class LedgerError(RuntimeError):
    """The ledger rejected a write or failed to answer a query."""
