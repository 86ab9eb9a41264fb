"""Canonical reading encoding and digest computation.

The byte layout below is the binding between a plaintext reading and its
ledger commitment. Every stored commitment depends on it, so it must never
change:

    device_id    16 bytes
    device_ts     8 bytes  unsigned
    temp_cx10     2 bytes  signed
    hum_pct_x10   2 bytes  unsigned
    lux           4 bytes  unsigned
    rain          1 byte   0x00 / 0x01
    sensor_mask   1 byte   unsigned

All integers are big-endian, with no padding and no length prefixes.
"""

from __future__ import annotations

import hashlib
import string
import struct
from typing import Union

from models.errors import EncodingError
from models.records import Reading

_FIELDS = struct.Struct(">16sQhHI?B")
_HEX_DIGITS = frozenset(string.hexdigits)

_RANGES = {
    "device_ts": (0, 2**64 - 1),
    "temp_cx10": (-(2**15), 2**15 - 1),
    "hum_pct_x10": (0, 2**16 - 1),
    "lux": (0, 2**32 - 1),
    "sensor_mask": (0, 2**8 - 1),
}

ENCODED_SIZE = _FIELDS.size


def normalize_hash(value: str) -> str:
    """Return the canonical storage key for a digest.

    Applied wherever a hash crosses a boundary: cache keys, URL path
    parameters and ledger event payloads.
    """
    candidate = str(value).strip().lower()
    if not candidate.startswith("0x"):
        candidate = "0x" + candidate
    return candidate


def normalize_device_id(value: str) -> str:
    if not isinstance(value, str):
        raise EncodingError("deviceId must be a hex string")
    candidate = value.strip().lower()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 32 or not set(candidate) <= _HEX_DIGITS:
        raise EncodingError("deviceId must be 16 bytes of hex (32 hex digits)")
    return "0x" + candidate


def _check_int(name: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncodingError(f"{name} must be an integer")
    low, high = _RANGES[name]
    if not low <= value <= high:
        raise EncodingError(f"{name} out of range [{low}, {high}]: {value}")
    return value


def encode(reading: Reading) -> bytes:
    """Serialize ``reading`` into its canonical 34-byte form."""
    device_id = normalize_device_id(reading.device_id)
    if not isinstance(reading.rain, bool):
        raise EncodingError("rain must be a boolean")
    return _FIELDS.pack(
        bytes.fromhex(device_id[2:]),
        _check_int("device_ts", reading.device_ts),
        _check_int("temp_cx10", reading.temp_cx10),
        _check_int("hum_pct_x10", reading.hum_pct_x10),
        _check_int("lux", reading.lux),
        reading.rain,
        _check_int("sensor_mask", reading.sensor_mask),
    )


def digest(data: bytes) -> str:
    """SHA3-256 of ``data`` as a ``0x``-prefixed lowercase hex string."""
    return "0x" + hashlib.sha3_256(data).hexdigest()


def reading_hash(reading: Reading) -> str:
    return digest(encode(reading))


def verify(reading: Reading, data_hash: Union[str, None]) -> bool:
    """True when ``reading`` re-encodes to exactly ``data_hash``."""
    if not data_hash:
        return False
    try:
        return reading_hash(reading) == normalize_hash(data_hash)
    except EncodingError:
        return False
