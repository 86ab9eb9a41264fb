"""Domain models shared across services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

SENSOR_TEMP_HUM = 0x01
SENSOR_LIGHT = 0x02
SENSOR_RAIN = 0x04


@dataclass(frozen=True, slots=True)
class Reading:
    """A plaintext sensor reading as produced by a field device."""

    device_id: str
    device_ts: int
    temp_cx10: int
    hum_pct_x10: int
    lux: int
    rain: bool
    sensor_mask: int


@dataclass(frozen=True, slots=True)
class Commitment:
    """An immutable ledger entry binding a digest to device metadata."""

    data_hash: str
    device_id: str
    seq: int
    device_ts: int
    block_ts: int
    sensor_mask: int
    submitter: str
    block: int = 0
    tx: Optional[str] = None


@dataclass(frozen=True, slots=True)
class MergedRow:
    """A commitment joined with its plaintext, when one could be verified."""

    commitment: Commitment
    status: str
    temp_cx10: Optional[int] = None
    hum_pct_x10: Optional[int] = None
    lux: Optional[int] = None
    rain: Optional[bool] = None

    @property
    def data_hash(self) -> str:
        return self.commitment.data_hash

    @property
    def device_id(self) -> str:
        return self.commitment.device_id

    @property
    def device_ts(self) -> int:
        return self.commitment.device_ts

    @property
    def block_ts(self) -> int:
        return self.commitment.block_ts

    @property
    def seq(self) -> int:
        return self.commitment.seq


def describe_sensor_mask(mask: int) -> str:
    """Human readable list of the sensors flagged in ``mask``."""
    names = []
    if mask & SENSOR_TEMP_HUM:
        names.append("temp/humidity")
    if mask & SENSOR_LIGHT:
        names.append("light")
    if mask & SENSOR_RAIN:
        names.append("rain")
    return " + ".join(names) or "-"
