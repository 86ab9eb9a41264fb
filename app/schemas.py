"""Pydantic schemas for the HTTP API layer and the cache snapshot."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.records import MergedRow, Reading
from services.encoding import normalize_device_id, normalize_hash


class ReadingFields(BaseModel):
    """Plaintext measurement fields shared by single and batch submissions."""

    model_config = ConfigDict(populate_by_name=True)

    device_ts: int = Field(..., alias="deviceTs", ge=0, le=2**64 - 1)
    temp_cx10: int = Field(..., alias="tempCx10", ge=-(2**15), le=2**15 - 1)
    hum_pct_x10: int = Field(..., alias="humPctx10", ge=0, le=2**16 - 1)
    lux: int = Field(..., ge=0, le=2**32 - 1)
    rain: bool
    sensor_mask: int = Field(..., alias="sensorMask", ge=0, le=2**8 - 1)

    def to_reading(self, device_id: str) -> Reading:
        return Reading(
            device_id=device_id,
            device_ts=self.device_ts,
            temp_cx10=self.temp_cx10,
            hum_pct_x10=self.hum_pct_x10,
            lux=self.lux,
            rain=self.rain,
            sensor_mask=self.sensor_mask,
        )


class ReadingPayload(ReadingFields):
    """A complete reading as submitted by a device."""

    device_id: str = Field(..., alias="deviceId", description="16-byte hex identifier.")

    @field_validator("device_id")
    @classmethod
    def _canonical_device_id(cls, value: str) -> str:
        return normalize_device_id(value)

    def reading(self) -> Reading:
        return self.to_reading(self.device_id)


class CacheRecord(ReadingPayload):
    """A reading stored in the cache under its digest. Never mutated."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    data_hash: str = Field(..., alias="dataHash")
    tx: Optional[str] = Field(default=None, description="Write that stored the record.")
    block_ts: Optional[int] = Field(default=None, alias="blockTs")

    @field_validator("data_hash")
    @classmethod
    def _canonical_hash(cls, value: str) -> str:
        return normalize_hash(value)

    @classmethod
    def from_reading(
        cls,
        reading: Reading,
        data_hash: str,
        tx: Optional[str] = None,
        block_ts: Optional[int] = None,
    ) -> "CacheRecord":
        return cls(
            device_id=reading.device_id,
            device_ts=reading.device_ts,
            temp_cx10=reading.temp_cx10,
            hum_pct_x10=reading.hum_pct_x10,
            lux=reading.lux,
            rain=reading.rain,
            sensor_mask=reading.sensor_mask,
            data_hash=data_hash,
            tx=tx,
            block_ts=block_ts,
        )


class BatchPayload(BaseModel):
    """Several readings from one device submitted as a single ledger write."""

    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(..., alias="deviceId")
    items: List[ReadingFields] = Field(..., min_length=1)

    @field_validator("device_id")
    @classmethod
    def _canonical_device_id(cls, value: str) -> str:
        return normalize_device_id(value)


class HealthResponse(BaseModel):
    ok: bool = True


class ReadingResponse(BaseModel):
    ok: bool = True
    reading: CacheRecord


class RecentResponse(BaseModel):
    ok: bool = True
    items: List[CacheRecord] = Field(default_factory=list)


class SubmitResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ok: bool = True
    tx: str
    data_hash: str = Field(..., alias="dataHash")


class BatchSubmitResponse(BaseModel):
    ok: bool = True
    tx: str
    hashes: List[str]


class ViewRow(BaseModel):
    """A reconciled row: ledger metadata plus plaintext when verified."""

    model_config = ConfigDict(populate_by_name=True)

    data_hash: str = Field(..., alias="dataHash")
    device_id: str = Field(..., alias="deviceId")
    seq: int
    device_ts: int = Field(..., alias="deviceTs")
    block_ts: int = Field(..., alias="blockTs")
    sensor_mask: int = Field(..., alias="sensorMask")
    submitter: str
    status: str
    temp_cx10: Optional[int] = Field(default=None, alias="tempCx10")
    hum_pct_x10: Optional[int] = Field(default=None, alias="humPctx10")
    lux: Optional[int] = None
    rain: Optional[bool] = None

    @classmethod
    def from_row(cls, row: MergedRow) -> "ViewRow":
        commitment = row.commitment
        return cls(
            data_hash=commitment.data_hash,
            device_id=commitment.device_id,
            seq=commitment.seq,
            device_ts=commitment.device_ts,
            block_ts=commitment.block_ts,
            sensor_mask=commitment.sensor_mask,
            submitter=commitment.submitter,
            status=row.status,
            temp_cx10=row.temp_cx10,
            hum_pct_x10=row.hum_pct_x10,
            lux=row.lux,
            rain=row.rain,
        )


class FieldStats(BaseModel):
    last: Optional[float] = None
    mean: Optional[float] = None
    max: Optional[float] = None


class ViewStats(BaseModel):
    row_count: int = Field(..., ge=0)
    temperature_c: FieldStats
    humidity_pct: FieldStats
    lux: FieldStats
    rain_ratio: Optional[float] = None


class ViewResponse(BaseModel):
    ok: bool = True
    device: str
    window_hours: float
    devices: List[str]
    rows: List[ViewRow]
    chart: List[ViewRow]
    stats: ViewStats
