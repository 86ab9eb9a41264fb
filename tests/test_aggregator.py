"""Unit tests for the window statistics."""

from __future__ import annotations

from typing import Optional

import pytest

from models.records import Commitment, MergedRow
from services.aggregator import Aggregator


def _row(
    device_ts: int,
    temp: Optional[int] = None,
    hum: Optional[int] = None,
    lux: Optional[int] = None,
    rain: Optional[bool] = None,
) -> MergedRow:
    """Helper to build deterministic merged rows."""
    commitment = Commitment(
        data_hash=f"0x{device_ts:064x}",
        device_id="0x" + "aa" * 16,
        seq=device_ts,
        device_ts=device_ts,
        block_ts=device_ts,
        sensor_mask=7,
        submitter="gateway",
    )
    status = "verified" if temp is not None else "redacted"
    return MergedRow(commitment=commitment, status=status, temp_cx10=temp, hum_pct_x10=hum, lux=lux, rain=rain)


def test_aggregate_empty_iterable_returns_default_summary() -> None:
    aggregator = Aggregator()

    summary = aggregator.aggregate([])

    assert summary.row_count == 0
    assert summary.temperature_c.last is None
    assert summary.temperature_c.mean is None
    assert summary.lux.max is None
    assert summary.rain_ratio is None


def test_aggregate_computes_statistics() -> None:
    aggregator = Aggregator()
    rows = [
        _row(1, temp=200, hum=500, lux=100, rain=False),
        _row(2, temp=300, hum=700, lux=900, rain=True),
        _row(3, temp=250, hum=600, lux=400, rain=False),
    ]

    summary = aggregator.aggregate(rows)

    assert summary.row_count == 3
    assert summary.temperature_c.last == 25.0
    assert summary.temperature_c.mean == pytest.approx(25.0)
    assert summary.temperature_c.max == 30.0
    assert summary.humidity_pct.mean == pytest.approx(60.0)
    assert summary.lux.max == 900
    assert summary.lux.last == 400
    assert summary.rain_ratio == pytest.approx(1 / 3)


def test_missing_fields_are_excluded_not_zeroed() -> None:
    aggregator = Aggregator()
    rows = [
        _row(1, temp=200, hum=500, lux=100, rain=True),
        _row(2),
    ]

    summary = aggregator.aggregate(rows)

    assert summary.row_count == 2
    assert summary.temperature_c.last == 20.0
    assert summary.temperature_c.mean == 20.0
    assert summary.lux.last == 100
    assert summary.rain_ratio == 1.0
