"""HTTP route definitions for the gateway."""

from __future__ import annotations

import csv
import io
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from app.schemas import (
    BatchPayload,
    BatchSubmitResponse,
    CacheRecord,
    FieldStats,
    HealthResponse,
    ReadingPayload,
    ReadingResponse,
    RecentResponse,
    SubmitResponse,
    ViewResponse,
    ViewRow,
    ViewStats,
)
from datastore.reading_cache import ReadingCache, build_default_cache
from models.errors import EncodingError, LedgerError
from services.aggregator import FieldSummary
from services.ingestion import IngestionService, build_default_ingestion
from services.reconciler import ALL_DEVICES, Reconciler, build_default_reconciler

logger = logging.getLogger(__name__)

RECENT_DEFAULT = 100
RECENT_MAX = 1000
EXPORT_DEFAULT = 1000
EXPORT_MAX = 5000

CSV_HEADER = (
    "dataHash",
    "deviceId",
    "deviceTs",
    "blockTs",
    "sensorMask",
    "tempCx10",
    "humPctx10",
    "lux",
    "rain",
)

router = APIRouter()


def get_cache() -> ReadingCache:
    return build_default_cache()


def get_ingestion() -> IngestionService:
    return build_default_ingestion()


def get_reconciler() -> Reconciler:
    return build_default_reconciler()


def _csv_row(record: CacheRecord) -> list:
    return [
        record.data_hash,
        record.device_id,
        record.device_ts,
        "" if record.block_ts is None else record.block_ts,
        record.sensor_mask,
        record.temp_cx10,
        record.hum_pct_x10,
        record.lux,
        1 if record.rain else 0,
    ]


def _field_stats(summary: FieldSummary) -> FieldStats:
    return FieldStats(last=summary.last, mean=summary.mean, max=summary.max)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> HealthResponse:
    return HealthResponse()


@router.get(
    "/reading/{data_hash}",
    response_model=ReadingResponse,
    summary="Fetch the cached plaintext for a digest.",
)
async def get_reading(
    data_hash: str,
    cache: ReadingCache = Depends(get_cache),
) -> ReadingResponse:
    record = cache.get(data_hash)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Reading {data_hash!r} not found.",
        )
    return ReadingResponse(reading=record)


@router.get(
    "/recent",
    response_model=RecentResponse,
    summary="Most recently cached readings, newest first.",
)
async def recent_readings(
    limit: int = Query(RECENT_DEFAULT, ge=0),
    cache: ReadingCache = Depends(get_cache),
) -> RecentResponse:
    return RecentResponse(items=cache.recent(min(limit, RECENT_MAX)))


@router.get(
    "/export.csv",
    summary="Export cached readings as CSV, newest first.",
    response_class=Response,
)
async def export_csv(
    limit: int = Query(EXPORT_DEFAULT, ge=0),
    cache: ReadingCache = Depends(get_cache),
) -> Response:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for record in cache.recent(min(limit, EXPORT_MAX)):
        writer.writerow(_csv_row(record))
    return Response(content=buffer.getvalue(), media_type="text/csv; charset=utf-8")


@router.post(
    "/reading",
    response_model=SubmitResponse,
    summary="Commit a single reading to the ledger and cache its plaintext.",
)
def submit_reading(
    payload: ReadingPayload,
    ingestion: IngestionService = Depends(get_ingestion),
) -> SubmitResponse:
    try:
        result = ingestion.submit_reading(payload.reading())
    except EncodingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except LedgerError as exc:
        logger.error("Ledger write failed: %s", exc, extra={"device_id": payload.device_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    return SubmitResponse(tx=result.tx, data_hash=result.data_hash)


@router.post(
    "/readings",
    response_model=BatchSubmitResponse,
    summary="Commit a batch of readings from one device in a single write.",
)
def submit_readings(
    payload: BatchPayload,
    ingestion: IngestionService = Depends(get_ingestion),
) -> BatchSubmitResponse:
    readings = [item.to_reading(payload.device_id) for item in payload.items]
    try:
        result = ingestion.submit_batch(payload.device_id, readings)
    except EncodingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except LedgerError as exc:
        logger.error("Ledger batch write failed: %s", exc, extra={"device_id": payload.device_id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
        ) from exc
    return BatchSubmitResponse(tx=result.tx, hashes=result.hashes)


@router.get(
    "/view",
    response_model=ViewResponse,
    summary="Reconciled ledger view filtered by device and time window.",
)
async def reconciled_view(
    device: str = Query(ALL_DEVICES),
    window: float = Query(6.0, gt=0, description="Trailing window in hours."),
    reconciler: Reconciler = Depends(get_reconciler),
) -> ViewResponse:
    try:
        windowed = reconciler.view(device=device, window_hours=window)
    except EncodingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    summary = windowed.summary
    return ViewResponse(
        device=windowed.device,
        window_hours=windowed.window_hours,
        devices=reconciler.devices(),
        rows=[ViewRow.from_row(row) for row in windowed.table],
        chart=[ViewRow.from_row(row) for row in windowed.chart],
        stats=ViewStats(
            row_count=summary.row_count,
            temperature_c=_field_stats(summary.temperature_c),
            humidity_pct=_field_stats(summary.humidity_pct),
            lux=_field_stats(summary.lux),
            rain_ratio=summary.rain_ratio,
        ),
    )
