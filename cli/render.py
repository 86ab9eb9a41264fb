from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import typer

from models.records import describe_sensor_mask


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _scaled(value: Optional[int]) -> str:
    return "-" if value is None else f"{value / 10:.1f}"


def _rain(value: Optional[bool]) -> str:
    if value is None:
        return "-"
    return "yes" if value else "no"


def _timestamp(value: Optional[int]) -> str:
    if value is None:
        return "-"
    return datetime.fromtimestamp(int(value), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ")


def _number(value: Optional[float], digits: int = 1) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def render_reading(reading: Dict[str, Any]) -> None:
    echo_heading("Reading")
    echo_key_values(
        [
            ("dataHash", reading.get("dataHash")),
            ("deviceId", reading.get("deviceId")),
            ("deviceTs", f"{reading.get('deviceTs')} ({_timestamp(reading.get('deviceTs'))})"),
            ("sensors", describe_sensor_mask(int(reading.get("sensorMask") or 0))),
            ("temperature_c", _scaled(reading.get("tempCx10"))),
            ("humidity_pct", _scaled(reading.get("humPctx10"))),
            ("lux", reading.get("lux")),
            ("rain", _rain(reading.get("rain"))),
            ("tx", reading.get("tx") or "-"),
        ]
    )


def render_rows(rows: Iterable[Dict[str, Any]]) -> None:
    rows = list(rows)
    if not rows:
        typer.echo("No readings.")
        return
    for row in rows:
        typer.echo(
            " | ".join(
                [
                    str(row.get("dataHash", ""))[:12],
                    str(row.get("deviceId", "")),
                    _timestamp(row.get("deviceTs")),
                    f"{_scaled(row.get('tempCx10'))} C",
                    f"{_scaled(row.get('humPctx10'))} %",
                    f"{row.get('lux') if row.get('lux') is not None else '-'} lx",
                    f"rain={_rain(row.get('rain'))}",
                    str(row.get("status", "")),
                ]
            ).rstrip(" |")
        )


def render_view(payload: Dict[str, Any]) -> None:
    echo_heading(f"View device={payload.get('device')} window={payload.get('window_hours')}h")
    stats = payload.get("stats") or {}
    temp = stats.get("temperature_c") or {}
    hum = stats.get("humidity_pct") or {}
    lux = stats.get("lux") or {}
    rain_ratio = stats.get("rain_ratio")
    echo_key_values(
        [
            ("points", stats.get("row_count", 0)),
            ("temp last/avg (C)", f"{_number(temp.get('last'))} / {_number(temp.get('mean'))}"),
            ("hum last/avg (%)", f"{_number(hum.get('last'))} / {_number(hum.get('mean'))}"),
            ("lux last/max", f"{_number(lux.get('last'), 0)} / {_number(lux.get('max'), 0)}"),
            ("rain ratio", "-" if rain_ratio is None else f"{rain_ratio * 100:.0f}%"),
        ]
    )
    typer.echo()
    echo_heading("Rows")
    render_rows(payload.get("rows") or [])
