from __future__ import annotations

import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_reading, render_rows, render_view

DEFAULT_DEVICE_ID = "0x" + "aa" * 16


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for interacting with the sensor ledger gateway.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


def random_reading(device_id: str, now: Optional[float] = None) -> Dict[str, Any]:
    """A plausible weather-station reading with all three sensors present."""
    return {
        "deviceId": device_id,
        "deviceTs": int(time.time() if now is None else now),
        "tempCx10": round(random.uniform(18, 35) * 10),
        "humPctx10": round(random.uniform(30, 95) * 10),
        "lux": round(random.uniform(50, 80000)),
        "rain": random.random() < 0.2,
        "sensorMask": 7,
    }


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="Gateway base URL (defaults to GATEWAY_URL env or http://localhost:3001).",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="HTTP timeout in seconds.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(base_url=base_url, timeout=timeout)
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("submit")
def submit_command(
    ctx: typer.Context,
    device_id: str = typer.Option(DEFAULT_DEVICE_ID, "--device-id", help="16-byte hex device id."),
    device_ts: Optional[int] = typer.Option(None, "--device-ts", help="Epoch seconds (default: now)."),
    temp: int = typer.Option(..., "--temp", help="Temperature in tenths of a degree C."),
    hum: int = typer.Option(..., "--hum", help="Relative humidity in tenths of a percent."),
    lux: int = typer.Option(..., "--lux", help="Illuminance in lux."),
    rain: bool = typer.Option(False, "--rain/--no-rain", help="Rain detected."),
    sensor_mask: int = typer.Option(7, "--sensor-mask", help="Bit flags of sensors present."),
) -> None:
    """Submit a single reading."""
    state = _get_state(ctx)
    payload = {
        "deviceId": device_id,
        "deviceTs": int(time.time()) if device_ts is None else device_ts,
        "tempCx10": temp,
        "humPctx10": hum,
        "lux": lux,
        "rain": rain,
        "sensorMask": sensor_mask,
    }
    result = state.client.submit_reading(payload)
    typer.secho(
        f"Reading committed. tx={result.get('tx')} dataHash={result.get('dataHash')}",
        fg=typer.colors.GREEN,
    )


@app.command("get")
def get_command(
    ctx: typer.Context,
    data_hash: str = typer.Argument(..., help="Digest returned by submit."),
) -> None:
    """Show the cached plaintext for a digest."""
    state = _get_state(ctx)
    render_reading(state.client.get_reading(data_hash))


@app.command("recent")
def recent_command(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of readings."),
) -> None:
    """List the most recently cached readings."""
    state = _get_state(ctx)
    render_rows(state.client.recent(limit))


@app.command("export")
def export_command(
    ctx: typer.Context,
    limit: int = typer.Option(1000, "--limit", "-n", min=1, help="Number of readings."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", dir_okay=False, help="Write CSV here."),
) -> None:
    """Export cached readings as CSV."""
    state = _get_state(ctx)
    content = state.client.export_csv(limit)
    if output is None:
        typer.echo(content)
        return
    output.write_text(content, encoding="utf-8")
    typer.echo(f"Wrote {max(len(content.splitlines()) - 1, 0)} readings to {output}")


@app.command("view")
def view_command(
    ctx: typer.Context,
    device: str = typer.Option("all", "--device", "-d", help="Device id or 'all'."),
    window: float = typer.Option(6.0, "--window", "-w", min=0.01, help="Trailing window in hours."),
) -> None:
    """Show the reconciled ledger view with window statistics."""
    state = _get_state(ctx)
    render_view(state.client.view(device, window))


@app.command("simulate")
def simulate_command(
    ctx: typer.Context,
    count: int = typer.Option(10, "--count", "-c", min=1, help="Readings to send."),
    interval: Optional[float] = typer.Option(None, "--interval", min=0.0, help="Seconds between readings."),
    device_id: str = typer.Option(DEFAULT_DEVICE_ID, "--device-id", help="16-byte hex device id."),
) -> None:
    """Send random readings the way a field device would."""
    state = _get_state(ctx)
    delay = state.config.simulate_interval if interval is None else interval
    for index in range(count):
        result = state.client.submit_reading(random_reading(device_id))
        typer.echo(f"OK {result.get('dataHash')} tx={result.get('tx')}")
        if delay and index < count - 1:
            time.sleep(delay)
