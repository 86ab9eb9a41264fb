from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
import typer

from app.schemas import CacheRecord
from cli.config import CLIConfig
from services.encoding import normalize_hash

logger = logging.getLogger(__name__)


class ApiClient:
    """Minimal HTTP client for the gateway service."""

    def __init__(
        self, config: CLIConfig, transport: Optional[httpx.BaseTransport] = None
    ) -> None:
        self._config = config
        self._client = httpx.Client(
            base_url=config.base_url, timeout=config.timeout, transport=transport
        )

    def close(self) -> None:
        self._client.close()

    def submit_reading(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self._client.post("/reading", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def get_reading(self, data_hash: str) -> Dict[str, Any]:
        try:
            response = self._client.get(f"/reading/{normalize_hash(data_hash)}")
            if response.status_code == 404:
                raise typer.BadParameter(f"Reading {data_hash} was not found.")
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()["reading"]

    def recent(self, limit: int) -> List[Dict[str, Any]]:
        try:
            response = self._client.get("/recent", params={"limit": limit})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json().get("items", [])

    def export_csv(self, limit: int) -> str:
        try:
            response = self._client.get("/export.csv", params={"limit": limit})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.text

    def view(self, device: str, window: float) -> Dict[str, Any]:
        try:
            response = self._client.get("/view", params={"device": device, "window": window})
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        return response.json()

    def fetch_record(self, data_hash: str) -> Optional[CacheRecord]:
        """Cache lookup over HTTP, usable as a reconciler ``lookup``.

        Any transport or server failure is reported as "not cached".
        """
        try:
            response = self._client.get(f"/reading/{normalize_hash(data_hash)}")
        except httpx.HTTPError as exc:
            logger.warning("Plaintext lookup failed: %s", exc, extra={"data_hash": data_hash})
            return None
        if response.status_code != 200:
            return None
        try:
            return CacheRecord.model_validate(response.json()["reading"])
        except (ValueError, KeyError, TypeError) as exc:
            # pydantic's ValidationError is a ValueError.
            logger.warning(
                "Unreadable plaintext response: %s", exc, extra={"data_hash": data_hash}
            )
            return None

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
