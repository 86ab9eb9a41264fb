from __future__ import annotations

from typing import Iterable

from datastore.reading_cache import build_default_cache
from services.ingestion import build_default_ingestion
from services.reconciler import build_default_reconciler
from settings import get_settings
from storage.mock_ledger import build_default_ledger


def _clear_caches(caches: Iterable) -> None:
    for cache in caches:
        cache.cache_clear()


def test_environment_overrides_apply(monkeypatch, tmp_path) -> None:
    cache_path = tmp_path / "db.json"
    ledger_path = tmp_path / "ledger.jsonl"

    monkeypatch.setenv("GATEWAY_CACHE_PATH", str(cache_path))
    monkeypatch.setenv("GATEWAY_CACHE_CAPACITY", "25")
    monkeypatch.setenv("GATEWAY_SAVE_DELAY_MS", "10")
    monkeypatch.setenv("LEDGER_NAME", "custom-registry")
    monkeypatch.setenv("LEDGER_PERSISTENCE_PATH", str(ledger_path))
    monkeypatch.setenv("RECONCILER_WORKING_SET", "40")
    monkeypatch.setenv("RECONCILER_MAX_ROWS", "80")

    caches = (
        get_settings,
        build_default_cache,
        build_default_ledger,
        build_default_reconciler,
        build_default_ingestion,
    )
    _clear_caches(caches)

    cache = build_default_cache()
    ledger = build_default_ledger()
    reconciler = build_default_reconciler()
    ingestion = build_default_ingestion()

    try:
        assert cache.persistence_path == cache_path
        assert cache.capacity == 25
        assert cache.save_delay == 0.01
        assert ledger.name == "custom-registry"
        assert ledger.persistence_path == ledger_path
        assert reconciler.working_set == 40
        assert reconciler.max_rows == 80
        assert ingestion.cache is cache
        assert ingestion.ledger is ledger
    finally:
        reconciler.stop()
        cache.close()
        _clear_caches(caches)


def test_invalid_values_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("GATEWAY_CACHE_CAPACITY", "-3")
    monkeypatch.setenv("RECONCILER_WORKING_SET", "lots")
    monkeypatch.setenv("LEDGER_PERSISTENCE_PATH", "  ")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    get_settings.cache_clear()

    try:
        settings = get_settings()
        assert settings.cache_capacity == 2000
        assert settings.reconciler_working_set == 600
        assert settings.ledger_persistence_path is None
        assert settings.log_level == "DEBUG"
    finally:
        get_settings.cache_clear()
