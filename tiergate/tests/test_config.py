"""Tests for settings validation and container wiring."""
import json
import logging

import pytest

from tiergate.core.config import Settings, validate_config
from tiergate.core.container import build_container
from tiergate.core.errors import MisconfiguredCatalog
from tiergate.features.catalog.service import DEFAULT_CATALOG


def test_defaults(memory_settings):
    assert memory_settings.USAGE_WARNING_THRESHOLD == 75.0
    assert memory_settings.USAGE_CRITICAL_THRESHOLD == 90.0
    assert memory_settings.PROMPT_DISMISS_COOLDOWN_HOURS == 24.0
    assert memory_settings.PROMPTS_ENABLED is True
    assert validate_config(settings_obj=memory_settings)


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("USAGE_WARNING_THRESHOLD", "60")
    monkeypatch.setenv("PROMPTS_ENABLED", "false")
    cfg = Settings(_env_file=None)
    assert cfg.USAGE_WARNING_THRESHOLD == 60.0
    assert cfg.PROMPTS_ENABLED is False


def test_threshold_order_strict():
    cfg = Settings(_env_file=None, USAGE_WARNING_THRESHOLD=95, USAGE_CRITICAL_THRESHOLD=90)
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=cfg)


def test_threshold_order_warns(caplog):
    cfg = Settings(_env_file=None, USAGE_WARNING_THRESHOLD=95, USAGE_CRITICAL_THRESHOLD=90)
    with caplog.at_level(logging.WARNING, logger="tiergate"):
        assert validate_config(strict=False, settings_obj=cfg) is False
    assert any("thresholds" in r.getMessage() for r in caplog.records)


def test_missing_catalog_file_is_reported(tmp_path):
    cfg = Settings(_env_file=None, TIER_CATALOG_PATH=str(tmp_path / "missing.json"))
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=cfg)


def test_container_uses_memory_without_database(container):
    assert container.storage == "memory"
    assert container.engine.catalog is container.catalog
    assert container.tracker.warning_threshold == 75.0


def test_container_uses_sql_with_database(memory_settings, tmp_path):
    from tiergate.core.database import dispose_engine

    container = build_container(memory_settings, database_url=f"sqlite:///{tmp_path}/wired.db")
    try:
        assert container.storage == "sql"
        container.directory.set_tier("u1", "team")
        assert container.directory.get_tier("u1").value == "team"
    finally:
        dispose_engine()


def test_container_loads_catalog_file(memory_settings, tmp_path):
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps(DEFAULT_CATALOG), encoding="utf-8")
    cfg = memory_settings.model_copy(update={"TIER_CATALOG_PATH": str(path)})
    assert build_container(cfg).catalog.limit_for("free", "monthly_scan") == 10


def test_container_fails_fast_on_bad_catalog(memory_settings, tmp_path):
    raw = json.loads(json.dumps(DEFAULT_CATALOG))
    raw["tiers"]["team"]["features"] = []
    path = tmp_path / "tiers.json"
    path.write_text(json.dumps(raw), encoding="utf-8")
    cfg = memory_settings.model_copy(update={"TIER_CATALOG_PATH": str(path)})
    with pytest.raises(MisconfiguredCatalog):
        build_container(cfg)
