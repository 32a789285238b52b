# tiergate/conftest.py
import os

import pytest
from fastapi.testclient import TestClient

from tiergate.core.config import Settings
from tiergate.core.container import build_container
from tiergate.core.database import dispose_engine, init_engine, reset_database
from tiergate.core.metrics import METRICS
from tiergate.features.access.service import AccessDecisionEngine
from tiergate.features.catalog.service import default_catalog
from tiergate.features.usage.service import QuotaTracker
from tiergate.features.usage.store import InMemoryCounterStore


@pytest.fixture(autouse=True)
def reset_metrics():
    METRICS.reset()
    yield


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def counters():
    return InMemoryCounterStore()


@pytest.fixture
def tracker(counters):
    return QuotaTracker(counters, warning_threshold=75, critical_threshold=90)


@pytest.fixture
def engine(catalog, tracker):
    return AccessDecisionEngine(catalog, tracker)


@pytest.fixture
def memory_settings(monkeypatch):
    """Settings with no database and built-in catalogs, ignoring any local .env."""
    monkeypatch.delenv("TEST_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return Settings(_env_file=None)


@pytest.fixture
def container(memory_settings):
    return build_container(memory_settings)


@pytest.fixture
def client(container):
    from tiergate.main import create_app

    return TestClient(create_app(container))


@pytest.fixture
def sqlite_url(tmp_path):
    """
    Fresh SQLite database per test.

    Set TEST_DATABASE_URL to run the SQL store tests against another backend.
    """
    url = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{tmp_path}/tiergate.db"
    init_engine(url)
    reset_database()
    yield url
    dispose_engine()
