"""Pytest configuration and fixtures for kpiscore tests.

Every test runs against empty in-memory stores with Postgres unconfigured;
the Postgres integration tests opt back in explicitly.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from kpiscore.api.auth import KPISCORE_API_KEYS_ENV
from kpiscore.api.main import create_app
from kpiscore.audit.sink import AUDIT_LOG_PATH_ENV, InMemoryAuditSink
from kpiscore.models.indicator import IndicatorDefinition
from kpiscore.models.subject import Subject
from kpiscore.persistence.db import KPISCORE_DATABASE_URL_ENV
from kpiscore.persistence.repositories import (
    clear_all_in_memory_stores,
    seed_indicator_in_memory,
    seed_subject_in_memory,
)
from kpiscore.scoring.config import AnalyticsConfig
from kpiscore.services.notifications.dispatcher import InMemoryNotificationDispatcher
from tests.fixtures.kpi_fixture import ALL_ACTORS, api_keys_json, as_subject, make_indicator


@pytest.fixture(autouse=True)
def clear_stores(monkeypatch: pytest.MonkeyPatch) -> None:
    """Run every test against empty in-memory stores."""
    monkeypatch.delenv(KPISCORE_DATABASE_URL_ENV, raising=False)
    clear_all_in_memory_stores()


@pytest.fixture
def seeded_subjects() -> list[Subject]:
    """Seed the standard cast of subjects into the in-memory store."""
    subjects = [as_subject(actor) for actor in ALL_ACTORS]
    for subject in subjects:
        seed_subject_in_memory(subject)
    return subjects


@pytest.fixture
def hq_indicator() -> IndicatorDefinition:
    """Seed one active HQ_STAFF indicator (weight 20, target 90)."""
    indicator = make_indicator("ind-hq", weight=20, target_value=90, name="Tickets closed")
    seed_indicator_in_memory(indicator)
    return indicator


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    """Provide in-memory audit sink for testing."""
    return InMemoryAuditSink()


@pytest.fixture
def dispatcher() -> InMemoryNotificationDispatcher:
    return InMemoryNotificationDispatcher()


@pytest.fixture
def client(
    audit_sink: InMemoryAuditSink,
    dispatcher: InMemoryNotificationDispatcher,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> TestClient:
    """Create a test client wired to in-memory collaborators."""
    monkeypatch.setenv(KPISCORE_API_KEYS_ENV, api_keys_json())
    monkeypatch.setenv(AUDIT_LOG_PATH_ENV, str(tmp_path / "audit.jsonl"))
    app = create_app(
        audit_sink=audit_sink,
        notification_dispatcher=dispatcher,
        analytics_config=AnalyticsConfig(),
    )
    return TestClient(app)
