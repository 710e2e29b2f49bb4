"""Shared pytest fixtures for all tests."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from enrichment_worker.job_queue.event_log import EventLogger
from enrichment_worker.job_queue.job_service import JobService
from enrichment_worker.job_queue.manager import JobManager
from enrichment_worker.job_queue.models import BackgroundJob
from enrichment_worker.job_queue.registry import JobExecutorRegistry
from enrichment_worker.storage import (
    ContractorRepository,
    ReviewRepository,
    ServiceTypeRepository,
    ensure_schema,
)
from enrichment_worker.storage.sqlite_client import sqlite_connection
from enrichment_worker.utils.date_utils import to_iso

FIXED_NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

SERVICE_TYPES = [
    ("st-concrete", "Concrete Contractor", "concrete-contractor"),
    ("st-driveway", "Driveway Paving", "driveway-paving"),
    ("st-patio", "Patio Installation", "patio-installation"),
]


@pytest.fixture(autouse=True)
def set_test_environment(monkeypatch):
    """
    Automatically set ENVIRONMENT variable for all tests.

    This prevents ValueError from being raised when initializing
    StructuredLogger or calling setup_logging() in tests.
    """
    monkeypatch.setenv("ENVIRONMENT", "development")


@pytest.fixture
def db_path(tmp_path):
    """Fresh SQLite database with the full schema."""
    path = tmp_path / "enrichment.db"
    ensure_schema(str(path))
    return str(path)


@pytest.fixture
def contractors(db_path):
    return ContractorRepository(db_path)


@pytest.fixture
def reviews(db_path):
    return ReviewRepository(db_path)


@pytest.fixture
def service_types(db_path):
    with sqlite_connection(db_path) as conn:
        conn.executemany("INSERT INTO service_types (id, name, slug) VALUES (?, ?, ?)", SERVICE_TYPES)
    return ServiceTypeRepository(db_path)


@pytest.fixture
def insert_contractor(db_path):
    """
    Insert a contractor row.

    Returns a function taking the contractor id plus any column overrides.
    """

    def _insert(contractor_id, **fields):
        row = {
            "id": contractor_id,
            "company_name": f"Contractor {contractor_id}",
            "website": None,
            "google_cid": None,
            "lat": None,
            "lng": None,
            "metadata": json.dumps(fields.pop("metadata", {})),
            "review_enrichment_status": None,
            "review_enrichment_at": None,
        }
        row.update(fields)
        if isinstance(row["review_enrichment_at"], datetime):
            row["review_enrichment_at"] = to_iso(row["review_enrichment_at"])
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with sqlite_connection(db_path) as conn:
            conn.execute(
                f"INSERT INTO contractors ({columns}) VALUES ({placeholders})", tuple(row.values())
            )
        return contractor_id

    return _insert


@pytest.fixture
def registry():
    return JobExecutorRegistry()


@pytest.fixture
def job_service(db_path, registry, contractors, reviews, service_types):
    """JobService over the temp database with a fixed clock."""
    return JobService(
        manager=JobManager(db_path),
        registry=registry,
        events=EventLogger(db_path),
        contractors=contractors,
        service_types=service_types,
        reviews=reviews,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def claim(job_service):
    """Create a job and move it to processing, as the runner would."""

    def _claim(job_type, payload, **kwargs) -> BackgroundJob:
        created = job_service.create_job(job_type, payload, **kwargs)
        claimed = job_service.manager.claim_next_due()
        assert claimed is not None and claimed.id == created.id
        return claimed

    return _claim


@pytest.fixture
def progress():
    """Progress callback that records every update."""
    return MagicMock(name="on_progress")
