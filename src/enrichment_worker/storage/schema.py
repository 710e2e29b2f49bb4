"""Database schema for the enrichment worker.

``ensure_schema`` is idempotent and safe to run on every process start:
tables and indexes are created with IF NOT EXISTS and nothing is dropped.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from enrichment_worker.storage.sqlite_client import sqlite_connection

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS background_jobs (
        id TEXT PRIMARY KEY,
        job_type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        payload TEXT NOT NULL DEFAULT '{}',
        result TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        next_retry_at TEXT,
        last_error TEXT,
        total_items INTEGER NOT NULL DEFAULT 0,
        processed_items INTEGER NOT NULL DEFAULT 0,
        failed_items INTEGER NOT NULL DEFAULT 0,
        scheduled_for TEXT,
        started_at TEXT,
        completed_at TEXT,
        created_by TEXT,
        dedupe_key TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_background_jobs_dedupe_active
    ON background_jobs(dedupe_key)
    WHERE dedupe_key IS NOT NULL AND status IN ('pending','processing');
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_background_jobs_due
    ON background_jobs(status, scheduled_for, next_retry_at);
    """,
    """
    CREATE TABLE IF NOT EXISTS system_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        level TEXT NOT NULL,
        log_type TEXT NOT NULL,
        category TEXT NOT NULL,
        action TEXT NOT NULL,
        message TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_system_logs_entity
    ON system_logs(entity_type, entity_id);
    """,
    """
    CREATE TABLE IF NOT EXISTS contractors (
        id TEXT PRIMARY KEY,
        company_name TEXT NOT NULL,
        website TEXT,
        email TEXT,
        phone TEXT,
        google_cid TEXT,
        lat REAL,
        lng REAL,
        metadata TEXT NOT NULL DEFAULT '{}',
        review_enrichment_status TEXT,
        review_enrichment_at TEXT,
        review_enrichment_count INTEGER NOT NULL DEFAULT 0,
        review_enrichment_error TEXT,
        images_processed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS service_types (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS contractor_service_types (
        contractor_id TEXT NOT NULL REFERENCES contractors(id) ON DELETE CASCADE,
        service_type_id TEXT NOT NULL REFERENCES service_types(id) ON DELETE CASCADE,
        source TEXT NOT NULL,
        confidence REAL,
        created_at TEXT NOT NULL,
        PRIMARY KEY (contractor_id, service_type_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS reviews (
        id TEXT PRIMARY KEY,
        contractor_id TEXT NOT NULL REFERENCES contractors(id) ON DELETE CASCADE,
        google_review_id TEXT NOT NULL UNIQUE,
        review_url TEXT,
        reviewer_name TEXT,
        reviewer_url TEXT,
        reviewer_photo_url TEXT,
        downloaded_reviewer_photo_url TEXT,
        reviewer_review_count INTEGER,
        is_local_guide INTEGER NOT NULL DEFAULT 0,
        review_text TEXT,
        review_text_translated TEXT,
        original_language TEXT,
        stars INTEGER,
        likes_count INTEGER,
        published_at TEXT,
        owner_answer TEXT,
        owner_answer_at TEXT,
        review_origin TEXT,
        review_image_urls TEXT NOT NULL DEFAULT '[]',
        detailed_rating TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_reviews_contractor ON reviews(contractor_id);
    """,
]


def ensure_schema(db_path: Optional[str] = None) -> None:
    """Create the database file (when given a path) and all tables."""
    if db_path:
        path = Path(db_path).expanduser()
        if not path.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
            sqlite3.connect(path).close()
            logger.info("Created SQLite database at %s", path)

    with sqlite_connection(db_path) as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)
