"""SQLite-backed background job manager."""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from enrichment_worker.exceptions import DuplicateJobError, StorageError
from enrichment_worker.job_queue.models import BackgroundJob, JobStatus, JobType
from enrichment_worker.storage.sqlite_client import sqlite_connection
from enrichment_worker.utils.date_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id",
    "job_type",
    "status",
    "payload",
    "result",
    "attempts",
    "max_attempts",
    "next_retry_at",
    "last_error",
    "total_items",
    "processed_items",
    "failed_items",
    "scheduled_for",
    "started_at",
    "completed_at",
    "created_by",
    "dedupe_key",
    "created_at",
    "updated_at",
)

# One active job per type; retry batches for different contractors may coexist.
_SINGLETON_TYPES = {
    JobType.PROFILE_ENRICHMENT.value,
    JobType.REVIEW_ENRICHMENT.value,
    JobType.IMAGE_ENRICHMENT.value,
}

_MAX_ERROR_LENGTH = 2000


def _rows_to_jobs(rows: List[Any]) -> List[BackgroundJob]:
    jobs: List[BackgroundJob] = []
    for row in rows:
        rec = dict(row)
        try:
            jobs.append(BackgroundJob.from_record(rec))
        except (ValidationError, ValueError, TypeError) as exc:
            logger.error("Dropping malformed job row %s: %s", rec.get("id"), exc)
    return jobs


def _dump_result(result: Optional[Dict[str, Any]]) -> Optional[str]:
    return json.dumps(result, default=str) if result is not None else None


class JobManager:
    """Persist background jobs and their status transitions."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    @staticmethod
    def compute_dedupe_key(job: BackgroundJob) -> Optional[str]:
        if job.job_type in _SINGLETON_TYPES:
            return f"{job.job_type}|active"
        return None

    # ------------------------------------------------------------------ #
    # Create / read
    # ------------------------------------------------------------------ #

    def add_job(self, job: BackgroundJob) -> BackgroundJob:
        """
        Insert a new job row.

        Raises:
            DuplicateJobError: If an active job with the same dedupe key exists
            StorageError: If the insert fails for another reason
        """
        now = utcnow()
        job = job.model_copy(
            update={
                "dedupe_key": job.dedupe_key or self.compute_dedupe_key(job),
                "created_at": job.created_at or now,
                "updated_at": now,
            }
        )
        record = job.to_record()
        sql = (
            f"INSERT INTO background_jobs ({', '.join(_COLUMNS)}) "
            f"VALUES ({', '.join('?' for _ in _COLUMNS)})"
        )
        try:
            with sqlite_connection(self.db_path) as conn:
                conn.execute(sql, tuple(record[col] for col in _COLUMNS))
        except sqlite3.IntegrityError as exc:
            if "dedupe_key" in str(exc) or "idx_background_jobs_dedupe_active" in str(exc):
                raise DuplicateJobError(
                    f"A {job.job_type} job is already pending or processing"
                ) from exc
            raise StorageError(f"Failed to insert job {job.id}: {exc}") from exc

        logger.info("Added %s job %s", job.job_type, job.id)
        return job

    def get_job(self, job_id: str) -> Optional[BackgroundJob]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM background_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return BackgroundJob.from_record(dict(row))

    def require_job(self, job_id: str) -> BackgroundJob:
        job = self.get_job(job_id)
        if job is None:
            raise StorageError(f"Job {job_id} not found")
        return job

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[BackgroundJob]:
        """Most recent jobs first, optionally filtered."""
        clauses = []
        params: List[Any] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if job_type:
            clauses.append("job_type = ?")
            params.append(job_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM background_jobs {where} "
                f"ORDER BY created_at DESC, id LIMIT ? OFFSET ?",
                tuple(params),
            ).fetchall()
        return _rows_to_jobs(rows)

    def list_active(self, job_type: str) -> List[BackgroundJob]:
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM background_jobs WHERE job_type = ? AND status IN (?, ?) "
                "ORDER BY created_at",
                (job_type, JobStatus.PENDING.value, JobStatus.PROCESSING.value),
            ).fetchall()
        return _rows_to_jobs(rows)

    def get_stats(self) -> Dict[str, int]:
        stats = {status.value: 0 for status in JobStatus}
        with sqlite_connection(self.db_path) as conn:
            for row in conn.execute(
                "SELECT status, COUNT(*) AS n FROM background_jobs GROUP BY status"
            ):
                stats[row["status"]] = row["n"]
        stats["total"] = sum(stats[s.value] for s in JobStatus)
        return stats

    # ------------------------------------------------------------------ #
    # Claiming
    # ------------------------------------------------------------------ #

    def claim_next_due(self, now: Optional[datetime] = None) -> Optional[BackgroundJob]:
        """
        Atomically move the oldest due pending job to processing.

        A job is due when neither ``scheduled_for`` nor ``next_retry_at`` is
        in the future. Claiming increments ``attempts``.
        """
        now_iso = to_iso(now or utcnow())
        with sqlite_connection(self.db_path) as conn:
            candidates = conn.execute(
                """
                SELECT id FROM background_jobs
                WHERE status = ?
                  AND (scheduled_for IS NULL OR scheduled_for <= ?)
                  AND (next_retry_at IS NULL OR next_retry_at <= ?)
                ORDER BY COALESCE(next_retry_at, scheduled_for, created_at), created_at
                LIMIT 5
                """,
                (JobStatus.PENDING.value, now_iso, now_iso),
            ).fetchall()

            for candidate in candidates:
                cursor = conn.execute(
                    """
                    UPDATE background_jobs
                    SET status = ?, attempts = attempts + 1,
                        started_at = COALESCE(started_at, ?), updated_at = ?
                    WHERE id = ? AND status = ?
                    """,
                    (
                        JobStatus.PROCESSING.value,
                        now_iso,
                        now_iso,
                        candidate["id"],
                        JobStatus.PENDING.value,
                    ),
                )
                if cursor.rowcount == 1:
                    row = conn.execute(
                        "SELECT * FROM background_jobs WHERE id = ?", (candidate["id"],)
                    ).fetchone()
                    return BackgroundJob.from_record(dict(row))
        return None

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #

    def update_progress(
        self,
        job_id: str,
        total_items: Optional[int] = None,
        processed_items: Optional[int] = None,
        failed_items: Optional[int] = None,
    ) -> None:
        """Raise progress counters; a lower value than stored is ignored."""
        with sqlite_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE background_jobs
                SET total_items = MAX(total_items, COALESCE(?, total_items)),
                    processed_items = MAX(processed_items, COALESCE(?, processed_items)),
                    failed_items = MAX(failed_items, COALESCE(?, failed_items)),
                    updated_at = ?
                WHERE id = ?
                """,
                (total_items, processed_items, failed_items, to_iso(utcnow()), job_id),
            )

    def mark_completed(self, job_id: str, result: Optional[Dict[str, Any]]) -> bool:
        """
        Complete a processing job.

        Returns False, leaving the row untouched, when the job already left
        ``processing`` (for example it was cancelled while finishing).
        """
        now = to_iso(utcnow())
        return self._update(
            job_id,
            "status = ?, result = ?, last_error = NULL, next_retry_at = NULL, "
            "completed_at = ?, updated_at = ?",
            (JobStatus.COMPLETED.value, _dump_result(result), now, now),
            expected_status=JobStatus.PROCESSING.value,
        )

    def mark_failed(
        self, job_id: str, error: str, result: Optional[Dict[str, Any]] = None
    ) -> bool:
        now = to_iso(utcnow())
        return self._update(
            job_id,
            "status = ?, last_error = ?, result = COALESCE(?, result), next_retry_at = NULL, "
            "completed_at = ?, updated_at = ?",
            (JobStatus.FAILED.value, error[:_MAX_ERROR_LENGTH], _dump_result(result), now, now),
            expected_status=JobStatus.PROCESSING.value,
        )

    def schedule_retry(
        self,
        job_id: str,
        error: str,
        next_retry_at: datetime,
        result: Optional[Dict[str, Any]] = None,
    ) -> bool:
        return self._update(
            job_id,
            "status = ?, last_error = ?, result = COALESCE(?, result), next_retry_at = ?, "
            "updated_at = ?",
            (
                JobStatus.PENDING.value,
                error[:_MAX_ERROR_LENGTH],
                _dump_result(result),
                to_iso(next_retry_at),
                to_iso(utcnow()),
            ),
            expected_status=JobStatus.PROCESSING.value,
        )

    def mark_cancelled(self, job_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        now = to_iso(utcnow())
        self._update(
            job_id,
            "status = ?, result = COALESCE(?, result), next_retry_at = NULL, "
            "completed_at = COALESCE(completed_at, ?), updated_at = ?",
            (JobStatus.CANCELLED.value, _dump_result(result), now, now),
        )

    def reset_for_retry(self, job_id: str) -> None:
        """Put a failed job back in the queue with a fresh attempt budget."""
        self._update(
            job_id,
            "status = ?, attempts = 0, last_error = NULL, next_retry_at = NULL, "
            "completed_at = NULL, processed_items = 0, failed_items = 0, updated_at = ?",
            (JobStatus.PENDING.value, to_iso(utcnow())),
        )

    def reset_stuck(self, cutoff: datetime) -> int:
        """Move processing jobs not updated since ``cutoff`` back to pending."""
        cutoff_iso = to_iso(cutoff)
        with sqlite_connection(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE background_jobs
                SET status = ?, updated_at = ?
                WHERE status = ? AND updated_at < ?
                """,
                (
                    JobStatus.PENDING.value,
                    to_iso(utcnow()),
                    JobStatus.PROCESSING.value,
                    cutoff_iso,
                ),
            )
            return cursor.rowcount

    def _update(
        self,
        job_id: str,
        assignments: str,
        params: tuple,
        expected_status: Optional[str] = None,
    ) -> bool:
        query = f"UPDATE background_jobs SET {assignments} WHERE id = ?"
        params = params + (job_id,)
        if expected_status is not None:
            query += " AND status = ?"
            params = params + (expected_status,)
        with sqlite_connection(self.db_path) as conn:
            cursor = conn.execute(query, params)
            if cursor.rowcount:
                return True
            exists = conn.execute(
                "SELECT 1 FROM background_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        if exists is None:
            raise StorageError(f"Job {job_id} not found")
        logger.info("Job %s is no longer %s, transition skipped", job_id, expected_status)
        return False
