"""Job-scoped event log.

Events go to two places: the ``system_logs`` table, where the admin UI reads
a job's history, and the structured JSON log stream.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from enrichment_worker.exceptions import ConfigurationError
from enrichment_worker.logging_config import get_structured_logger
from enrichment_worker.storage.sqlite_client import sqlite_connection
from enrichment_worker.utils.date_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

SEVERITIES = ("debug", "info", "warning", "error")
ENTITY_TYPE = "background_job"


class EventLogger:
    """Append structured, job-scoped events."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path
        self.slogger = get_structured_logger(__name__)

    def log_event(
        self,
        job_id: str,
        event_name: str,
        message: str,
        data: Any = None,
        severity: str = "info",
    ) -> None:
        """
        Record one job event.

        A failure to write the event is logged and swallowed; event logging
        never changes the outcome of a job.

        Args:
            job_id: Background job ID
            event_name: Machine-readable event name (batch_start, retry_abandoned, ...)
            message: Human-readable message
            data: JSON-serializable payload or pydantic model
            severity: debug, info, warning or error
        """
        level = severity if severity in SEVERITIES else "info"
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")

        self.slogger.job_activity(job_id, event_name, message=message, details=data, level=level)

        try:
            with sqlite_connection(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO system_logs
                        (level, log_type, category, action, message,
                         entity_type, entity_id, metadata, created_at)
                    VALUES (?, 'job', 'background_job', ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        level,
                        event_name,
                        message,
                        ENTITY_TYPE,
                        job_id,
                        json.dumps(data, default=str) if data is not None else None,
                        to_iso(utcnow()),
                    ),
                )
        except (sqlite3.Error, ConfigurationError) as e:
            logger.warning("Failed to persist event %s for job %s: %s", event_name, job_id, e)

    def get_events(self, job_id: str, limit: int = 200) -> List[Dict[str, Any]]:
        """Events for a job, oldest first."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT level, action, message, metadata, created_at FROM system_logs
                WHERE entity_type = ? AND entity_id = ?
                ORDER BY id
                LIMIT ?
                """,
                (ENTITY_TYPE, job_id, limit),
            ).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event["metadata"] = json.loads(event["metadata"]) if event["metadata"] else None
            events.append(event)
        return events
