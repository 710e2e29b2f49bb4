"""Service-type taxonomy and contractor assignments."""

from __future__ import annotations

import logging
from typing import List, Optional

from enrichment_worker.job_queue.models import ServiceType
from enrichment_worker.storage.sqlite_client import sqlite_connection
from enrichment_worker.utils.date_utils import to_iso, utcnow

logger = logging.getLogger(__name__)


class ServiceTypeRepository:
    """Read the service-type taxonomy and upsert contractor assignments."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def list_all(self) -> List[ServiceType]:
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute("SELECT id, name, slug FROM service_types ORDER BY name").fetchall()
        return [ServiceType(**dict(row)) for row in rows]

    def assign(
        self,
        contractor_id: str,
        service_type_id: str,
        source: str,
        confidence: Optional[float] = None,
    ) -> None:
        """Link a contractor to a service type; an existing link is updated in place."""
        with sqlite_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO contractor_service_types
                    (contractor_id, service_type_id, source, confidence, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(contractor_id, service_type_id)
                DO UPDATE SET source = excluded.source, confidence = excluded.confidence
                """,
                (contractor_id, service_type_id, source, confidence, to_iso(utcnow())),
            )

    def list_for_contractor(self, contractor_id: str) -> List[str]:
        """Slugs assigned to a contractor."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT st.slug FROM contractor_service_types cst
                JOIN service_types st ON st.id = cst.service_type_id
                WHERE cst.contractor_id = ?
                ORDER BY st.slug
                """,
                (contractor_id,),
            ).fetchall()
        return [row["slug"] for row in rows]
