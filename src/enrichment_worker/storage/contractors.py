"""Contractor repository: candidate reads and enrichment writes."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from enrichment_worker.constants import REVIEW_ENRICHMENT_COOLDOWN_DAYS
from enrichment_worker.exceptions import StorageError
from enrichment_worker.job_queue.models import ContractorForEnrichment, ReviewEnrichmentCandidate
from enrichment_worker.storage.sqlite_client import sqlite_connection
from enrichment_worker.utils.date_utils import parse_timestamp, to_iso, utcnow

logger = logging.getLogger(__name__)


def _placeholders(values: List[Any]) -> str:
    return ",".join("?" for _ in values)


def _load_metadata(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Discarding malformed contractor metadata: %r", raw[:200])
        return {}
    return data if isinstance(data, dict) else {}


class ContractorRepository:
    """Read and update contractor rows in SQLite.

    Every method opens its own connection, so each write commits
    independently of the job that issues it.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    # ------------------------------------------------------------------ #
    # Profile enrichment
    # ------------------------------------------------------------------ #

    def get_for_profile_enrichment(self, contractor_ids: List[str]) -> List[ContractorForEnrichment]:
        """Fetch contractors in the order their ids were given; unknown ids are omitted."""
        if not contractor_ids:
            return []
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT id, company_name, website, metadata FROM contractors "
                f"WHERE id IN ({_placeholders(contractor_ids)})",
                tuple(contractor_ids),
            ).fetchall()

        by_id = {
            row["id"]: ContractorForEnrichment(
                id=row["id"],
                company_name=row["company_name"],
                website=row["website"] or None,
                metadata=_load_metadata(row["metadata"]),
            )
            for row in rows
        }
        return [by_id[cid] for cid in contractor_ids if cid in by_id]

    def get_metadata(self, contractor_id: str) -> Dict[str, Any]:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT metadata FROM contractors WHERE id = ?", (contractor_id,)
            ).fetchone()
        if row is None:
            raise StorageError(f"Contractor {contractor_id} not found")
        return _load_metadata(row["metadata"])

    def merge_metadata(self, contractor_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge ``updates`` into the contractor's metadata and return the result."""
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT metadata FROM contractors WHERE id = ?", (contractor_id,)
            ).fetchone()
            if row is None:
                raise StorageError(f"Contractor {contractor_id} not found")
            metadata = {**_load_metadata(row["metadata"]), **updates}
            conn.execute(
                "UPDATE contractors SET metadata = ?, updated_at = ? WHERE id = ?",
                (json.dumps(metadata), to_iso(utcnow()), contractor_id),
            )
        return metadata

    def set_enrichment_state(self, contractor_id: str, enrichment: Dict[str, Any]) -> None:
        """Replace ``metadata.enrichment`` with the given state dict."""
        self.merge_metadata(contractor_id, {"enrichment": enrichment})

    def update_contact_details(
        self, contractor_id: str, email: Optional[str] = None, phone: Optional[str] = None
    ) -> None:
        """Set email and/or phone; None values leave the column unchanged."""
        assignments = []
        params: List[Any] = []
        if email:
            assignments.append("email = ?")
            params.append(email)
        if phone:
            assignments.append("phone = ?")
            params.append(phone)
        if not assignments:
            return
        assignments.append("updated_at = ?")
        params.extend([to_iso(utcnow()), contractor_id])
        with sqlite_connection(self.db_path) as conn:
            conn.execute(
                f"UPDATE contractors SET {', '.join(assignments)} WHERE id = ?", tuple(params)
            )

    def flag_for_elevated_scraping(self, contractor_id: str, reason: str) -> None:
        """Queue a bot-blocked contractor for the elevated scraping pass."""
        self.merge_metadata(
            contractor_id,
            {
                "needs_elevated_scrape": True,
                "elevated_scrape_reason": reason,
                "elevated_scrape_flagged_at": to_iso(utcnow()),
            },
        )

    def list_elevated_scrape_queue(self, limit: int = 100) -> List[str]:
        """Return ids of contractors waiting for elevated scraping."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id FROM contractors
                WHERE json_extract(metadata, '$.needs_elevated_scrape') = 1
                ORDER BY updated_at
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [row["id"] for row in rows]

    # ------------------------------------------------------------------ #
    # Review enrichment
    # ------------------------------------------------------------------ #

    def get_review_candidates(self, contractor_ids: List[str]) -> Dict[str, ReviewEnrichmentCandidate]:
        """Fetch review candidates keyed by id; unknown ids are absent."""
        if not contractor_ids:
            return {}
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"""
                SELECT id, company_name, google_cid, lat, lng,
                       review_enrichment_status, review_enrichment_at
                FROM contractors WHERE id IN ({_placeholders(contractor_ids)})
                """,
                tuple(contractor_ids),
            ).fetchall()

        candidates = {}
        for row in rows:
            rec = dict(row)
            rec["review_enrichment_at"] = parse_timestamp(rec["review_enrichment_at"])
            candidates[rec["id"]] = ReviewEnrichmentCandidate(**rec)
        return candidates

    def update_review_enrichment_status(
        self,
        contractor_id: str,
        status: str,
        reviews_count: int = 0,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """
        Record the review-enrichment state of one contractor.

        Only a 'success' moves ``review_enrichment_at``, which is what starts
        the cooldown window.
        """
        timestamp = to_iso(now or utcnow())
        with sqlite_connection(self.db_path) as conn:
            if status == "success":
                conn.execute(
                    """
                    UPDATE contractors
                    SET review_enrichment_status = ?, review_enrichment_count = ?,
                        review_enrichment_error = NULL, review_enrichment_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status, reviews_count, timestamp, timestamp, contractor_id),
                )
            else:
                conn.execute(
                    """
                    UPDATE contractors
                    SET review_enrichment_status = ?, review_enrichment_error = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status, error, timestamp, contractor_id),
                )

    def _eligible_clause(self) -> str:
        return """
            google_cid IS NOT NULL AND google_cid != ''
            AND lat IS NOT NULL AND lng IS NOT NULL
            AND NOT (
                review_enrichment_status = 'success'
                AND review_enrichment_at IS NOT NULL
                AND review_enrichment_at > ?
            )
        """

    def find_review_eligible_ids(
        self,
        limit: int,
        exclude_ids: Iterable[str] = (),
        now: Optional[datetime] = None,
    ) -> List[str]:
        """Ids of contractors eligible for review enrichment, oldest enrichment first."""
        cutoff = to_iso((now or utcnow()) - timedelta(days=REVIEW_ENRICHMENT_COOLDOWN_DAYS))
        excluded = list(exclude_ids)
        query = f"SELECT id FROM contractors WHERE {self._eligible_clause()}"
        params: List[Any] = [cutoff]
        if excluded:
            query += f" AND id NOT IN ({_placeholders(excluded)})"
            params.extend(excluded)
        query += " ORDER BY review_enrichment_at IS NOT NULL, review_enrichment_at, id LIMIT ?"
        params.append(limit)
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(query, tuple(params)).fetchall()
        return [row["id"] for row in rows]

    def has_review_eligible_beyond(
        self, batch_ids: Iterable[str], now: Optional[datetime] = None
    ) -> bool:
        """True when at least one eligible contractor is not part of ``batch_ids``."""
        return bool(self.find_review_eligible_ids(1, exclude_ids=batch_ids, now=now))

    # ------------------------------------------------------------------ #
    # Gallery images
    # ------------------------------------------------------------------ #

    def count_pending_image_processing(self) -> int:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM contractors WHERE images_processed = 0"
            ).fetchone()
        return row["n"]

    def find_pending_image_processing(self, limit: int) -> List[ContractorForEnrichment]:
        """Contractors whose gallery images have not been processed, oldest first."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, company_name, website, metadata FROM contractors
                WHERE images_processed = 0
                ORDER BY created_at, id
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            ContractorForEnrichment(
                id=row["id"],
                company_name=row["company_name"],
                website=row["website"] or None,
                metadata=_load_metadata(row["metadata"]),
            )
            for row in rows
        ]

    def mark_images_processed(self, contractor_id: str, stored_images: List[str]) -> Dict[str, Any]:
        """
        Append ``stored_images`` to ``metadata.images``, clear
        ``metadata.pending_images`` and set ``images_processed``.

        Returns the updated metadata.
        """
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT metadata FROM contractors WHERE id = ?", (contractor_id,)
            ).fetchone()
            if row is None:
                raise StorageError(f"Contractor {contractor_id} not found")
            metadata = _load_metadata(row["metadata"])
            metadata["images"] = list(metadata.get("images") or []) + list(stored_images)
            metadata["pending_images"] = []
            conn.execute(
                "UPDATE contractors SET metadata = ?, images_processed = 1, updated_at = ? WHERE id = ?",
                (json.dumps(metadata), to_iso(utcnow()), contractor_id),
            )
        return metadata
