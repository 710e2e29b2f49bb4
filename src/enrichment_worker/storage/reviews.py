"""Review repository with idempotent upserts keyed by Google review id."""

from __future__ import annotations

import json
import logging
from typing import List, Optional
from uuid import uuid4

from enrichment_worker.job_queue.models import ReviewerImage
from enrichment_worker.reviews_api.models import TransformedReview
from enrichment_worker.storage.sqlite_client import sqlite_connection
from enrichment_worker.utils.date_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

# Columns refreshed when a review already exists; downloaded_reviewer_photo_url
# is never overwritten by a re-fetch.
_UPDATABLE_COLUMNS = (
    "review_url",
    "reviewer_name",
    "reviewer_url",
    "reviewer_photo_url",
    "reviewer_review_count",
    "is_local_guide",
    "review_text",
    "review_text_translated",
    "original_language",
    "stars",
    "likes_count",
    "published_at",
    "owner_answer",
    "owner_answer_at",
    "review_origin",
    "review_image_urls",
    "detailed_rating",
)


class ReviewRepository:
    """Persist reviews and track reviewer-photo downloads."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def upsert_reviews(self, reviews: List[TransformedReview]) -> int:
        """
        Insert or refresh reviews by ``google_review_id``.

        Running this twice with the same reviews leaves one row per review id.

        Returns:
            Number of reviews written
        """
        if not reviews:
            return 0

        now = to_iso(utcnow())
        columns = ("id", "contractor_id", "google_review_id") + _UPDATABLE_COLUMNS + (
            "created_at",
            "updated_at",
        )
        updates = ", ".join(f"{col} = excluded.{col}" for col in _UPDATABLE_COLUMNS)
        sql = f"""
            INSERT INTO reviews ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT(google_review_id) DO UPDATE SET {updates}, updated_at = excluded.updated_at
        """

        saved = 0
        with sqlite_connection(self.db_path) as conn:
            for review in reviews:
                row = (
                    str(uuid4()),
                    review.contractor_id,
                    review.google_review_id,
                    review.review_url,
                    review.reviewer_name,
                    review.reviewer_url,
                    review.reviewer_photo_url,
                    review.reviewer_review_count,
                    int(review.is_local_guide),
                    review.review_text,
                    review.review_text_translated,
                    review.original_language,
                    review.stars,
                    review.likes_count,
                    to_iso(review.published_at),
                    review.owner_answer,
                    to_iso(review.owner_answer_at),
                    review.review_origin,
                    json.dumps(review.review_image_urls),
                    json.dumps(review.detailed_rating),
                    now,
                    now,
                )
                saved += conn.execute(sql, row).rowcount
        return saved

    def count_for_contractor(self, contractor_id: str) -> int:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM reviews WHERE contractor_id = ?", (contractor_id,)
            ).fetchone()
        return int(row["n"])

    def get_reviews_needing_photo_download(self, contractor_id: str) -> List[ReviewerImage]:
        """Reviews with an external reviewer photo and no local copy yet."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT id, reviewer_photo_url FROM reviews
                WHERE contractor_id = ?
                  AND reviewer_photo_url IS NOT NULL AND reviewer_photo_url != ''
                  AND downloaded_reviewer_photo_url IS NULL
                ORDER BY created_at, id
                """,
                (contractor_id,),
            ).fetchall()
        return [
            ReviewerImage(review_id=row["id"], original_url=row["reviewer_photo_url"])
            for row in rows
        ]

    def set_downloaded_photo_url(self, review_id: str, url: str) -> None:
        with sqlite_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE reviews SET downloaded_reviewer_photo_url = ?, updated_at = ? WHERE id = ?",
                (url, to_iso(utcnow()), review_id),
            )
