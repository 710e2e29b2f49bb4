"""Models for the DataForSEO Google Reviews task API and its review records."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from enrichment_worker.utils.date_utils import parse_timestamp


class ReviewTask(BaseModel):
    """One task_post entry. ``tag`` carries the contractor id back to us."""

    cid: str
    language_name: str
    location_coordinate: str
    depth: int
    tag: str


class TaskMapping(BaseModel):
    """Correlates a provider task id with the contractor it was submitted for."""

    task_id: str = ""
    contractor_id: str
    google_cid: str
    company_name: str


class FailedTask(BaseModel):
    contractor_id: str
    cid: str
    error: str


class SubmitTasksResult(BaseModel):
    task_mappings: List[TaskMapping] = Field(default_factory=list)
    failed_tasks: List[FailedTask] = Field(default_factory=list)
    total_cost: float = 0.0

    @property
    def success(self) -> bool:
        return bool(self.task_mappings)


class PollResult(BaseModel):
    ready_task_ids: List[str] = Field(default_factory=list)
    pending_task_ids: List[str] = Field(default_factory=list)
    timed_out: bool = False
    poll_attempts: int = 0


class FetchResultOutput(BaseModel):
    success: bool
    cid: str = ""
    reviews_count: int = 0
    items: List[Dict[str, Any]] = Field(default_factory=list)
    cost: float = 0.0
    error: Optional[str] = None


class TransformedReview(BaseModel):
    """A provider review mapped onto the reviews table."""

    contractor_id: str
    google_review_id: str
    review_url: Optional[str] = None
    reviewer_name: Optional[str] = None
    reviewer_url: Optional[str] = None
    reviewer_photo_url: Optional[str] = None
    reviewer_review_count: int = 0
    is_local_guide: bool = False
    review_text: Optional[str] = None
    review_text_translated: Optional[str] = None
    original_language: Optional[str] = None
    stars: int = 0
    likes_count: int = 0
    published_at: Optional[datetime] = None
    owner_answer: Optional[str] = None
    owner_answer_at: Optional[datetime] = None
    review_origin: str = "Google"
    review_image_urls: List[str] = Field(default_factory=list)
    detailed_rating: Dict[str, Any] = Field(default_factory=dict)


def transform_review(item: Dict[str, Any], contractor_id: str) -> TransformedReview:
    """Map one DataForSEO review item to a TransformedReview."""
    rating = item.get("rating") or {}
    review_text = item.get("review_text") or None
    original_text = item.get("original_review_text") or None

    return TransformedReview(
        contractor_id=contractor_id,
        google_review_id=str(item["review_id"]),
        review_url=item.get("review_url") or None,
        reviewer_name=item.get("profile_name"),
        reviewer_url=item.get("profile_url") or None,
        reviewer_photo_url=item.get("profile_image_url") or None,
        reviewer_review_count=item.get("reviews_count") or 0,
        is_local_guide=bool(item.get("local_guide")),
        review_text=review_text,
        review_text_translated=original_text if original_text != review_text else None,
        original_language=item.get("original_language") or None,
        stars=int(rating.get("value") or 0),
        likes_count=int(rating.get("votes_count") or 0),
        published_at=parse_timestamp(item.get("timestamp")),
        owner_answer=item.get("owner_answer") or None,
        owner_answer_at=parse_timestamp(item.get("owner_timestamp")),
        review_image_urls=[
            img["image_url"] for img in (item.get("images") or []) if img.get("image_url")
        ],
        detailed_rating=dict(rating),
    )
