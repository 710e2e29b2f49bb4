"""
Pydantic models for background jobs backed by SQLite.

A job's payload shape is fully determined by its ``job_type``: every type
maps to exactly one payload model in ``PAYLOAD_MODELS`` and executors only
ever see the validated model, never the raw JSON stored in the row.
"""

import json
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from enrichment_worker.constants import (
    DEFAULT_CONTRACTOR_BATCH_SIZE,
    DEFAULT_IMAGE_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REVIEW_DEPTH,
    IMAGE_RETRY_MAX_ATTEMPTS,
    MAX_IMAGE_BATCH_SIZE,
    MAX_REVIEW_DEPTH,
    REVIEW_ENRICHMENT_COOLDOWN_DAYS,
)
from enrichment_worker.exceptions import JobPayloadError, UnknownJobTypeError
from enrichment_worker.utils.date_utils import ensure_utc, to_iso


class JobType(str, Enum):
    """
    Type of background job.

    Each value has exactly one payload model and one executor.
    """

    PROFILE_ENRICHMENT = "profile_enrichment"
    REVIEW_ENRICHMENT = "review_enrichment"
    IMAGE_RETRY = "image_retry"
    IMAGE_ENRICHMENT = "image_enrichment"


class JobStatus(str, Enum):
    """
    Status of a background job.

    Lifecycle: pending → processing → completed/failed/cancelled.
    A failed attempt with attempts remaining goes back to pending with
    ``next_retry_at`` set.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TERMINAL_STATUSES = (
    JobStatus.COMPLETED.value,
    JobStatus.FAILED.value,
    JobStatus.CANCELLED.value,
)


class ItemStatus(str, Enum):
    """Outcome of one candidate inside a batch job."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ProfileOutcome(str, Enum):
    """Finer-grained reason behind a profile-enrichment item status."""

    ENRICHED = "enriched"
    NOT_APPLICABLE = "not_applicable"
    BOT_BLOCKED = "bot_blocked"
    CRAWL_FAILED = "crawl_failed"
    EXTRACTION_FAILED = "extraction_failed"
    NOT_FOUND = "not_found"
    ERROR = "error"


# ============================================================================
# Payloads
# ============================================================================


class ProfileEnrichmentPayload(BaseModel):
    """Contractors whose websites should be crawled and extracted."""

    model_config = ConfigDict(extra="forbid")

    contractor_ids: List[str] = Field(min_length=1, max_length=DEFAULT_CONTRACTOR_BATCH_SIZE)


class ReviewEnrichmentPayload(BaseModel):
    """
    Contractors whose Google reviews should be fetched.

    ``chain_attempted_ids`` lists contractors already tried by earlier
    batches of the same continuous chain; they are never picked again by
    that chain, whatever their outcome was.
    """

    model_config = ConfigDict(extra="forbid")

    contractor_ids: List[str] = Field(min_length=1, max_length=DEFAULT_CONTRACTOR_BATCH_SIZE)
    max_depth: int = Field(default=DEFAULT_REVIEW_DEPTH, ge=1, le=MAX_REVIEW_DEPTH)
    continuous: bool = False
    chain_attempted_ids: List[str] = Field(default_factory=list)

    def chain_exclusions(self) -> List[str]:
        """Earlier chain contractors plus this batch, in first-seen order."""
        return list(dict.fromkeys([*self.chain_attempted_ids, *self.contractor_ids]))


class ReviewerImage(BaseModel):
    """A reviewer photo that still points at its original external URL."""

    review_id: str
    original_url: str


class ImageRetryPayload(BaseModel):
    """
    A rate-limited reviewer-photo batch waiting to be resumed.

    ``attempt_number`` strictly increases along a retry lineage and never
    exceeds IMAGE_RETRY_MAX_ATTEMPTS.
    """

    model_config = ConfigDict(extra="forbid")

    contractor_id: str
    images: List[ReviewerImage] = Field(min_length=1)
    attempt_number: int = Field(ge=1, le=IMAGE_RETRY_MAX_ATTEMPTS)


class ImageEnrichmentPayload(BaseModel):
    """
    Copy pending gallery images for the next batch of contractors.

    Contractors are not named: each run takes up to ``batch_size`` contractors
    whose images have not been processed yet.
    """

    model_config = ConfigDict(extra="forbid")

    batch_size: int = Field(default=DEFAULT_IMAGE_BATCH_SIZE, ge=1, le=MAX_IMAGE_BATCH_SIZE)
    continuous: bool = False


JobPayload = Union[
    ProfileEnrichmentPayload, ReviewEnrichmentPayload, ImageRetryPayload, ImageEnrichmentPayload
]

PAYLOAD_MODELS: Dict[JobType, Type[BaseModel]] = {
    JobType.PROFILE_ENRICHMENT: ProfileEnrichmentPayload,
    JobType.REVIEW_ENRICHMENT: ReviewEnrichmentPayload,
    JobType.IMAGE_RETRY: ImageRetryPayload,
    JobType.IMAGE_ENRICHMENT: ImageEnrichmentPayload,
}

if set(PAYLOAD_MODELS) != set(JobType):  # pragma: no cover - import-time guard
    raise RuntimeError("PAYLOAD_MODELS must cover every JobType")


def resolve_job_type(job_type: Union[str, JobType]) -> JobType:
    """Coerce a tag to JobType, raising UnknownJobTypeError for unknown tags."""
    try:
        return JobType(job_type)
    except ValueError:
        raise UnknownJobTypeError(str(job_type)) from None


def parse_payload(job_type: Union[str, JobType], data: Any) -> JobPayload:
    """
    Validate a payload against the model its job type requires.

    Args:
        job_type: Job type tag
        data: Raw dict or an already-built payload model

    Returns:
        The typed payload model

    Raises:
        UnknownJobTypeError: If the tag is not a JobType
        JobPayloadError: If the payload does not match the job type
    """
    model = PAYLOAD_MODELS[resolve_job_type(job_type)]

    if isinstance(data, model):
        return data
    if isinstance(data, BaseModel):
        raise JobPayloadError(
            f"{type(data).__name__} is not a valid payload for job type {job_type}"
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise JobPayloadError(f"Invalid payload for job type {job_type}: {e}") from e


# ============================================================================
# Results
# ============================================================================


class ProfileItemResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    contractor_id: str
    company_name: str
    status: ItemStatus
    outcome: ProfileOutcome
    message: str
    service_types_assigned: int = 0
    tokens_used: int = 0


class ProfileEnrichmentResult(BaseModel):
    """Aggregate outcome of one profile-enrichment batch."""

    processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0
    results: List[ProfileItemResult] = Field(default_factory=list)

    def record(self, item: ProfileItemResult) -> None:
        self.results.append(item)
        self.processed += 1
        self.total_tokens += item.tokens_used
        if item.status == ItemStatus.SUCCESS.value:
            self.successful += 1
        elif item.status == ItemStatus.SKIPPED.value:
            self.skipped += 1
        else:
            self.failed += 1


class ReviewItemResult(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    contractor_id: str
    company_name: str
    status: ItemStatus
    reason: Optional[str] = None
    reviews_fetched: int = 0
    reviews_saved: int = 0
    images_deferred: int = 0


class ReviewEnrichmentResult(BaseModel):
    """Aggregate outcome of one review-enrichment batch."""

    processed: int = 0
    successful: int = 0
    skipped: int = 0
    failed: int = 0
    total_reviews_fetched: int = 0
    total_reviews_saved: int = 0
    api_cost: float = 0.0
    results: List[ReviewItemResult] = Field(default_factory=list)
    should_continue: bool = False

    def tally(self) -> None:
        """Recompute counters from the per-item results."""
        self.processed = len(self.results)
        self.successful = sum(1 for r in self.results if r.status == ItemStatus.SUCCESS.value)
        self.skipped = sum(1 for r in self.results if r.status == ItemStatus.SKIPPED.value)
        self.failed = sum(1 for r in self.results if r.status == ItemStatus.FAILED.value)


class ImageRetryResult(BaseModel):
    """Outcome of resuming one deferred reviewer-photo batch."""

    contractor_id: str
    attempt_number: int
    total_images: int
    downloaded: int = 0
    failed: int = 0
    remaining_images: Optional[List[ReviewerImage]] = None
    requeued_for_retry: bool = False
    abandoned: bool = False
    next_job_id: Optional[str] = None
    scheduled_for: Optional[datetime] = None


class ImageEnrichmentError(BaseModel):
    contractor_id: str
    company_name: str
    message: str


class ImageEnrichmentResult(BaseModel):
    """Aggregate outcome of one gallery-image batch."""

    processed_contractors: int = 0
    total_images: int = 0
    successful_images: int = 0
    failed_images: int = 0
    contractors_remaining: int = 0
    errors: List[ImageEnrichmentError] = Field(default_factory=list)
    should_continue: bool = False


JobResult = Union[
    ProfileEnrichmentResult, ReviewEnrichmentResult, ImageRetryResult, ImageEnrichmentResult
]


class ProgressUpdate(BaseModel):
    """Counters pushed while a job runs; unset fields are left unchanged."""

    total_items: Optional[int] = Field(default=None, ge=0)
    processed_items: Optional[int] = Field(default=None, ge=0)
    failed_items: Optional[int] = Field(default=None, ge=0)


# ============================================================================
# Candidates
# ============================================================================


class ServiceType(BaseModel):
    id: str
    name: str
    slug: str


class ContractorForEnrichment(BaseModel):
    """Business profile candidate, read fresh for every job."""

    id: str
    company_name: str
    website: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ReviewEnrichmentCandidate(BaseModel):
    """Review enrichment candidate with the fields that decide eligibility."""

    id: str
    company_name: str
    google_cid: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    review_enrichment_status: Optional[str] = None
    review_enrichment_at: Optional[datetime] = None

    def ineligibility_reason(self, now: datetime) -> Optional[str]:
        """Return why this candidate must be skipped, or None when eligible."""
        if not self.google_cid:
            return "Missing Google CID"
        if self.lat is None or self.lng is None:
            return "Missing coordinates"
        if self.in_cooldown(now):
            return f"Recently enriched (within {REVIEW_ENRICHMENT_COOLDOWN_DAYS} days)"
        return None

    def in_cooldown(self, now: datetime) -> bool:
        if self.review_enrichment_status != "success" or self.review_enrichment_at is None:
            return False
        cutoff = ensure_utc(now) - timedelta(days=REVIEW_ENRICHMENT_COOLDOWN_DAYS)
        return ensure_utc(self.review_enrichment_at) > cutoff


# ============================================================================
# Job row
# ============================================================================


class BackgroundJob(BaseModel):
    """
    Background job row.

    ``payload`` and ``result`` are stored as JSON text; use
    ``typed_payload()`` to get the validated payload model.
    """

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    job_type: JobType
    status: JobStatus = JobStatus.PENDING
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    next_retry_at: Optional[datetime] = None
    last_error: Optional[str] = None
    total_items: int = 0
    processed_items: int = 0
    failed_items: int = 0
    scheduled_for: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    dedupe_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def typed_payload(self) -> JobPayload:
        return parse_payload(self.job_type, self.payload)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self) -> Dict[str, Any]:
        """Serialize to a dict of SQLite column values."""
        record = self.model_dump()
        for key, value in record.items():
            if isinstance(value, datetime):
                record[key] = to_iso(value)
        record["payload"] = json.dumps(self.payload)
        record["result"] = json.dumps(self.result) if self.result is not None else None
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "BackgroundJob":
        """Build from a SQLite row dict."""
        data = dict(record)
        for key in ("payload", "result"):
            raw = data.get(key)
            if isinstance(raw, str):
                data[key] = json.loads(raw) if raw else None
        if data.get("payload") is None:
            data["payload"] = {}
        return cls(**data)
