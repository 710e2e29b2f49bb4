"""Background job queue: models, persistence, execution and scheduling."""

from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ImageRetryPayload,
    JobStatus,
    JobType,
    ProfileEnrichmentPayload,
    ReviewEnrichmentPayload,
    parse_payload,
)

__all__ = [
    "BackgroundJob",
    "ImageRetryPayload",
    "JobStatus",
    "JobType",
    "ProfileEnrichmentPayload",
    "ReviewEnrichmentPayload",
    "parse_payload",
]
