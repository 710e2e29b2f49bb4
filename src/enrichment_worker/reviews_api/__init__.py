"""Client for the DataForSEO Google Reviews task API."""

from enrichment_worker.reviews_api.client import ReviewsApiClient
from enrichment_worker.reviews_api.models import (
    FetchResultOutput,
    PollResult,
    ReviewTask,
    SubmitTasksResult,
    TaskMapping,
    TransformedReview,
    transform_review,
)

__all__ = [
    "FetchResultOutput",
    "PollResult",
    "ReviewTask",
    "ReviewsApiClient",
    "SubmitTasksResult",
    "TaskMapping",
    "TransformedReview",
    "transform_review",
]
