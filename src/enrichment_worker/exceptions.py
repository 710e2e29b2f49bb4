"""Custom exceptions for the enrichment worker.

This module defines domain-specific exceptions that separate the failure
classes a job can hit: configuration mistakes, per-item problems that are
recorded in a job result, typed rate-limit signals that carry unfinished
work, and system failures that abort a whole job.
"""

from typing import Any, List, Optional


class EnrichmentWorkerError(Exception):
    """Base exception for all enrichment worker errors.

    All custom exceptions in this module inherit from this base class,
    making it easy to catch all worker-specific errors.
    """

    pass


class ConfigurationError(EnrichmentWorkerError):
    """Raised when there's an error in configuration.

    Examples:
    - Missing required environment variables or API keys
    - Executor registered twice for the same job type
    - SQLite database path does not exist
    """

    pass


class UnknownJobTypeError(ConfigurationError):
    """Raised when no executor is registered for a job type.

    Never treated as a no-op: a job whose type cannot be resolved is a
    deployment mistake and must fail loudly.
    """

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"No executor registered for job type: {job_type}")


class InitializationError(EnrichmentWorkerError):
    """Raised when a component fails to initialize properly.

    Examples:
    - Service-type taxonomy could not be loaded
    - Worker components not initialized before use
    """

    pass


class JobPayloadError(EnrichmentWorkerError):
    """Raised when a job payload does not match the shape its job type requires."""

    pass


class InvalidJobStateError(EnrichmentWorkerError):
    """Raised when a job is asked to make a transition its status forbids.

    Examples:
    - Executing a job that is not in 'processing'
    - Cancelling a completed job
    - Retrying a job that has not failed
    """

    pass


class StorageError(EnrichmentWorkerError):
    """Raised when storage operations fail.

    Examples:
    - Job row not found
    - Insert or update rejected by the database
    """

    pass


class DuplicateJobError(StorageError):
    """Raised when an active job of the same kind already exists."""

    pass


class SystemFailureError(EnrichmentWorkerError):
    """Raised when infrastructure cannot run the job at all.

    This is the only failure class an executor lets escape. Work finished
    before the failure is carried on ``partial_result`` so the caller can
    persist it alongside the failed status.
    """

    def __init__(self, message: str, partial_result: Optional[Any] = None):
        super().__init__(message)
        self.partial_result = partial_result


class CrawlerUnavailableError(SystemFailureError):
    """Raised when the headless browser cannot be launched or has crashed."""

    pass


class ReviewsApiError(EnrichmentWorkerError):
    """Raised when the third-party reviews API returns an error.

    Attributes:
        status_code: HTTP or provider status code, when known
        is_retryable: Whether repeating the request may succeed
    """

    def __init__(self, message: str, status_code: Optional[int] = None, is_retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.is_retryable = is_retryable


class ReviewsApiAuthError(ReviewsApiError):
    """Raised on 401/403 responses. Never retryable."""

    def __init__(self, message: str = "Reviews API authentication failed", status_code: int = 401):
        super().__init__(message, status_code=status_code, is_retryable=False)


class ReviewsApiRateLimitError(ReviewsApiError):
    """Raised on 429 responses from the reviews API."""

    def __init__(self, message: str = "Reviews API rate limit exceeded"):
        super().__init__(message, status_code=429, is_retryable=True)


class ImageRateLimitError(EnrichmentWorkerError):
    """Raised when an image host throttles reviewer-photo downloads.

    Expected and typed: it carries the images that were not downloaded so the
    caller can schedule a retry job for exactly that remainder.
    """

    def __init__(self, remaining_images: List[Any], message: Optional[str] = None):
        self.remaining_images = list(remaining_images)
        super().__init__(
            message or f"Rate limited with {len(self.remaining_images)} images remaining"
        )
