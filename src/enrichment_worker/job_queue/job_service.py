"""Job creation, execution and retry scheduling."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from enrichment_worker.constants import (
    DEFAULT_CONTRACTOR_BATCH_SIZE,
    DEFAULT_MAX_ATTEMPTS,
    IMAGE_RETRY_DELAYS_MINUTES,
    IMAGE_RETRY_MAX_ATTEMPTS,
    JOB_RETRY_DELAYS_MINUTES,
)
from enrichment_worker.exceptions import (
    ConfigurationError,
    DuplicateJobError,
    InvalidJobStateError,
    JobPayloadError,
)
from enrichment_worker.job_queue.event_log import EventLogger
from enrichment_worker.job_queue.executors.base import ExecutorContext, ProgressTracker
from enrichment_worker.job_queue.manager import JobManager
from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ImageEnrichmentPayload,
    ImageEnrichmentResult,
    JobResult,
    JobStatus,
    JobType,
    ProgressUpdate,
    ReviewEnrichmentPayload,
    ReviewEnrichmentResult,
    parse_payload,
)
from enrichment_worker.job_queue.registry import JobExecutorRegistry
from enrichment_worker.storage.contractors import ContractorRepository
from enrichment_worker.storage.reviews import ReviewRepository
from enrichment_worker.storage.service_types import ServiceTypeRepository
from enrichment_worker.utils.date_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Failures that repeat identically on every attempt
_PERMANENT_ERRORS = (ConfigurationError, JobPayloadError, InvalidJobStateError)


class JobService:
    """
    Create, run and manage background jobs.

    ``execute_job`` is the only place a job result is persisted: executors
    return results, this service stores them and applies the retry policy.
    """

    def __init__(
        self,
        manager: JobManager,
        registry: JobExecutorRegistry,
        events: EventLogger,
        contractors: ContractorRepository,
        service_types: ServiceTypeRepository,
        reviews: ReviewRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.manager = manager
        self.registry = registry
        self.events = events
        self.contractors = contractors
        self.service_types = service_types
        self.reviews = reviews
        self.clock = clock
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Scheduling
    # ------------------------------------------------------------------ #

    @staticmethod
    def calculate_retry_time(
        attempt_number: int, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """
        Time at which to resume an image batch throttled on ``attempt_number``.

        Uses the fixed escalation 15, 30, 60 and 120 minutes for attempts
        1-4. Returns None past IMAGE_RETRY_MAX_ATTEMPTS, meaning the lineage
        is abandoned.

        Args:
            attempt_number: 1-based attempt in the retry lineage
            now: Reference time; defaults to the current UTC time
        """
        if attempt_number < 1 or attempt_number > IMAGE_RETRY_MAX_ATTEMPTS:
            return None
        base = ensure_utc(now) if now is not None else utcnow()
        return base + timedelta(minutes=IMAGE_RETRY_DELAYS_MINUTES[attempt_number])

    def create_job(
        self,
        job_type: Union[str, JobType],
        payload: Union[Dict[str, Any], BaseModel],
        scheduled_for: Optional[datetime] = None,
        created_by: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> BackgroundJob:
        """
        Validate a payload and persist a pending job.

        Raises:
            UnknownJobTypeError: If the job type is unknown
            JobPayloadError: If the payload does not fit the job type
            DuplicateJobError: If an enrichment job of this type is already active
        """
        typed = parse_payload(job_type, payload)
        job = self.manager.add_job(
            BackgroundJob(
                job_type=job_type,
                payload=typed.model_dump(mode="json"),
                scheduled_for=scheduled_for,
                created_by=created_by,
                max_attempts=max_attempts,
            )
        )
        self.events.log_event(
            job.id,
            "job_created",
            f"Created {job.job_type} job",
            {
                "job_type": job.job_type,
                "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
                "created_by": created_by,
            },
        )
        return job

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #

    def build_context(self, cancel_event: Optional[threading.Event] = None) -> ExecutorContext:
        return ExecutorContext(
            contractors=self.contractors,
            service_types=self.service_types,
            reviews=self.reviews,
            events=self.events,
            jobs=self,
            cancel_event=cancel_event or threading.Event(),
            clock=self.clock,
        )

    def execute_job(self, job: BackgroundJob) -> BackgroundJob:
        """
        Run a claimed job and persist its outcome.

        On success the result is stored and the job completed. On failure
        the job is rescheduled while attempts remain, otherwise failed; any
        partial result carried by the exception is stored either way and the
        exception is re-raised.

        Raises:
            InvalidJobStateError: If the job is not processing
        """
        if job.status != JobStatus.PROCESSING.value:
            raise InvalidJobStateError(
                f"Job {job.id} must be processing to execute (is {job.status})"
            )

        cancel_event = threading.Event()
        with self._lock:
            self._cancel_events[job.id] = cancel_event

        ctx = self.build_context(cancel_event)
        tracker = ProgressTracker(lambda update: self._persist_progress(job.id, update))
        self.events.log_event(
            job.id,
            "job_started",
            f"Started {job.job_type} job",
            {"attempt": job.attempts, "max_attempts": job.max_attempts},
        )

        try:
            executor = self.registry.get(job.job_type)
            result = executor.execute(job, ctx, tracker)
        except Exception as exc:
            partial = getattr(exc, "partial_result", None)
            if cancel_event.is_set():
                self._finish_cancelled(job, partial)
            else:
                self._handle_failure(job, exc, partial)
            raise
        finally:
            with self._lock:
                self._cancel_events.pop(job.id, None)

        if cancel_event.is_set():
            self._finish_cancelled(job, result)
        elif self.manager.mark_completed(job.id, self._dump(result)):
            self.events.log_event(
                job.id, "job_completed", f"Completed {job.job_type} job", self._dump(result)
            )
            self._chain_next_batch(job, result)
        else:
            self._log_superseded(job, "completed")

        return self.manager.require_job(job.id)

    def _persist_progress(self, job_id: str, update: ProgressUpdate) -> None:
        self.manager.update_progress(
            job_id,
            total_items=update.total_items,
            processed_items=update.processed_items,
            failed_items=update.failed_items,
        )

    @staticmethod
    def _dump(result: Optional[Union[JobResult, Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        if result is None:
            return None
        if isinstance(result, BaseModel):
            return result.model_dump(mode="json")
        return dict(result)

    def _finish_cancelled(self, job: BackgroundJob, result: Any) -> None:
        self.manager.mark_cancelled(job.id, self._dump(result))
        self.events.log_event(
            job.id, "job_cancelled", "Job stopped after cancellation", self._dump(result), "warning"
        )

    def _log_superseded(self, job: BackgroundJob, outcome: str) -> None:
        current = self.manager.require_job(job.id)
        self.events.log_event(
            job.id,
            "job_outcome_discarded",
            f"Run finished after the job became {current.status}; not marked {outcome}",
            {"status": current.status, "discarded": outcome},
            "warning",
        )

    def _handle_failure(self, job: BackgroundJob, exc: Exception, partial: Any) -> None:
        error = f"{type(exc).__name__}: {exc}"
        partial_result = self._dump(partial)
        retryable = not isinstance(exc, _PERMANENT_ERRORS)

        if retryable and job.attempts < job.max_attempts:
            delay_index = min(max(job.attempts, 1), len(JOB_RETRY_DELAYS_MINUTES)) - 1
            next_retry_at = self.clock() + timedelta(minutes=JOB_RETRY_DELAYS_MINUTES[delay_index])
            if not self.manager.schedule_retry(job.id, error, next_retry_at, partial_result):
                self._log_superseded(job, "retried")
                return
            self.events.log_event(
                job.id,
                "job_failed",
                f"Attempt {job.attempts}/{job.max_attempts} failed, retrying",
                {
                    "error": error,
                    "will_retry": True,
                    "next_retry_at": next_retry_at.isoformat(),
                    "partial_result": partial_result,
                },
                "warning",
            )
            return

        if not self.manager.mark_failed(job.id, error, partial_result):
            self._log_superseded(job, "failed")
            return
        self.events.log_event(
            job.id,
            "job_failed",
            f"Job failed after {job.attempts} attempt(s)",
            {"error": error, "will_retry": False, "partial_result": partial_result},
            "error",
        )

    def _chain_next_batch(self, job: BackgroundJob, result: JobResult) -> Optional[BackgroundJob]:
        """Start the next batch when a continuous job found more work."""
        if isinstance(result, ImageEnrichmentResult) and result.should_continue:
            return self._chain_image_batch(job)
        if not isinstance(result, ReviewEnrichmentResult) or not result.should_continue:
            return None
        payload = job.typed_payload()
        if not isinstance(payload, ReviewEnrichmentPayload) or not payload.continuous:
            return None

        attempted = payload.chain_exclusions()
        next_ids = self.contractors.find_review_eligible_ids(
            DEFAULT_CONTRACTOR_BATCH_SIZE, exclude_ids=attempted, now=self.clock()
        )
        if not next_ids:
            return None

        try:
            next_job = self.create_job(
                JobType.REVIEW_ENRICHMENT,
                ReviewEnrichmentPayload(
                    contractor_ids=next_ids,
                    max_depth=payload.max_depth,
                    continuous=True,
                    chain_attempted_ids=attempted,
                ),
                created_by=f"chain:{job.id}",
            )
        except DuplicateJobError as e:
            logger.warning("Not chaining review batch after %s: %s", job.id, e)
            return None

        self.events.log_event(
            job.id,
            "batch_chained",
            f"Queued next review batch {next_job.id}",
            {"next_job_id": next_job.id, "contractor_ids": next_ids},
        )
        return next_job

    def _chain_image_batch(self, job: BackgroundJob) -> Optional[BackgroundJob]:
        payload = job.typed_payload()
        if not isinstance(payload, ImageEnrichmentPayload) or not payload.continuous:
            return None
        try:
            next_job = self.create_job(
                JobType.IMAGE_ENRICHMENT,
                ImageEnrichmentPayload(batch_size=payload.batch_size, continuous=True),
                created_by=f"chain:{job.id}",
            )
        except DuplicateJobError as e:
            logger.warning("Not chaining image batch after %s: %s", job.id, e)
            return None

        self.events.log_event(
            job.id,
            "batch_chained",
            f"Queued next image batch {next_job.id}",
            {"next_job_id": next_job.id, "batch_size": payload.batch_size},
        )
        return next_job

    # ------------------------------------------------------------------ #
    # Management
    # ------------------------------------------------------------------ #

    def get_job(self, job_id: str) -> Optional[BackgroundJob]:
        return self.manager.get_job(job_id)

    def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[BackgroundJob]:
        return self.manager.list_jobs(status=status, job_type=job_type, limit=limit, offset=offset)

    def get_job_progress(self, job_id: str) -> Dict[str, Any]:
        job = self.manager.require_job(job_id)
        percent = 0
        if job.total_items:
            percent = min(100, round(job.processed_items * 100 / job.total_items))
        elif job.status == JobStatus.COMPLETED.value:
            percent = 100
        return {
            "job_id": job.id,
            "status": job.status,
            "total_items": job.total_items,
            "processed_items": job.processed_items,
            "failed_items": job.failed_items,
            "percent_complete": percent,
        }

    def cancel_job(self, job_id: str) -> BackgroundJob:
        """
        Cancel a pending or running job.

        A running job stops at its executor's next cancellation check; work
        already persisted stays in place.

        Raises:
            InvalidJobStateError: If the job is already completed or cancelled
        """
        job = self.manager.require_job(job_id)
        if job.status in (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value):
            raise InvalidJobStateError(f"Cannot cancel a {job.status} job")

        self.manager.mark_cancelled(job_id)
        self.request_stop(job_id)
        self.events.log_event(
            job_id, "job_cancel_requested", "Cancellation requested", {"was": job.status}
        )
        return self.manager.require_job(job_id)

    def request_stop(self, job_id: str) -> bool:
        """Signal a job running in this process to stop; False if it is not running here."""
        with self._lock:
            running = self._cancel_events.get(job_id)
        if running is None:
            return False
        running.set()
        return True

    def running_job_ids(self) -> List[str]:
        with self._lock:
            return list(self._cancel_events)

    def cancel_all_running(self) -> int:
        """Signal every running job to stop; used on shutdown."""
        with self._lock:
            events = list(self._cancel_events.values())
        for event in events:
            event.set()
        return len(events)

    def retry_job(self, job_id: str) -> BackgroundJob:
        """
        Requeue a failed job with a fresh attempt budget.

        Raises:
            InvalidJobStateError: If the job has not failed
            DuplicateJobError: If another job of the type is already active
        """
        job = self.manager.require_job(job_id)
        if job.status != JobStatus.FAILED.value:
            raise InvalidJobStateError(f"Only failed jobs can be retried (job is {job.status})")
        self.manager.reset_for_retry(job_id)
        self.events.log_event(job_id, "job_retried", "Job requeued manually")
        return self.manager.require_job(job_id)
