"""Google review enrichment through the DataForSEO task API.

Phases run strictly in order for the whole batch:

1. validate   - skip candidates without a CID or coordinates, or in cooldown
2. submit     - one task_post request for every eligible candidate
3. poll       - wait for the tasks to become ready
4. fetch      - fetch, transform and upsert reviews per ready task
   4b images  - copy reviewer photos; a rate limit defers them to a retry job
5. result     - aggregate counts, cost and the continuous-mode flag
"""

import logging
from typing import Callable, Dict, List, Optional

from enrichment_worker.constants import (
    REVIEW_LANGUAGE_NAME,
    REVIEW_LOCATION_RADIUS_METERS,
)
from enrichment_worker.exceptions import (
    ImageRateLimitError,
    ReviewsApiAuthError,
    ReviewsApiError,
    SystemFailureError,
)
from enrichment_worker.images.reviewer_photos import ReviewerPhotoDownloader
from enrichment_worker.job_queue.executors.base import (
    ExecutorContext,
    JobExecutor,
    ProgressCallback,
)
from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ImageRetryPayload,
    ItemStatus,
    JobType,
    ProgressUpdate,
    ReviewEnrichmentCandidate,
    ReviewEnrichmentPayload,
    ReviewEnrichmentResult,
    ReviewItemResult,
)
from enrichment_worker.reviews_api.client import ReviewsApiClient
from enrichment_worker.reviews_api.models import ReviewTask, TaskMapping, transform_review

logger = logging.getLogger(__name__)

ReviewsClientFactory = Callable[[], ReviewsApiClient]

STATUS_PENDING = "pending"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"


class ReviewEnrichmentExecutor(JobExecutor):
    """Fetch Google reviews for a batch of contractors and store them."""

    job_type = JobType.REVIEW_ENRICHMENT

    def __init__(
        self,
        client_factory: ReviewsClientFactory,
        photo_downloader: Optional[ReviewerPhotoDownloader] = None,
    ):
        """
        Args:
            client_factory: Builds the reviews API client; only called when at
                least one candidate passes validation
            photo_downloader: Reviewer photo downloader; phase 4b is skipped without one
        """
        super().__init__()
        self.client_factory = client_factory
        self.photo_downloader = photo_downloader

    def execute(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        on_progress: ProgressCallback,
    ) -> ReviewEnrichmentResult:
        payload: ReviewEnrichmentPayload = job.typed_payload()
        contractor_ids = payload.contractor_ids
        result = ReviewEnrichmentResult()

        on_progress(ProgressUpdate(total_items=len(contractor_ids)))
        ctx.events.log_event(
            job.id,
            "batch_start",
            f"Processing {len(contractor_ids)} contractors",
            {
                "contractor_ids": contractor_ids,
                "max_depth": payload.max_depth,
                "continuous": payload.continuous,
            },
        )

        # ===================================================
        # PHASE 1: Validate
        # ===================================================
        self.slogger.pipeline_phase(job.id, "validate", "started")
        valid = self._validate(contractor_ids, ctx, result)
        self._report(result, on_progress)
        self.slogger.pipeline_phase(
            job.id, "validate", "completed", {"valid": len(valid), "skipped": len(result.results)}
        )

        if not valid:
            return self._finish(job, ctx, payload, result, "No valid contractors to process")
        if ctx.cancelled:
            return self._finish(job, ctx, payload, result, "Cancelled before submission")

        client = self.client_factory()
        outstanding: Dict[str, ReviewEnrichmentCandidate] = {c.id: c for c in valid}

        try:
            # ===================================================
            # PHASE 2: Submit
            # ===================================================
            self.slogger.pipeline_phase(job.id, "submit", "started", {"tasks": len(valid)})
            for candidate in valid:
                ctx.contractors.update_review_enrichment_status(
                    candidate.id, STATUS_PENDING, now=ctx.clock()
                )

            tasks = [
                ReviewTask(
                    cid=c.google_cid,
                    language_name=REVIEW_LANGUAGE_NAME,
                    location_coordinate=f"{c.lat},{c.lng},{REVIEW_LOCATION_RADIUS_METERS}",
                    depth=payload.max_depth,
                    tag=c.id,
                )
                for c in valid
            ]
            mappings = [
                TaskMapping(contractor_id=c.id, google_cid=c.google_cid, company_name=c.company_name)
                for c in valid
            ]

            try:
                submitted = client.submit_tasks(tasks, mappings)
            except ReviewsApiAuthError:
                raise
            except ReviewsApiError as e:
                self.slogger.pipeline_phase(job.id, "submit", "failed", {"error": str(e)})
                for candidate in valid:
                    self._fail(ctx, result, outstanding, candidate.id, f"Task submission failed: {e}")
                self._report(result, on_progress)
                return self._finish(job, ctx, payload, result, "All task submissions failed")

            result.api_cost += submitted.total_cost
            for failed in submitted.failed_tasks:
                self._fail(
                    ctx, result, outstanding, failed.contractor_id, f"Task submission failed: {failed.error}"
                )
            submitted_ids = {m.contractor_id for m in submitted.task_mappings}
            for contractor_id in [cid for cid in outstanding if cid not in submitted_ids]:
                self._fail(ctx, result, outstanding, contractor_id, "Task submission failed: no task returned")
            self._report(result, on_progress)

            if not submitted.task_mappings:
                return self._finish(job, ctx, payload, result, "All task submissions failed")
            self.slogger.pipeline_phase(
                job.id,
                "submit",
                "completed",
                {"submitted": len(submitted.task_mappings), "failed": len(submitted.failed_tasks)},
            )

            if ctx.cancelled:
                self._fail_outstanding(ctx, result, outstanding, "Job cancelled")
                return self._finish(job, ctx, payload, result, "Cancelled before polling")

            # ===================================================
            # PHASE 3: Poll
            # ===================================================
            by_task_id = {m.task_id: m for m in submitted.task_mappings}
            self.slogger.pipeline_phase(job.id, "poll", "started", {"tasks": len(by_task_id)})
            polled = client.poll_ready(list(by_task_id))

            for pending_id in polled.pending_task_ids:
                mapping = by_task_id.get(pending_id)
                if mapping is not None:
                    self._fail(
                        ctx,
                        result,
                        outstanding,
                        mapping.contractor_id,
                        "Polling timeout - task not ready",
                        db_error="Polling timeout",
                    )
            self._report(result, on_progress)
            self.slogger.pipeline_phase(
                job.id,
                "poll",
                "completed",
                {
                    "ready": len(polled.ready_task_ids),
                    "pending": len(polled.pending_task_ids),
                    "attempts": polled.poll_attempts,
                },
            )

            # ===================================================
            # PHASE 4: Fetch and save
            # ===================================================
            self.slogger.pipeline_phase(job.id, "fetch", "started", {"tasks": len(polled.ready_task_ids)})
            for task_id in polled.ready_task_ids:
                if ctx.cancelled:
                    self._fail_outstanding(ctx, result, outstanding, "Job cancelled")
                    break
                mapping = by_task_id.get(task_id)
                if mapping is None:
                    continue
                self._fetch_and_save(job, ctx, client, result, outstanding, mapping)
                self._report(result, on_progress)
            self.slogger.pipeline_phase(job.id, "fetch", "completed")

        except ReviewsApiAuthError as e:
            self._fail_outstanding(ctx, result, outstanding, str(e))
            result.tally()
            ctx.events.log_event(
                job.id, "batch_aborted", f"Reviews API rejected credentials: {e}", result, "error"
            )
            raise SystemFailureError(f"Reviews API authentication failed: {e}", result) from e

        # ===================================================
        # PHASE 5: Result
        # ===================================================
        return self._finish(job, ctx, payload, result, f"Processed {len(contractor_ids)} contractors")

    # ============================================================
    # PHASES
    # ============================================================

    def _validate(
        self, contractor_ids: List[str], ctx: ExecutorContext, result: ReviewEnrichmentResult
    ) -> List[ReviewEnrichmentCandidate]:
        candidates = ctx.contractors.get_review_candidates(contractor_ids)
        now = ctx.clock()
        valid: List[ReviewEnrichmentCandidate] = []

        for contractor_id in contractor_ids:
            candidate = candidates.get(contractor_id)
            if candidate is None:
                result.results.append(
                    ReviewItemResult(
                        contractor_id=contractor_id,
                        company_name="Unknown",
                        status=ItemStatus.SKIPPED,
                        reason="Contractor not found",
                    )
                )
                continue

            reason = candidate.ineligibility_reason(now)
            if reason:
                result.results.append(
                    ReviewItemResult(
                        contractor_id=contractor_id,
                        company_name=candidate.company_name,
                        status=ItemStatus.SKIPPED,
                        reason=reason,
                    )
                )
                continue

            valid.append(candidate)
        return valid

    def _fetch_and_save(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        client: ReviewsApiClient,
        result: ReviewEnrichmentResult,
        outstanding: Dict[str, ReviewEnrichmentCandidate],
        mapping: TaskMapping,
    ) -> None:
        try:
            fetched = client.fetch_result(mapping.task_id)
            result.api_cost += fetched.cost

            if not fetched.success:
                self._fail(
                    ctx, result, outstanding, mapping.contractor_id, fetched.error or "No reviews in response"
                )
                return

            reviews = [transform_review(item, mapping.contractor_id) for item in fetched.items]
            saved = ctx.reviews.upsert_reviews(reviews)
            ctx.contractors.update_review_enrichment_status(
                mapping.contractor_id, STATUS_SUCCESS, reviews_count=len(reviews), now=ctx.clock()
            )
        except ReviewsApiAuthError:
            raise
        except Exception as e:
            logger.warning("Fetching reviews for %s failed: %s", mapping.company_name, e)
            self._fail(ctx, result, outstanding, mapping.contractor_id, str(e))
            return

        outstanding.pop(mapping.contractor_id, None)
        result.total_reviews_fetched += len(reviews)
        result.total_reviews_saved += saved

        # PHASE 4b: reviewer photos
        deferred = self._download_reviewer_photos(job, ctx, mapping.contractor_id)

        result.results.append(
            ReviewItemResult(
                contractor_id=mapping.contractor_id,
                company_name=mapping.company_name,
                status=ItemStatus.SUCCESS,
                reviews_fetched=len(reviews),
                reviews_saved=saved,
                images_deferred=deferred,
            )
        )

    def _download_reviewer_photos(
        self, job: BackgroundJob, ctx: ExecutorContext, contractor_id: str
    ) -> int:
        """Download pending reviewer photos; return how many were deferred to a retry job."""
        if self.photo_downloader is None:
            return 0

        try:
            images = ctx.reviews.get_reviews_needing_photo_download(contractor_id)
            if not images:
                return 0
            downloaded = self.photo_downloader.download_photos(images, contractor_id)
            ctx.events.log_event(
                job.id,
                "images_downloaded",
                f"Downloaded {downloaded.downloaded} reviewer photos",
                {
                    "contractor_id": contractor_id,
                    "downloaded": downloaded.downloaded,
                    "failed": downloaded.failed,
                },
            )
            return 0
        except ImageRateLimitError as e:
            try:
                return self._defer_photos(job, ctx, contractor_id, e)
            except Exception as defer_error:
                logger.error("Could not queue photo retry for %s: %s", contractor_id, defer_error)
                ctx.events.log_event(
                    job.id, "images_error", str(defer_error), {"contractor_id": contractor_id}, "error"
                )
                return 0
        except Exception as e:
            logger.error("Reviewer photo download for %s failed: %s", contractor_id, e)
            ctx.events.log_event(
                job.id, "images_error", str(e), {"contractor_id": contractor_id}, "error"
            )
            return 0

    def _defer_photos(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        contractor_id: str,
        error: ImageRateLimitError,
    ) -> int:
        scheduled_for = ctx.jobs.calculate_retry_time(1, ctx.clock())
        retry_job = ctx.jobs.create_job(
            JobType.IMAGE_RETRY,
            ImageRetryPayload(
                contractor_id=contractor_id,
                images=error.remaining_images,
                attempt_number=1,
            ),
            scheduled_for=scheduled_for,
            created_by=f"job:{job.id}",
        )
        ctx.events.log_event(
            job.id,
            "images_rate_limited",
            "Queued retry job for remaining images",
            {
                "contractor_id": contractor_id,
                "remaining_images": len(error.remaining_images),
                "retry_job_id": retry_job.id,
                "scheduled_for": scheduled_for.isoformat(),
            },
            "warning",
        )
        return len(error.remaining_images)

    # ============================================================
    # HELPERS
    # ============================================================

    @staticmethod
    def _fail(
        ctx: ExecutorContext,
        result: ReviewEnrichmentResult,
        outstanding: Dict[str, ReviewEnrichmentCandidate],
        contractor_id: str,
        reason: str,
        db_error: Optional[str] = None,
    ) -> None:
        candidate = outstanding.pop(contractor_id, None)
        if candidate is None:
            return
        ctx.contractors.update_review_enrichment_status(
            contractor_id, STATUS_FAILED, error=db_error or reason, now=ctx.clock()
        )
        result.results.append(
            ReviewItemResult(
                contractor_id=contractor_id,
                company_name=candidate.company_name,
                status=ItemStatus.FAILED,
                reason=reason,
            )
        )

    def _fail_outstanding(
        self,
        ctx: ExecutorContext,
        result: ReviewEnrichmentResult,
        outstanding: Dict[str, ReviewEnrichmentCandidate],
        reason: str,
    ) -> None:
        for contractor_id in list(outstanding):
            self._fail(ctx, result, outstanding, contractor_id, reason)

    @staticmethod
    def _report(result: ReviewEnrichmentResult, on_progress: ProgressCallback) -> None:
        result.tally()
        on_progress(ProgressUpdate(processed_items=result.processed, failed_items=result.failed))

    def _finish(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        payload: ReviewEnrichmentPayload,
        result: ReviewEnrichmentResult,
        message: str,
    ) -> ReviewEnrichmentResult:
        result.tally()
        result.api_cost = round(result.api_cost, 6)
        if payload.continuous and not ctx.cancelled:
            result.should_continue = ctx.contractors.has_review_eligible_beyond(
                payload.chain_exclusions(), now=ctx.clock()
            )
        ctx.events.log_event(job.id, "batch_complete", message, result)
        logger.info(
            "Review job %s complete - %d successful, %d skipped, %d failed",
            job.id,
            result.successful,
            result.skipped,
            result.failed,
        )
        return result
