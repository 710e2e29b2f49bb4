"""Resume reviewer-photo downloads that were cut short by a rate limit.

Each rate limit pushes the remainder into a new job with a longer cooldown
(15m, 30m, 1h, 2h). After the fourth throttled attempt the images keep
their external URLs and the lineage ends.
"""

import logging

from enrichment_worker.constants import IMAGE_RETRY_MAX_ATTEMPTS
from enrichment_worker.exceptions import ImageRateLimitError
from enrichment_worker.images.reviewer_photos import ReviewerPhotoDownloader
from enrichment_worker.job_queue.executors.base import (
    ExecutorContext,
    JobExecutor,
    ProgressCallback,
)
from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ImageRetryPayload,
    ImageRetryResult,
    JobType,
    ProgressUpdate,
)

logger = logging.getLogger(__name__)


class ImageRetryExecutor(JobExecutor):
    job_type = JobType.IMAGE_RETRY

    def __init__(self, photo_downloader: ReviewerPhotoDownloader):
        super().__init__()
        self.photo_downloader = photo_downloader

    def execute(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        on_progress: ProgressCallback,
    ) -> ImageRetryResult:
        payload: ImageRetryPayload = job.typed_payload()
        images = payload.images
        attempt = payload.attempt_number

        on_progress(ProgressUpdate(total_items=len(images)))
        ctx.events.log_event(
            job.id,
            "retry_start",
            f"Retry attempt {attempt}",
            {
                "contractor_id": payload.contractor_id,
                "image_count": len(images),
                "attempt_number": attempt,
            },
        )

        try:
            downloaded = self.photo_downloader.download_photos(images, payload.contractor_id)
        except ImageRateLimitError as e:
            on_progress(ProgressUpdate(processed_items=len(images) - len(e.remaining_images)))
            return self._handle_rate_limit(job, ctx, payload, e)
        except Exception as e:
            ctx.events.log_event(
                job.id, "retry_error", str(e), {"contractor_id": payload.contractor_id}, "error"
            )
            raise

        on_progress(
            ProgressUpdate(
                processed_items=downloaded.downloaded + downloaded.failed,
                failed_items=downloaded.failed,
            )
        )
        result = ImageRetryResult(
            contractor_id=payload.contractor_id,
            attempt_number=attempt,
            total_images=len(images),
            downloaded=downloaded.downloaded,
            failed=downloaded.failed,
        )
        ctx.events.log_event(job.id, "retry_complete", "Retry completed successfully", result)
        return result

    def _handle_rate_limit(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        payload: ImageRetryPayload,
        error: ImageRateLimitError,
    ) -> ImageRetryResult:
        remaining = error.remaining_images
        next_attempt = payload.attempt_number + 1
        result = ImageRetryResult(
            contractor_id=payload.contractor_id,
            attempt_number=payload.attempt_number,
            total_images=len(payload.images),
            downloaded=len(payload.images) - len(remaining),
            remaining_images=remaining,
        )

        if next_attempt > IMAGE_RETRY_MAX_ATTEMPTS:
            logger.warning(
                "Max retries (%d) exceeded for contractor %s; abandoning %d images",
                IMAGE_RETRY_MAX_ATTEMPTS,
                payload.contractor_id,
                len(remaining),
            )
            result.failed = len(remaining)
            result.abandoned = True
            ctx.events.log_event(
                job.id,
                "retry_abandoned",
                "Max retries exceeded",
                {
                    "contractor_id": payload.contractor_id,
                    "remaining_images": len(remaining),
                    "attempt_number": payload.attempt_number,
                },
                "warning",
            )
            return result

        # Cooldown is keyed on the attempt that was just throttled
        scheduled_for = ctx.jobs.calculate_retry_time(payload.attempt_number, ctx.clock())
        next_job = ctx.jobs.create_job(
            JobType.IMAGE_RETRY,
            ImageRetryPayload(
                contractor_id=payload.contractor_id,
                images=remaining,
                attempt_number=next_attempt,
            ),
            scheduled_for=scheduled_for,
            created_by=f"job:{job.id}",
        )

        result.requeued_for_retry = True
        result.next_job_id = next_job.id
        result.scheduled_for = scheduled_for
        ctx.events.log_event(
            job.id,
            "retry_requeued",
            f"Queued attempt {next_attempt}",
            {
                "contractor_id": payload.contractor_id,
                "remaining_images": len(remaining),
                "next_attempt": next_attempt,
                "next_job_id": next_job.id,
                "scheduled_for": scheduled_for.isoformat(),
            },
        )
        return result
