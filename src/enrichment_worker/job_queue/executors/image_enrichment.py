"""Copy pending gallery images for a batch of contractors.

The batch is picked at run time: up to ``batch_size`` contractors whose
images are not processed yet. A contractor is marked processed once all of
its pending URLs were attempted, whether or not every download worked, so
a broken image host never holds the queue up.
"""

import logging
from typing import Tuple

from enrichment_worker.images.gallery_images import GalleryImageDownloader
from enrichment_worker.job_queue.executors.base import (
    ExecutorContext,
    JobExecutor,
    ProgressCallback,
)
from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ContractorForEnrichment,
    ImageEnrichmentError,
    ImageEnrichmentPayload,
    ImageEnrichmentResult,
    JobType,
    ProgressUpdate,
)

logger = logging.getLogger(__name__)


class ImageEnrichmentExecutor(JobExecutor):
    job_type = JobType.IMAGE_ENRICHMENT

    def __init__(self, downloader: GalleryImageDownloader):
        super().__init__()
        self.downloader = downloader

    def execute(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        on_progress: ProgressCallback,
    ) -> ImageEnrichmentResult:
        payload: ImageEnrichmentPayload = job.typed_payload()
        pending_total = ctx.contractors.count_pending_image_processing()
        contractors = ctx.contractors.find_pending_image_processing(payload.batch_size)

        on_progress(ProgressUpdate(total_items=len(contractors)))
        ctx.events.log_event(
            job.id,
            "batch_start",
            f"Processing up to {payload.batch_size} contractors",
            {"batch_size": payload.batch_size, "pending_contractors": pending_total},
        )

        result = ImageEnrichmentResult(contractors_remaining=max(0, pending_total - len(contractors)))

        for index, contractor in enumerate(contractors, start=1):
            if ctx.cancelled:
                logger.info("Image job %s cancelled after %d contractors", job.id, index - 1)
                break
            try:
                stored, failed = self._process_contractor(ctx, contractor)
            except Exception as e:
                logger.error(
                    "Failed to process images for contractor %s: %s", contractor.id, e, exc_info=True
                )
                result.errors.append(
                    ImageEnrichmentError(
                        contractor_id=contractor.id,
                        company_name=contractor.company_name,
                        message=str(e),
                    )
                )
                result.failed_images += 1
            else:
                result.processed_contractors += 1
                result.successful_images += stored
                result.failed_images += failed
                result.total_images += stored + failed
                self.slogger.contractor_activity(
                    contractor.company_name, "images_processed", {"stored": stored, "failed": failed}
                )

            on_progress(ProgressUpdate(processed_items=index, failed_items=len(result.errors)))

        if payload.continuous and not ctx.cancelled and result.processed_contractors:
            result.should_continue = ctx.contractors.count_pending_image_processing() > 0

        ctx.events.log_event(
            job.id,
            "batch_complete",
            f"Processed {result.processed_contractors} contractors",
            result,
        )
        return result

    def _process_contractor(
        self, ctx: ExecutorContext, contractor: ContractorForEnrichment
    ) -> Tuple[int, int]:
        pending = [
            url
            for url in contractor.metadata.get("pending_images") or []
            if isinstance(url, str) and url
        ]
        stored = []
        for url in pending:
            public_url = self.downloader.download(url, contractor.id)
            if public_url:
                stored.append(public_url)
        ctx.contractors.mark_images_processed(contractor.id, stored)
        return len(stored), len(pending) - len(stored)
