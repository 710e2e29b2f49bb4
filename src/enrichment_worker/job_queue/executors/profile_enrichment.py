"""Business-profile enrichment: website crawl followed by AI extraction.

Each contractor in the batch is handled independently. A missing website, a
bot-protected site, a failed crawl or a failed extraction is recorded in the
result and the batch moves on; only a failure of the shared browser aborts
the whole job.
"""

import logging
from typing import Callable, Dict, List, Optional

from enrichment_worker.ai.extraction import AIExtractor, ExtractionResult
from enrichment_worker.constants import (
    AI_COST_PER_1K_TOKENS,
    AI_SERVICE_TYPE_CONFIDENCE,
    DEFAULT_CONTRACTOR_BATCH_SIZE,
    DEFAULT_SERVICE_TYPE_CONFIDENCE,
    DEFAULT_SERVICE_TYPE_SLUG,
)
from enrichment_worker.exceptions import InitializationError, SystemFailureError
from enrichment_worker.job_queue.executors.base import (
    ExecutorContext,
    JobExecutor,
    ProgressCallback,
)
from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ContractorForEnrichment,
    ItemStatus,
    JobType,
    ProfileEnrichmentResult,
    ProfileItemResult,
    ProfileOutcome,
    ProgressUpdate,
    ServiceType,
)
from enrichment_worker.rendering.web_crawler import WebCrawler
from enrichment_worker.utils.date_utils import to_iso

logger = logging.getLogger(__name__)

ENRICHMENT_SOURCE = "ai_enrichment"

CrawlerFactory = Callable[[], WebCrawler]


class ProfileEnrichmentExecutor(JobExecutor):
    """Crawl contractor websites and store what the model extracts from them."""

    job_type = JobType.PROFILE_ENRICHMENT

    def __init__(self, crawler_factory: CrawlerFactory, extractor: AIExtractor):
        """
        Args:
            crawler_factory: Returns an unstarted WebCrawler; one is used per job
            extractor: AI extractor shared across jobs
        """
        super().__init__()
        self.crawler_factory = crawler_factory
        self.extractor = extractor

    def execute(
        self,
        job: BackgroundJob,
        ctx: ExecutorContext,
        on_progress: ProgressCallback,
    ) -> ProfileEnrichmentResult:
        payload = job.typed_payload()
        batch_ids = payload.contractor_ids[:DEFAULT_CONTRACTOR_BATCH_SIZE]
        result = ProfileEnrichmentResult()

        on_progress(ProgressUpdate(total_items=len(batch_ids)))
        ctx.events.log_event(
            job.id,
            "batch_start",
            f"Processing {len(batch_ids)} contractors",
            {"contractor_count": len(batch_ids), "contractor_ids": batch_ids},
        )

        try:
            service_types = ctx.service_types.list_all()
        except Exception as e:
            ctx.events.log_event(job.id, "init_failed", str(e), {}, "error")
            raise InitializationError(f"Failed to load service types: {e}") from e

        contractors = ctx.contractors.get_for_profile_enrichment(batch_ids)
        found = {c.id for c in contractors}
        for missing_id in (cid for cid in batch_ids if cid not in found):
            logger.warning("Job %s: contractor %s not found", job.id, missing_id)
            result.record(
                ProfileItemResult(
                    contractor_id=missing_id,
                    company_name="",
                    status=ItemStatus.SKIPPED,
                    outcome=ProfileOutcome.NOT_FOUND,
                    message="Contractor not found",
                )
            )
        if result.processed:
            on_progress(
                ProgressUpdate(processed_items=result.processed, failed_items=result.failed)
            )

        try:
            with self.crawler_factory() as crawler:
                for contractor in contractors:
                    if ctx.cancelled:
                        logger.info("Job %s cancelled after %d contractors", job.id, result.processed)
                        break

                    ctx.events.log_event(
                        job.id,
                        "contractor_start",
                        f"Processing: {contractor.company_name}",
                        {"contractor_id": contractor.id},
                    )

                    item = self._enrich_contractor(contractor, crawler, service_types, ctx)
                    result.record(item)
                    result.estimated_cost = self._estimate_cost(result.total_tokens)

                    on_progress(
                        ProgressUpdate(processed_items=result.processed, failed_items=result.failed)
                    )
                    ctx.events.log_event(
                        job.id,
                        "contractor_complete",
                        f"{item.status}: {contractor.company_name} - {item.message}",
                        {
                            "contractor_id": contractor.id,
                            "status": item.status,
                            "outcome": item.outcome,
                            "service_types_assigned": item.service_types_assigned,
                            "tokens_used": item.tokens_used,
                        },
                        "warning" if item.status == ItemStatus.FAILED.value else "info",
                    )
        except SystemFailureError as e:
            ctx.events.log_event(
                job.id,
                "batch_aborted",
                f"Batch aborted after {result.processed} contractors: {e}",
                result,
                "error",
            )
            e.partial_result = result
            raise

        self._log_batch_complete(job, ctx, result)
        return result

    # ============================================================
    # PER-CONTRACTOR PIPELINE
    # ============================================================

    def _enrich_contractor(
        self,
        contractor: ContractorForEnrichment,
        crawler: WebCrawler,
        service_types: List[ServiceType],
        ctx: ExecutorContext,
    ) -> ProfileItemResult:
        if not contractor.website:
            ctx.contractors.set_enrichment_state(
                contractor.id,
                {
                    "status": "not_applicable",
                    "reason": "No website URL",
                    "checked_at": to_iso(ctx.clock()),
                },
            )
            return self._item(contractor, ItemStatus.SKIPPED, ProfileOutcome.NOT_APPLICABLE, "No website URL")

        try:
            crawl = crawler.crawl(contractor.website)

            if crawl.blocked_by_bot_protection:
                reason = crawl.error or "Bot protection detected"
                ctx.contractors.set_enrichment_state(
                    contractor.id,
                    {"status": "bot_blocked", "error": reason, "failed_at": to_iso(ctx.clock())},
                )
                ctx.contractors.flag_for_elevated_scraping(contractor.id, reason)
                self.slogger.contractor_activity(
                    contractor.company_name, "flagged_elevated_scrape", {"url": contractor.website}
                )
                return self._item(
                    contractor, ItemStatus.FAILED, ProfileOutcome.BOT_BLOCKED, f"Bot protection: {reason}"
                )

            if not crawl.success or not crawl.content:
                error = crawl.error or "Crawl failed"
                self._mark_failed(ctx, contractor.id, error)
                return self._item(
                    contractor, ItemStatus.FAILED, ProfileOutcome.CRAWL_FAILED, f"Crawl failed: {error}"
                )

            extraction = self.extractor.extract(
                crawl.content, service_types, contractor.company_name
            )
            if not extraction.success or extraction.result is None:
                assigned = self._assign_default(ctx, contractor.id, service_types)
                error = extraction.error or "AI extraction failed"
                self._mark_failed(ctx, contractor.id, error)
                return self._item(
                    contractor,
                    ItemStatus.FAILED,
                    ProfileOutcome.EXTRACTION_FAILED,
                    f"AI extraction failed: {error}",
                    service_types_assigned=assigned,
                    tokens_used=extraction.tokens_used,
                )

            assigned = self._apply_extraction(ctx, contractor.id, extraction.result, service_types)
            self.slogger.contractor_activity(
                contractor.company_name,
                "enriched",
                {"pages_crawled": crawl.pages_crawled, "service_types_assigned": assigned},
            )
            return self._item(
                contractor,
                ItemStatus.SUCCESS,
                ProfileOutcome.ENRICHED,
                f"Enriched successfully ({crawl.pages_crawled} pages crawled)",
                service_types_assigned=assigned,
                tokens_used=extraction.tokens_used,
            )
        except SystemFailureError:
            raise
        except Exception as e:
            logger.error(
                "Unexpected error enriching %s (%s): %s",
                contractor.company_name,
                contractor.id,
                e,
                exc_info=True,
            )
            self._mark_failed(ctx, contractor.id, str(e))
            return self._item(contractor, ItemStatus.FAILED, ProfileOutcome.ERROR, str(e))

    def _apply_extraction(
        self,
        ctx: ExecutorContext,
        contractor_id: str,
        extracted: ExtractionResult,
        service_types: List[ServiceType],
    ) -> int:
        """Persist extracted details and return the number of service types assigned."""
        ctx.contractors.set_enrichment_state(
            contractor_id,
            {
                "status": "completed",
                "enriched_at": to_iso(ctx.clock()),
                "business_hours": (
                    extracted.business_hours.model_dump() if extracted.business_hours else None
                ),
                "social_links": (
                    extracted.social_links.model_dump() if extracted.social_links else None
                ),
            },
        )
        ctx.contractors.update_contact_details(
            contractor_id, email=extracted.email, phone=extracted.phone
        )

        by_slug: Dict[str, ServiceType] = {st.slug: st for st in service_types}
        assigned = 0
        for slug in dict.fromkeys(extracted.service_slugs):
            service_type = by_slug.get(slug)
            if service_type is None:
                continue
            ctx.service_types.assign(
                contractor_id, service_type.id, ENRICHMENT_SOURCE, AI_SERVICE_TYPE_CONFIDENCE
            )
            assigned += 1

        if assigned == 0:
            assigned = self._assign_default(ctx, contractor_id, service_types)
        return assigned

    @staticmethod
    def _assign_default(
        ctx: ExecutorContext, contractor_id: str, service_types: List[ServiceType]
    ) -> int:
        default = next((st for st in service_types if st.slug == DEFAULT_SERVICE_TYPE_SLUG), None)
        if default is None:
            logger.warning("Default service type %s is not in the taxonomy", DEFAULT_SERVICE_TYPE_SLUG)
            return 0
        ctx.service_types.assign(
            contractor_id, default.id, ENRICHMENT_SOURCE, DEFAULT_SERVICE_TYPE_CONFIDENCE
        )
        return 1

    @staticmethod
    def _mark_failed(ctx: ExecutorContext, contractor_id: str, error: str) -> None:
        ctx.contractors.set_enrichment_state(
            contractor_id,
            {"status": "failed", "error": error, "failed_at": to_iso(ctx.clock())},
        )

    # ============================================================
    # RESULT HELPERS
    # ============================================================

    @staticmethod
    def _item(
        contractor: ContractorForEnrichment,
        status: ItemStatus,
        outcome: ProfileOutcome,
        message: str,
        service_types_assigned: int = 0,
        tokens_used: Optional[int] = 0,
    ) -> ProfileItemResult:
        return ProfileItemResult(
            contractor_id=contractor.id,
            company_name=contractor.company_name,
            status=status,
            outcome=outcome,
            message=message,
            service_types_assigned=service_types_assigned,
            tokens_used=tokens_used or 0,
        )

    @staticmethod
    def _estimate_cost(total_tokens: int) -> float:
        return round(total_tokens / 1000 * AI_COST_PER_1K_TOKENS, 6)

    @staticmethod
    def _log_batch_complete(
        job: BackgroundJob, ctx: ExecutorContext, result: ProfileEnrichmentResult
    ) -> None:
        ctx.events.log_event(
            job.id,
            "batch_complete",
            f"Processed {result.processed} contractors",
            {
                "processed": result.processed,
                "successful": result.successful,
                "skipped": result.skipped,
                "failed": result.failed,
                "total_tokens": result.total_tokens,
                "estimated_cost": result.estimated_cost,
            },
        )
