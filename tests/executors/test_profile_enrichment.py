"""Tests for ProfileEnrichmentExecutor."""

import sqlite3
from unittest.mock import MagicMock

import pytest

from enrichment_worker.ai.extraction import ExtractionOutput, ExtractionResult, SocialLinks
from enrichment_worker.exceptions import (
    CrawlerUnavailableError,
    InitializationError,
    SystemFailureError,
)
from enrichment_worker.job_queue.executors.profile_enrichment import ProfileEnrichmentExecutor
from enrichment_worker.job_queue.models import JobStatus, JobType, ProgressUpdate
from enrichment_worker.rendering.web_crawler import CrawlResult
from enrichment_worker.storage.sqlite_client import fetch_one


class FakeCrawler:
    """Context-managed crawler returning canned results per URL."""

    def __init__(self, results):
        self.results = results
        self.crawled = []
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self):
        self.closed = True

    def crawl(self, url):
        self.crawled.append(url)
        outcome = self.results[url]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _site(url, pages=3):
    return CrawlResult(url=url, success=True, content=f"Welcome to {url}. Call us.", pages_crawled=pages)


def _extracted(**fields):
    return ExtractionOutput(success=True, result=ExtractionResult(**fields), tokens_used=1500)


@pytest.fixture
def extractor():
    mock = MagicMock(name="extractor")
    mock.extract.return_value = _extracted(
        email="info@acme.example",
        phone="(503) 555-0100",
        social_links=SocialLinks(facebook="https://facebook.com/acme"),
        service_slugs=["driveway-paving", "patio-installation"],
    )
    return mock


@pytest.fixture
def run_profile(job_service, claim, extractor):
    """Run a profile job against a FakeCrawler; returns (result, crawler, job)."""

    def _run(contractor_ids, crawl_results, ctx=None):
        crawler = FakeCrawler(crawl_results)
        executor = ProfileEnrichmentExecutor(lambda: crawler, extractor)
        job = claim(JobType.PROFILE_ENRICHMENT, {"contractor_ids": contractor_ids})
        result = executor.execute(job, ctx or job_service.build_context(), MagicMock())
        return result, crawler, job

    return _run


def test_successful_enrichment_persists_details(
    run_profile, insert_contractor, contractors, service_types, db_path
):
    insert_contractor("c1", company_name="Acme Concrete", website="https://acme.example")

    result, crawler, _ = run_profile(["c1"], {"https://acme.example": _site("https://acme.example")})

    assert (result.processed, result.successful, result.failed) == (1, 1, 0)
    item = result.results[0]
    assert item.outcome == "enriched"
    assert item.message == "Enriched successfully (3 pages crawled)"
    assert item.service_types_assigned == 2
    assert result.total_tokens == 1500
    assert result.estimated_cost == pytest.approx(0.0006)

    enrichment = contractors.get_metadata("c1")["enrichment"]
    assert enrichment["status"] == "completed"
    assert enrichment["social_links"]["facebook"] == "https://facebook.com/acme"
    row = fetch_one("SELECT email, phone FROM contractors WHERE id = ?", ("c1",), db_path)
    assert (row["email"], row["phone"]) == ("info@acme.example", "(503) 555-0100")
    assert service_types.list_for_contractor("c1") == ["driveway-paving", "patio-installation"]
    assert crawler.closed


def test_no_matching_service_assigns_default(
    run_profile, insert_contractor, extractor, service_types
):
    insert_contractor("c1", website="https://acme.example")
    extractor.extract.return_value = _extracted(service_slugs=[])

    result, _, _ = run_profile(["c1"], {"https://acme.example": _site("https://acme.example")})

    assert result.results[0].service_types_assigned == 1
    assert service_types.list_for_contractor("c1") == ["concrete-contractor"]


def test_missing_website_is_skipped_without_crawling(run_profile, insert_contractor, contractors, extractor):
    insert_contractor("c1", website=None)

    result, crawler, _ = run_profile(["c1"], {})

    assert (result.skipped, result.failed) == (1, 0)
    assert result.results[0].outcome == "not_applicable"
    assert result.results[0].message == "No website URL"
    assert crawler.crawled == []
    extractor.extract.assert_not_called()
    assert contractors.get_metadata("c1")["enrichment"]["status"] == "not_applicable"


def test_bot_blocked_site_is_flagged_for_elevated_scraping(run_profile, insert_contractor, contractors):
    insert_contractor("c1", website="https://walled.example")
    blocked = CrawlResult(
        url="https://walled.example",
        success=False,
        blocked_by_bot_protection=True,
        error="Site has bot protection (403/Cloudflare)",
    )

    result, _, _ = run_profile(["c1"], {"https://walled.example": blocked})

    item = result.results[0]
    assert item.status == "failed"
    assert item.outcome == "bot_blocked"
    metadata = contractors.get_metadata("c1")
    assert metadata["enrichment"]["status"] == "bot_blocked"
    assert metadata["needs_elevated_scrape"] is True
    assert contractors.list_elevated_scrape_queue() == ["c1"]


def test_crawl_failure_is_recorded(run_profile, insert_contractor, contractors):
    insert_contractor("c1", website="https://down.example")
    failed = CrawlResult(url="https://down.example", success=False, error="net::ERR_NAME_NOT_RESOLVED")

    result, _, _ = run_profile(["c1"], {"https://down.example": failed})

    assert result.results[0].outcome == "crawl_failed"
    assert result.results[0].message == "Crawl failed: net::ERR_NAME_NOT_RESOLVED"
    assert contractors.get_metadata("c1")["enrichment"]["error"] == "net::ERR_NAME_NOT_RESOLVED"


def test_extraction_failure_assigns_default_and_counts_tokens(
    run_profile, insert_contractor, extractor, service_types, contractors
):
    insert_contractor("c1", website="https://acme.example")
    extractor.extract.return_value = ExtractionOutput(
        success=False, error="No structured output returned", tokens_used=700
    )

    result, _, _ = run_profile(["c1"], {"https://acme.example": _site("https://acme.example")})

    item = result.results[0]
    assert item.status == "failed"
    assert item.outcome == "extraction_failed"
    assert item.tokens_used == 700
    assert result.total_tokens == 700
    assert service_types.list_for_contractor("c1") == ["concrete-contractor"]
    assert contractors.get_metadata("c1")["enrichment"]["status"] == "failed"


def test_unexpected_item_error_does_not_stop_batch(run_profile, insert_contractor):
    insert_contractor("c1", website="https://odd.example")
    insert_contractor("c2", website="https://acme.example")

    result, _, _ = run_profile(
        ["c1", "c2"],
        {
            "https://odd.example": ValueError("unexpected page encoding"),
            "https://acme.example": _site("https://acme.example"),
        },
    )

    assert [r.outcome for r in result.results] == ["error", "enriched"]
    assert (result.successful, result.failed) == (1, 1)


def test_unknown_contractor_is_skipped(run_profile, insert_contractor):
    insert_contractor("c1", website="https://acme.example")

    result, _, _ = run_profile(["ghost", "c1"], {"https://acme.example": _site("https://acme.example")})

    assert result.processed == 2
    assert result.results[0].contractor_id == "ghost"
    assert result.results[0].outcome == "not_found"


def test_browser_failure_aborts_batch_and_keeps_partial_result(
    job_service, claim, extractor, insert_contractor
):
    for cid, site in (("c1", "https://one.example"), ("c2", "https://two.example"), ("c3", "https://three.example")):
        insert_contractor(cid, website=site)
    crawler = FakeCrawler(
        {
            "https://one.example": _site("https://one.example"),
            "https://two.example": CrawlerUnavailableError("Browser crashed while crawling"),
            "https://three.example": _site("https://three.example"),
        }
    )
    executor = ProfileEnrichmentExecutor(lambda: crawler, extractor)
    job = claim(JobType.PROFILE_ENRICHMENT, {"contractor_ids": ["c1", "c2", "c3"]})

    with pytest.raises(SystemFailureError) as exc_info:
        executor.execute(job, job_service.build_context(), MagicMock())

    partial = exc_info.value.partial_result
    assert partial.processed == 1
    assert partial.results[0].contractor_id == "c1"
    assert crawler.closed
    assert "https://three.example" not in crawler.crawled
    events = job_service.events.get_events(job.id)
    aborted = [e for e in events if e["action"] == "batch_aborted"]
    assert aborted and aborted[0]["metadata"]["processed"] == 1


def test_browser_failure_through_service_persists_partial_result(
    job_service, registry, claim, extractor, insert_contractor
):
    insert_contractor("c1", website="https://one.example")
    insert_contractor("c2", website="https://two.example")
    crawler = FakeCrawler(
        {
            "https://one.example": _site("https://one.example"),
            "https://two.example": CrawlerUnavailableError("Failed to launch browser"),
        }
    )
    registry.register(JobType.PROFILE_ENRICHMENT, ProfileEnrichmentExecutor(lambda: crawler, extractor))
    job = claim(JobType.PROFILE_ENRICHMENT, {"contractor_ids": ["c1", "c2"]})

    with pytest.raises(CrawlerUnavailableError):
        job_service.execute_job(job)

    stored = job_service.get_job(job.id)
    assert stored.status == JobStatus.PENDING.value
    assert stored.result["successful"] == 1
    assert stored.processed_items == 1


def test_taxonomy_load_failure_raises_initialization_error(job_service, claim, extractor):
    factory = MagicMock()
    executor = ProfileEnrichmentExecutor(factory, extractor)
    job = claim(JobType.PROFILE_ENRICHMENT, {"contractor_ids": ["c1"]})
    ctx = job_service.build_context()
    ctx.service_types = MagicMock()
    ctx.service_types.list_all.side_effect = sqlite3.OperationalError("no such table: service_types")

    with pytest.raises(InitializationError):
        executor.execute(job, ctx, MagicMock())

    factory.assert_not_called()
    assert job_service.events.get_events(job.id)[-1]["action"] == "init_failed"


def test_cancellation_checked_between_contractors(run_profile, insert_contractor, job_service):
    insert_contractor("c1", website="https://acme.example")
    ctx = job_service.build_context()
    ctx.cancel_event.set()

    result, crawler, _ = run_profile(["c1"], {"https://acme.example": _site("https://acme.example")}, ctx)

    assert result.processed == 0
    assert crawler.crawled == []
    assert crawler.closed


def test_progress_reports_total_first(job_service, claim, extractor, insert_contractor):
    insert_contractor("c1", website=None)
    insert_contractor("c2", website=None)
    executor = ProfileEnrichmentExecutor(lambda: FakeCrawler({}), extractor)
    job = claim(JobType.PROFILE_ENRICHMENT, {"contractor_ids": ["c1", "c2"]})
    on_progress = MagicMock()

    executor.execute(job, job_service.build_context(), on_progress)

    updates = [call.args[0] for call in on_progress.call_args_list]
    assert updates[0] == ProgressUpdate(total_items=2)
    assert updates[-1].processed_items == 2
