"""Tests for job models and payload validation."""

from datetime import datetime, timedelta, timezone

import pytest

from enrichment_worker.exceptions import JobPayloadError, UnknownJobTypeError
from enrichment_worker.job_queue.models import (
    BackgroundJob,
    ImageEnrichmentPayload,
    ImageRetryPayload,
    JobStatus,
    JobType,
    ProfileEnrichmentPayload,
    ProfileEnrichmentResult,
    ProfileItemResult,
    ReviewEnrichmentCandidate,
    ReviewEnrichmentPayload,
    ReviewEnrichmentResult,
    ReviewItemResult,
    parse_payload,
)

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestParsePayload:
    def test_profile_payload(self):
        payload = parse_payload("profile_enrichment", {"contractor_ids": ["c1", "c2"]})
        assert isinstance(payload, ProfileEnrichmentPayload)
        assert payload.contractor_ids == ["c1", "c2"]

    def test_review_payload_defaults(self):
        payload = parse_payload(JobType.REVIEW_ENRICHMENT, {"contractor_ids": ["c1"]})
        assert isinstance(payload, ReviewEnrichmentPayload)
        assert payload.max_depth == 50
        assert payload.continuous is False

    def test_image_retry_payload(self):
        payload = parse_payload(
            "image_retry",
            {
                "contractor_id": "c1",
                "images": [{"review_id": "r1", "original_url": "https://lh3.example/a.jpg"}],
                "attempt_number": 2,
            },
        )
        assert isinstance(payload, ImageRetryPayload)
        assert payload.images[0].review_id == "r1"

    def test_image_enrichment_payload_bounds(self):
        payload = parse_payload("image_enrichment", {})
        assert isinstance(payload, ImageEnrichmentPayload)
        assert (payload.batch_size, payload.continuous) == (10, False)
        with pytest.raises(JobPayloadError):
            parse_payload("image_enrichment", {"batch_size": 0})
        with pytest.raises(JobPayloadError):
            parse_payload("image_enrichment", {"batch_size": 101})

    def test_chain_exclusions_keep_first_seen_order(self):
        payload = ReviewEnrichmentPayload(contractor_ids=["c3", "c1"], chain_attempted_ids=["c1", "c2"])
        assert payload.chain_exclusions() == ["c1", "c2", "c3"]

    def test_typed_model_passes_through(self):
        model = ReviewEnrichmentPayload(contractor_ids=["c1"], continuous=True)
        assert parse_payload(JobType.REVIEW_ENRICHMENT, model) is model

    def test_model_for_other_type_rejected(self):
        with pytest.raises(JobPayloadError):
            parse_payload(JobType.IMAGE_RETRY, ProfileEnrichmentPayload(contractor_ids=["c1"]))

    def test_shape_mismatch_rejected(self):
        with pytest.raises(JobPayloadError):
            parse_payload("profile_enrichment", {"contractor_id": "c1", "images": []})

    @pytest.mark.parametrize(
        "payload",
        [
            {"contractor_ids": []},
            {"contractor_ids": [f"c{i}" for i in range(11)]},
            {"contractor_ids": ["c1"], "max_depth": 0},
            {"contractor_ids": ["c1"], "max_depth": 1501},
        ],
    )
    def test_review_payload_bounds(self, payload):
        with pytest.raises(JobPayloadError):
            parse_payload("review_enrichment", payload)

    @pytest.mark.parametrize("attempt", [0, 5])
    def test_image_retry_attempt_bounds(self, attempt):
        with pytest.raises(JobPayloadError):
            parse_payload(
                "image_retry",
                {
                    "contractor_id": "c1",
                    "images": [{"review_id": "r1", "original_url": "https://x.example/a.jpg"}],
                    "attempt_number": attempt,
                },
            )

    def test_image_retry_needs_images(self):
        with pytest.raises(JobPayloadError):
            parse_payload("image_retry", {"contractor_id": "c1", "images": [], "attempt_number": 1})

    def test_unknown_type(self):
        with pytest.raises(UnknownJobTypeError):
            parse_payload("geocode", {})


class TestBackgroundJob:
    def test_record_roundtrip_keeps_payload_and_result(self):
        job = BackgroundJob(
            job_type=JobType.REVIEW_ENRICHMENT,
            payload={"contractor_ids": ["c1"], "max_depth": 20, "continuous": False},
            result={"processed": 1},
            scheduled_for=NOW,
        )

        record = job.to_record()
        assert isinstance(record["payload"], str)
        assert record["scheduled_for"].startswith("2026-03-02T12:00:00")

        restored = BackgroundJob.from_record(record)
        assert restored.payload == job.payload
        assert restored.result == {"processed": 1}
        assert restored.scheduled_for == NOW
        assert restored.status == JobStatus.PENDING.value

    def test_typed_payload(self):
        job = BackgroundJob(job_type="profile_enrichment", payload={"contractor_ids": ["c1"]})
        assert isinstance(job.typed_payload(), ProfileEnrichmentPayload)

    def test_is_terminal(self):
        assert BackgroundJob(job_type="image_retry", status="cancelled").is_terminal
        assert not BackgroundJob(job_type="image_retry", status="processing").is_terminal


class TestReviewCandidate:
    def _candidate(self, **overrides):
        data = {"id": "c1", "company_name": "Acme", "google_cid": "123", "lat": 45.5, "lng": -122.6}
        data.update(overrides)
        return ReviewEnrichmentCandidate(**data)

    def test_eligible(self):
        assert self._candidate().ineligibility_reason(NOW) is None

    def test_missing_cid(self):
        assert self._candidate(google_cid=None).ineligibility_reason(NOW) == "Missing Google CID"

    def test_missing_coordinates(self):
        assert self._candidate(lng=None).ineligibility_reason(NOW) == "Missing coordinates"

    def test_recent_success_is_in_cooldown(self):
        candidate = self._candidate(
            review_enrichment_status="success", review_enrichment_at=NOW - timedelta(days=29)
        )
        assert candidate.ineligibility_reason(NOW) == "Recently enriched (within 30 days)"

    def test_old_success_is_eligible(self):
        candidate = self._candidate(
            review_enrichment_status="success", review_enrichment_at=NOW - timedelta(days=31)
        )
        assert candidate.ineligibility_reason(NOW) is None

    def test_recent_failure_is_eligible(self):
        candidate = self._candidate(
            review_enrichment_status="failed", review_enrichment_at=NOW - timedelta(days=1)
        )
        assert candidate.in_cooldown(NOW) is False


class TestResults:
    def test_profile_record_counts(self):
        result = ProfileEnrichmentResult()
        result.record(
            ProfileItemResult(
                contractor_id="c1",
                company_name="A",
                status="success",
                outcome="enriched",
                message="ok",
                tokens_used=1200,
            )
        )
        result.record(
            ProfileItemResult(
                contractor_id="c2", company_name="B", status="skipped", outcome="not_applicable", message="-"
            )
        )
        result.record(
            ProfileItemResult(
                contractor_id="c3",
                company_name="C",
                status="failed",
                outcome="extraction_failed",
                message="-",
                tokens_used=300,
            )
        )

        assert (result.processed, result.successful, result.skipped, result.failed) == (3, 1, 1, 1)
        assert result.total_tokens == 1500

    def test_review_tally(self):
        result = ReviewEnrichmentResult(
            results=[
                ReviewItemResult(contractor_id="c1", company_name="A", status="success"),
                ReviewItemResult(contractor_id="c2", company_name="B", status="skipped"),
                ReviewItemResult(contractor_id="c3", company_name="C", status="skipped"),
            ]
        )
        result.tally()
        assert (result.processed, result.successful, result.skipped, result.failed) == (3, 1, 2, 0)
