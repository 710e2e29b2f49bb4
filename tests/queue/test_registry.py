"""Tests for JobExecutorRegistry."""

from unittest.mock import MagicMock

import pytest

from enrichment_worker.exceptions import ConfigurationError, UnknownJobTypeError
from enrichment_worker.job_queue.executors import build_registry
from enrichment_worker.job_queue.models import JobType
from enrichment_worker.job_queue.registry import JobExecutorRegistry


def test_get_returns_registered_executor():
    registry = JobExecutorRegistry()
    executor = MagicMock()
    registry.register(JobType.REVIEW_ENRICHMENT, executor)

    assert registry.get("review_enrichment") is executor
    assert registry.has(JobType.REVIEW_ENRICHMENT)


def test_get_unregistered_type_raises():
    registry = JobExecutorRegistry()
    registry.register(JobType.REVIEW_ENRICHMENT, MagicMock())

    with pytest.raises(UnknownJobTypeError) as exc_info:
        registry.get(JobType.IMAGE_RETRY)
    assert exc_info.value.job_type == "image_retry"


def test_get_unknown_tag_raises():
    registry = JobExecutorRegistry()

    with pytest.raises(UnknownJobTypeError):
        registry.get("send_newsletter")
    assert registry.has("send_newsletter") is False


def test_unknown_job_type_is_configuration_error():
    with pytest.raises(ConfigurationError):
        JobExecutorRegistry().get(JobType.PROFILE_ENRICHMENT)


def test_double_registration_raises():
    registry = JobExecutorRegistry()
    registry.register(JobType.IMAGE_RETRY, MagicMock())

    with pytest.raises(ConfigurationError):
        registry.register("image_retry", MagicMock())


def test_registries_are_independent():
    first = JobExecutorRegistry()
    first.register(JobType.IMAGE_RETRY, MagicMock())

    assert JobExecutorRegistry().registered_types() == []
    assert first.registered_types() == ["image_retry"]


def test_build_registry_registers_all_types():
    registry = build_registry(
        crawler_factory=MagicMock(),
        extractor=MagicMock(),
        reviews_client_factory=MagicMock(),
        photo_downloader=MagicMock(),
        gallery_downloader=MagicMock(),
    )

    assert registry.registered_types() == sorted(t.value for t in JobType)


def test_build_registry_without_extractor_skips_profile_enrichment():
    registry = build_registry(
        crawler_factory=MagicMock(),
        extractor=None,
        reviews_client_factory=MagicMock(),
        photo_downloader=None,
    )

    assert registry.registered_types() == ["review_enrichment"]
    with pytest.raises(UnknownJobTypeError):
        registry.get(JobType.PROFILE_ENRICHMENT)
