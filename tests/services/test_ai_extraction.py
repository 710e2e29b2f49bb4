"""Tests for AI extraction and response parsing."""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import httpx
import pytest
from openai import APITimeoutError

from enrichment_worker.ai.extraction import AIExtractor
from enrichment_worker.ai.prompts import build_system_prompt, build_user_prompt
from enrichment_worker.ai.response_parser import extract_json_from_response, parse_json_response
from enrichment_worker.exceptions import ConfigurationError
from enrichment_worker.job_queue.models import ServiceType

SERVICE_TYPES = [
    ServiceType(id="st-concrete", name="Concrete Contractor", slug="concrete-contractor"),
    ServiceType(id="st-driveway", name="Driveway Paving", slug="driveway-paving"),
]


def _completion(content, total_tokens=1200):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


@pytest.fixture
def openai_client():
    return MagicMock(name="openai_client")


@pytest.fixture
def extractor(openai_client):
    return AIExtractor(client=openai_client, model="gpt-4o-mini")


# ============================================================================
# Response parsing
# ============================================================================


@pytest.mark.parametrize(
    "response",
    [
        '{"email": "a@b.example"}',
        '```json\n{"email": "a@b.example"}\n```',
        'Here is the data:\n```\n{"email": "a@b.example"}\n```\nLet me know!',
        'Sure. {"email": "a@b.example"} Hope that helps.',
    ],
)
def test_extract_json_from_response_variants(response):
    assert json.loads(extract_json_from_response(response)) == {"email": "a@b.example"}


def test_parse_json_response_falls_back_to_default():
    assert parse_json_response("not json at all", default={}) == {}
    assert parse_json_response('["a", "b"]') is None
    assert parse_json_response(None, default={"x": 1}) == {"x": 1}


# ============================================================================
# AIExtractor
# ============================================================================


def test_requires_api_key_without_client(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ConfigurationError):
        AIExtractor()


def test_extract_parses_and_filters_slugs(extractor, openai_client):
    openai_client.chat.completions.create.return_value = _completion(
        json.dumps(
            {
                "email": "info@acme.example",
                "phone": "(503) 555-0100",
                "business_hours": {"monday": {"open": "8:00 AM", "close": "5:00 PM"}},
                "social_links": {"facebook": "https://facebook.com/acme"},
                "service_slugs": ["driveway-paving", "roofing"],
            }
        )
    )

    output = extractor.extract("Acme pours driveways.", SERVICE_TYPES, "Acme Concrete")

    assert output.success is True
    assert output.tokens_used == 1200
    assert output.result.email == "info@acme.example"
    assert output.result.business_hours.monday.open == "8:00 AM"
    assert output.result.service_slugs == ["driveway-paving"]
    kwargs = openai_client.chat.completions.create.call_args.kwargs
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["model"] == "gpt-4o-mini"


def test_unparseable_output_keeps_token_count(extractor, openai_client):
    openai_client.chat.completions.create.return_value = _completion("I could not find anything.", 640)

    output = extractor.extract("...", SERVICE_TYPES, "Acme Concrete")

    assert output.success is False
    assert output.tokens_used == 640
    assert output.error == "No structured output returned"


def test_invalid_shape_is_a_failure(extractor, openai_client):
    openai_client.chat.completions.create.return_value = _completion('{"service_slugs": "driveway-paving"}')

    output = extractor.extract("...", SERVICE_TYPES, "Acme Concrete")

    assert output.success is False
    assert output.error.startswith("Invalid extraction output")


def test_timeout_is_a_failure(extractor, openai_client):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    openai_client.chat.completions.create.side_effect = APITimeoutError(request=request)

    output = extractor.extract("...", SERVICE_TYPES, "Acme Concrete")

    assert output.success is False
    assert output.error == "AI request timed out"
    assert output.tokens_used == 0


def test_prompts_list_taxonomy_and_truncate_content():
    system = build_system_prompt(SERVICE_TYPES)
    user = build_user_prompt("Acme Concrete", "x" * 50000)

    assert "- driveway-paving: Driveway Paving" in system
    assert '"service_slugs"' in system
    assert user.startswith('Extract business information for "Acme Concrete"')
    assert len(user) < 41000
