"""AI extraction of business details from crawled contractor websites.

Uses the OpenAI chat completions API in JSON mode. Failures of any kind
(network, HTTP status, unparseable or invalid JSON) come back as an
unsuccessful ExtractionOutput so one bad site never aborts a batch.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

from openai import APIConnectionError, APIStatusError, APITimeoutError, OpenAI
from pydantic import BaseModel, Field, ValidationError

from enrichment_worker.ai.prompts import build_system_prompt, build_user_prompt
from enrichment_worker.ai.response_parser import parse_json_response
from enrichment_worker.constants import (
    AI_EXTRACTION_MAX_TOKENS,
    AI_EXTRACTION_MODEL,
    AI_EXTRACTION_TEMPERATURE,
)
from enrichment_worker.exceptions import ConfigurationError
from enrichment_worker.job_queue.models import ServiceType
from enrichment_worker.logging_config import get_structured_logger

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60


class DayHours(BaseModel):
    open: Optional[str] = None
    close: Optional[str] = None


class BusinessHours(BaseModel):
    monday: Optional[DayHours] = None
    tuesday: Optional[DayHours] = None
    wednesday: Optional[DayHours] = None
    thursday: Optional[DayHours] = None
    friday: Optional[DayHours] = None
    saturday: Optional[DayHours] = None
    sunday: Optional[DayHours] = None


class SocialLinks(BaseModel):
    facebook: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    linkedin: Optional[str] = None
    youtube: Optional[str] = None
    yelp: Optional[str] = None


class ExtractionResult(BaseModel):
    """Structured business details pulled from a website."""

    business_hours: Optional[BusinessHours] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    social_links: Optional[SocialLinks] = None
    service_slugs: List[str] = Field(default_factory=list)


class ExtractionOutput(BaseModel):
    success: bool
    result: Optional[ExtractionResult] = None
    tokens_used: int = 0
    error: Optional[str] = None


class AIExtractor:
    """Thin wrapper around the OpenAI SDK for website extraction."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[OpenAI] = None,
        timeout: int = _DEFAULT_TIMEOUT,
    ):
        """
        Initialize the extractor.

        Args:
            api_key: OpenAI API key (default: OPENAI_API_KEY env var)
            model: Model name (default: OPENAI_MODEL env var or gpt-4o-mini)
            client: Pre-built OpenAI client (tests inject a mock)
            timeout: Request timeout in seconds

        Raises:
            ConfigurationError: If no client is given and no API key is set
        """
        self.model = model or os.getenv("OPENAI_MODEL") or AI_EXTRACTION_MODEL
        if client is not None:
            self._client = client
        else:
            key = api_key or os.getenv("OPENAI_API_KEY")
            if not key:
                raise ConfigurationError("OPENAI_API_KEY not set")
            self._client = OpenAI(api_key=key, timeout=timeout)
        self.slogger = get_structured_logger(__name__)

    def extract(
        self,
        website_content: str,
        service_types: List[ServiceType],
        company_name: str,
    ) -> ExtractionOutput:
        """
        Extract business details for one contractor.

        Args:
            website_content: Concatenated page text from the crawler
            service_types: Taxonomy the model may assign
            company_name: Contractor name, for the prompt

        Returns:
            ExtractionOutput; ``tokens_used`` is set whenever the model answered
        """
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": build_system_prompt(service_types)},
                    {"role": "user", "content": build_user_prompt(company_name, website_content)},
                ],
                temperature=AI_EXTRACTION_TEMPERATURE,
                max_tokens=AI_EXTRACTION_MAX_TOKENS,
                response_format={"type": "json_object"},
            )
        except APITimeoutError:
            return self._failure(company_name, "AI request timed out")
        except APIConnectionError as e:
            return self._failure(company_name, f"Could not reach AI provider: {e}")
        except APIStatusError as e:
            return self._failure(company_name, f"AI API error (HTTP {e.status_code}): {e.message}")

        usage = getattr(response, "usage", None)
        tokens_used = int(getattr(usage, "total_tokens", 0) or 0)
        text = response.choices[0].message.content if response.choices else None

        parsed = parse_json_response(text)
        if parsed is None:
            return self._failure(company_name, "No structured output returned", tokens_used)

        try:
            result = ExtractionResult.model_validate(parsed)
        except ValidationError as e:
            return self._failure(company_name, f"Invalid extraction output: {e}", tokens_used)

        allowed = {st.slug for st in service_types}
        unknown = [slug for slug in result.service_slugs if slug not in allowed]
        if unknown:
            logger.debug("Dropping unknown service slugs for %s: %s", company_name, unknown)
            result.service_slugs = [slug for slug in result.service_slugs if slug in allowed]

        self.slogger.ai_activity(
            "extract",
            "completed",
            {
                "model": self.model,
                "company_name": company_name,
                "tokens": tokens_used,
                "services_found": len(result.service_slugs),
            },
        )
        return ExtractionOutput(success=True, result=result, tokens_used=tokens_used)

    def _failure(self, company_name: str, error: str, tokens_used: int = 0) -> ExtractionOutput:
        self.slogger.ai_activity(
            "extract",
            "failed",
            {"model": self.model, "company_name": company_name, "error": error[:500]},
        )
        return ExtractionOutput(success=False, error=error, tokens_used=tokens_used)
