"""Prompt templates for contractor website extraction."""

from typing import List

from enrichment_worker.constants import AI_EXTRACTION_MAX_INPUT_CHARS
from enrichment_worker.job_queue.models import ServiceType

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
SOCIAL_NETWORKS = ("facebook", "instagram", "twitter", "linkedin", "youtube", "yelp")


def build_system_prompt(service_types: List[ServiceType]) -> str:
    """
    Build the system prompt listing the allowed service-type slugs.

    Args:
        service_types: Taxonomy the model may choose from

    Returns:
        System prompt string
    """
    service_list = "\n".join(f"- {st.slug}: {st.name}" for st in service_types)
    hours = ",\n".join(
        f'    "{day}": {{"open": "<h:mm AM>", "close": "<h:mm PM>"}} or null' for day in DAYS
    )
    socials = ",\n".join(f'    "{name}": "<url or null>"' for name in SOCIAL_NETWORKS)

    return f"""You are extracting business information from a contractor website.
Your task is to identify contact details, business hours, social media links, and applicable service categories.

Available service type slugs to choose from:
{service_list}

Rules:
- Only return service_slugs from the list above
- For phone numbers, format as: (XXX) XXX-XXXX or leave as found
- For email, extract the primary business email
- For business hours, use 12-hour format (e.g., "8:00 AM", "5:00 PM")
- If information is not found, use null
- Be conservative - only extract information that is clearly present

Return ONLY a JSON object with this exact structure:
{{
  "business_hours": {{
{hours}
  }} or null,
  "email": "<email or null>",
  "phone": "<phone or null>",
  "social_links": {{
{socials}
  }} or null,
  "service_slugs": ["<slug>", ...]
}}"""


def build_user_prompt(company_name: str, website_content: str) -> str:
    """Build the user prompt carrying the (truncated) crawled website text."""
    return (
        f'Extract business information for "{company_name}" from this website content:\n\n'
        f"{website_content[:AI_EXTRACTION_MAX_INPUT_CHARS]}"
    )
