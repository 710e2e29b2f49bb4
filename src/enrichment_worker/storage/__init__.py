"""SQLite persistence for jobs, contractors, service types and reviews."""

from enrichment_worker.storage.contractors import ContractorRepository
from enrichment_worker.storage.reviews import ReviewRepository
from enrichment_worker.storage.schema import ensure_schema
from enrichment_worker.storage.service_types import ServiceTypeRepository

__all__ = [
    "ContractorRepository",
    "ReviewRepository",
    "ServiceTypeRepository",
    "ensure_schema",
]
