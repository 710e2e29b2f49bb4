"""AI extraction of contractor business details."""

from enrichment_worker.ai.extraction import AIExtractor, ExtractionOutput, ExtractionResult

__all__ = ["AIExtractor", "ExtractionOutput", "ExtractionResult"]
