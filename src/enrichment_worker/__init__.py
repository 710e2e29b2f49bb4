"""Background enrichment worker for the contractor directory."""

__version__ = "0.1.0"
