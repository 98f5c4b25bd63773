"""Market data normalization and snapshot ingestion."""

__version__ = "0.3.0"
