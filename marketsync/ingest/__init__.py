"""Ingestion helpers."""

from __future__ import annotations

import os
import pathlib

import yaml

from marketsync.ingest.models import TrackedProduct

PRODUCTS_PATH = pathlib.Path(os.environ.get("PRODUCTS_PATH", pathlib.Path(__file__).with_name("products.yml")))


def load_products(path: pathlib.Path | None = None, limit: int | None = None) -> list[TrackedProduct]:
    """Load the tracked product watchlist."""
    data = yaml.safe_load((path or PRODUCTS_PATH).read_text()) or []
    products = [TrackedProduct(**item) for item in data]
    if limit:
        return products[:limit]
    return products
