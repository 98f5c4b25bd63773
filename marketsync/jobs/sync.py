"""Market data sync job.

Each (provider, product) pair is an independent unit of work. Units run
concurrently up to ``SYNC_CONCURRENCY`` and a failing unit never stops the rest.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import Counter
from typing import Iterable

from dotenv import load_dotenv

from marketsync.db.session import create_engine_from_env
from marketsync.ingest import load_products
from marketsync.ingest.alias import AliasClient, AliasIngestor
from marketsync.ingest.models import ALIAS, STAGE_FAILED, STOCKX, StageResult, SyncOutcome, TrackedProduct
from marketsync.ingest.stockx import StockXClient, StockXIngestor

logger = logging.getLogger(__name__)


def _include_consigned() -> bool:
    return os.environ.get("INCLUDE_CONSIGNED", "true").lower() in {"1", "true", "yes"}


async def run_sync(products: Iterable[TrackedProduct] | None = None) -> list[SyncOutcome]:
    load_dotenv()
    engine = create_engine_from_env()
    tracked = list(products) if products is not None else load_products()
    concurrency = int(os.environ.get("SYNC_CONCURRENCY", "4"))
    include_consigned = _include_consigned()

    stockx_key = os.environ.get("STOCKX_API_KEY")
    alias_token = os.environ.get("ALIAS_API_TOKEN")
    stockx = StockXIngestor(engine, StockXClient(stockx_key)) if stockx_key else None
    alias = AliasIngestor(engine, AliasClient(alias_token)) if alias_token else None
    if stockx is None and alias is None:
        logger.warning("No provider credentials configured; nothing to sync")
        return []

    semaphore = asyncio.Semaphore(concurrency)

    async def unit(provider: str, product: TrackedProduct) -> SyncOutcome:
        async with semaphore:
            try:
                if provider == STOCKX:
                    return await stockx.sync(product)
                return await alias.sync(product, include_consigned=include_consigned)
            except Exception as exc:
                logger.exception("Unexpected failure syncing %s for %s", provider, product.sku)
                return SyncOutcome(provider, product.sku, StageResult("sync", STAGE_FAILED, error=str(exc)))

    jobs = []
    for product in tracked:
        if stockx and product.stockx_product_id:
            jobs.append(unit(STOCKX, product))
        if alias and product.alias_catalog_id:
            jobs.append(unit(ALIAS, product))

    try:
        outcomes = list(await asyncio.gather(*jobs))
    finally:
        if stockx:
            await stockx.client.close()
        if alias:
            await alias.client.close()

    summarize(outcomes)
    return outcomes


def summarize(outcomes: Iterable[SyncOutcome]) -> Counter:
    counts: Counter = Counter()
    for outcome in outcomes:
        counts[outcome.status] += 1
        if outcome.status != "success":
            logger.warning(
                "%s sync for %s %s: %s",
                outcome.provider,
                outcome.sku,
                outcome.status,
                outcome.availability.error or "; ".join(outcome.warnings),
            )
    logger.info(
        "Sync finished: %s succeeded, %s partial, %s failed",
        counts["success"],
        counts["partial"],
        counts["failed"],
    )
    return counts


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_sync())
