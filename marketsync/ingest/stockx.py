"""StockX market-data ingestion.

StockX returns one market-data document per product with an entry per size
variant. Amounts are decimal strings in major units. Each variant yields a
standard record and, when Flex amounts are present, an expedited record.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime
from typing import Any
from urllib.parse import urlparse

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.db.schema import GLOBAL_REGION
from marketsync.ingest.errors import ProviderTransportError
from marketsync.ingest.models import (
    STAGE_FAILED,
    STAGE_SKIPPED,
    STOCKX,
    MarketRecord,
    StageResult,
    SyncOutcome,
    TrackedProduct,
)
from marketsync.ingest.payloads import StockXMarketVariant, parse_stockx_market_data
from marketsync.ingest.snapshots import RawSnapshotLogger
from marketsync.logic.units import is_valid_size, parse_decimal, parse_major_units, size_numeric
from marketsync.store.records import MarketRecordStore
from marketsync.utils.dates import utc_now
from marketsync.utils.rate_limit import RateLimiter
from marketsync.utils.retry import retry_async

logger = logging.getLogger(__name__)

STOCKX_BASE_URL = os.environ.get("STOCKX_BASE_URL", "https://api.stockx.com")

MARKET_DATA_ENDPOINT = "market_data"
SOURCE_STANDARD = "stockx_market_data"
SOURCE_FLEX = "stockx_market_data_flex"


class StockXClient:
    def __init__(
        self,
        api_key: str | None = None,
        access_token: str | None = None,
        *,
        base_url: str | None = None,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.api_key = api_key or os.environ.get("STOCKX_API_KEY")
        self.access_token = access_token or os.environ.get("STOCKX_ACCESS_TOKEN")
        self.base_url = (base_url or STOCKX_BASE_URL).rstrip("/")
        self.session = session or httpx.AsyncClient(timeout=30.0)
        self._rate_limiter = rate_limiter or RateLimiter()

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_market_data(self, product_id: str, currency: str, region: str | None = None) -> Any:
        url = f"{self.base_url}/v2/catalog/products/{product_id}/market-data"
        params = {"currencyCode": currency}
        if region:
            params["country"] = region
        headers = {}
        if self.api_key:
            headers["x-api-key"] = self.api_key
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        await self._rate_limiter.wait_for_host(urlparse(url).netloc)
        try:
            response = await retry_async(self.session.get)(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderTransportError(
                f"StockX market-data {product_id} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except (httpx.HTTPError, OSError, asyncio.TimeoutError, ValueError) as exc:
            raise ProviderTransportError(f"StockX market-data {product_id} failed: {exc}") from exc


def map_market_data(
    payload: Any,
    product: TrackedProduct,
    *,
    snapshot_id: str | None = None,
    captured_at: datetime | None = None,
) -> list[MarketRecord]:
    """Turn a market-data response into standard and expedited records."""
    if not product.stockx_product_id:
        raise ValueError(f"{product.sku} has no StockX product id")
    records: list[MarketRecord] = []
    for variant in parse_stockx_market_data(payload):
        try:
            records.extend(_map_variant(variant, product, snapshot_id, captured_at))
        except (ArithmeticError, ValueError) as exc:
            logger.warning("Skipping StockX variant %s of %s: %s", variant.variant_id, product.sku, exc)
    return records


def _map_variant(
    variant: StockXMarketVariant,
    product: TrackedProduct,
    snapshot_id: str | None,
    captured_at: datetime | None,
) -> list[MarketRecord]:
    label = variant.label
    if not label:
        raise ValueError("variant has no size")
    numeric = size_numeric(label)
    if not is_valid_size(numeric, product.category):
        logger.info("Filtered size %s of %s for category %s", label, product.sku, product.category)
        return []

    shared: dict[str, Any] = {
        "provider": STOCKX,
        "provider_product_id": product.stockx_product_id,
        "provider_variant_id": variant.variant_id,
        "sku": product.sku,
        "size_label": label,
        "size_numeric": numeric,
        "currency_code": product.currency,
        "region_code": product.region or GLOBAL_REGION,
        "raw_snapshot_id": snapshot_id,
        "captured_at": captured_at,
    }
    last_sale = parse_major_units(variant.last_sale_amount, field="lastSaleAmount")
    standard = MarketRecord(
        provider_source=SOURCE_STANDARD,
        lowest_ask=parse_major_units(variant.lowest_ask_amount, field="lowestAskAmount"),
        highest_bid=parse_major_units(variant.highest_bid_amount, field="highestBidAmount"),
        last_sale_price=last_sale,
        sell_faster_price=parse_major_units(variant.sell_faster_amount, field="sellFasterAmount"),
        earn_more_price=parse_major_units(variant.earn_more_amount, field="earnMoreAmount"),
        sales_last_72h=variant.sales_last_72h,
        sales_last_30d=variant.sales_last_30d,
        total_sales=variant.total_sales,
        average_price=parse_major_units(variant.average_price, field="averagePrice"),
        volatility=parse_decimal(variant.volatility, field="volatility"),
        price_premium=parse_decimal(variant.price_premium, field="pricePremium"),
        **shared,
    )
    if standard.lowest_ask is None and standard.highest_bid is None:
        logger.info("StockX variant %s of %s has no ask or bid", variant.variant_id, product.sku)
    records = [standard]

    flex = variant.flex
    if flex is not None and flex.has_amounts:
        # Volume and risk metrics are shared with the standard row.
        records.append(
            MarketRecord(
                provider_source=SOURCE_FLEX,
                is_expedited=True,
                lowest_ask=parse_major_units(flex.lowest_ask, field="flexMarketData.lowestAsk"),
                highest_bid=parse_major_units(flex.highest_bid, field="flexMarketData.highestBidAmount"),
                last_sale_price=last_sale,
                sell_faster_price=parse_major_units(flex.sell_faster, field="flexMarketData.sellFaster"),
                earn_more_price=parse_major_units(flex.earn_more, field="flexMarketData.earnMore"),
                **shared,
            )
        )
    return records


class StockXIngestor:
    def __init__(
        self,
        engine: Engine,
        client: StockXClient | None = None,
        *,
        store: MarketRecordStore | None = None,
        snapshots: RawSnapshotLogger | None = None,
    ) -> None:
        self.engine = engine
        self.client = client or StockXClient()
        self.store = store or MarketRecordStore(engine)
        self.snapshots = snapshots or RawSnapshotLogger(engine, STOCKX)

    async def sync(self, product: TrackedProduct, *, captured_at: datetime | None = None) -> SyncOutcome:
        stage = await self.sync_market_data(product, captured_at=captured_at)
        return SyncOutcome(provider=STOCKX, sku=product.sku, availability=stage)

    async def sync_market_data(
        self, product: TrackedProduct, *, captured_at: datetime | None = None
    ) -> StageResult:
        if not product.stockx_product_id:
            logger.info("Skipping StockX sync for %s: no product id", product.sku)
            return StageResult(MARKET_DATA_ENDPOINT, STAGE_SKIPPED)
        parameters = _parameters(product)
        loop = asyncio.get_running_loop()
        try:
            payload = await self.client.fetch_market_data(product.stockx_product_id, product.currency, product.region)
        except ProviderTransportError as exc:
            logger.warning("StockX fetch failed for %s: %s", product.sku, exc)
            await loop.run_in_executor(
                None,
                lambda: self.snapshots.record(
                    MARKET_DATA_ENDPOINT, parameters, None, http_status=exc.status_code, error_message=str(exc)
                ),
            )
            return StageResult(MARKET_DATA_ENDPOINT, STAGE_FAILED, error=str(exc))
        captured = captured_at or utc_now()
        try:
            written = await loop.run_in_executor(None, self._persist, product, parameters, payload, captured)
        except (SQLAlchemyError, ArithmeticError, ValueError) as exc:
            logger.exception("Failed to store StockX market data for %s", product.sku)
            return StageResult(MARKET_DATA_ENDPOINT, STAGE_FAILED, error=str(exc))
        logger.info("Stored %s StockX records for %s", written, product.sku)
        return StageResult(MARKET_DATA_ENDPOINT, written=written)

    def _persist(
        self, product: TrackedProduct, parameters: dict[str, Any], payload: Any, captured_at: datetime
    ) -> int:
        snapshot_id = self.snapshots.record(
            MARKET_DATA_ENDPOINT, parameters, payload, http_status=200, captured_at=captured_at
        )
        records = map_market_data(payload, product, snapshot_id=snapshot_id, captured_at=captured_at)
        return self.store.upsert(records)


def _parameters(product: TrackedProduct) -> dict[str, Any]:
    return {
        "product_id": product.stockx_product_id,
        "sku": product.sku,
        "currency": product.currency,
        "region": product.region,
    }