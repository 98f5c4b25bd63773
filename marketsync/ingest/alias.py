"""Alias pricing-insights ingestion.

Alias is ingested in two passes. The availability pass returns every size in one
call and inserts canonical records with volume fields left empty. The recent
sales pass aggregates individual sales and backfills volume fields onto the
rows the first pass wrote. Either pass can be retried on its own, and a failed
backfill never undoes the availability results.

Alias amounts are integer cents encoded as strings.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any
from urllib.parse import urlparse

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.db.schema import GLOBAL_REGION
from marketsync.ingest.errors import ProviderTransportError
from marketsync.ingest.models import (
    ALIAS,
    STAGE_FAILED,
    STAGE_SKIPPED,
    MarketRecord,
    RecordIdentity,
    SaleDetail,
    StageResult,
    SyncOutcome,
    TrackedProduct,
    VolumeUpdate,
)
from marketsync.ingest.payloads import (
    AliasRecentSale,
    AliasVariant,
    parse_alias_availabilities,
    parse_alias_recent_sales,
)
from marketsync.ingest.snapshots import RawSnapshotLogger
from marketsync.logic.units import is_valid_size, parse_minor_units, size_label
from marketsync.store.records import MarketRecordStore
from marketsync.store.sales import RecentSalesStore
from marketsync.utils.dates import to_utc_naive, utc_now
from marketsync.utils.rate_limit import RateLimiter
from marketsync.utils.retry import retry_async

logger = logging.getLogger(__name__)

ALIAS_BASE_URL = os.environ.get("ALIAS_BASE_URL", "https://api.alias.org")

AVAILABILITIES_ENDPOINT = "pricing_availabilities"
RECENT_SALES_ENDPOINT = "recent_sales"
SOURCE_AVAILABILITIES = "alias_availabilities"

PRODUCT_CONDITION_NEW = "PRODUCT_CONDITION_NEW"
PACKAGING_CONDITION_GOOD = "PACKAGING_CONDITION_GOOD_CONDITION"

RECENT_WINDOW = timedelta(hours=72)
MONTH_WINDOW = timedelta(days=30)
RECENT_SALES_LIMIT = 100


class AliasClient:
    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str | None = None,
        session: httpx.AsyncClient | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.token = token or os.environ.get("ALIAS_API_TOKEN")
        self.base_url = (base_url or ALIAS_BASE_URL).rstrip("/")
        self.session = session or httpx.AsyncClient(timeout=30.0)
        self._rate_limiter = rate_limiter or RateLimiter()

    async def close(self) -> None:
        await self.session.aclose()

    async def fetch_availabilities(self, catalog_id: str, region: str | None = None) -> Any:
        params: dict[str, Any] = {"catalog_id": catalog_id}
        if region:
            params["region_id"] = region
        return await self._get_json("/api/v1/pricing_insights/availabilities", params)

    async def fetch_recent_sales(
        self, catalog_id: str, region: str | None = None, *, limit: int = RECENT_SALES_LIMIT
    ) -> Any:
        params: dict[str, Any] = {"catalog_id": catalog_id, "limit": limit}
        if region:
            params["region_id"] = region
        return await self._get_json("/api/v1/pricing_insights/recent_sales", params)

    async def _get_json(self, path: str, params: dict[str, Any]) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        await self._rate_limiter.wait_for_host(urlparse(url).netloc)
        try:
            response = await retry_async(self.session.get)(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderTransportError(
                f"Alias {path} returned {exc.response.status_code}", status_code=exc.response.status_code
            ) from exc
        except (httpx.HTTPError, OSError, asyncio.TimeoutError, ValueError) as exc:
            raise ProviderTransportError(f"Alias {path} failed: {exc}") from exc


# Availability pass -------------------------------------------------------


def _is_standard_condition(variant: AliasVariant) -> bool:
    return (
        variant.product_condition == PRODUCT_CONDITION_NEW
        and variant.packaging_condition == PACKAGING_CONDITION_GOOD
    )


def map_availabilities(
    payload: Any,
    product: TrackedProduct,
    *,
    include_consigned: bool = False,
    snapshot_id: str | None = None,
    captured_at: datetime | None = None,
) -> list[MarketRecord]:
    """Map an availabilities response to canonical records.

    Only new items in good packaging are kept. Consigned entries are kept only
    when ``include_consigned`` is set. Volume fields are left for the backfill.
    """
    if not product.alias_catalog_id:
        raise ValueError(f"{product.sku} has no Alias catalog id")
    standard = [v for v in parse_alias_availabilities(payload) if _is_standard_condition(v)]
    regular = [v for v in standard if not v.consigned]
    consigned = [v for v in standard if v.consigned]
    selected = regular + consigned if include_consigned else regular
    logger.info(
        "Alias %s: %s standard-condition variants (%s consigned), mapping %s",
        product.sku,
        len(standard),
        len(consigned),
        len(selected),
    )

    records: list[MarketRecord] = []
    for variant in selected:
        try:
            record = _map_availability(variant, product, snapshot_id, captured_at)
        except (ArithmeticError, ValueError) as exc:
            logger.warning("Skipping Alias size %s of %s: %s", variant.size, product.sku, exc)
            continue
        if record is not None:
            records.append(record)
    return records


def _map_availability(
    variant: AliasVariant,
    product: TrackedProduct,
    snapshot_id: str | None,
    captured_at: datetime | None,
) -> MarketRecord | None:
    label = size_label(variant.size)
    numeric = Decimal(label)
    if not is_valid_size(numeric, product.category):
        logger.info("Filtered size %s of %s for category %s", label, product.sku, product.category)
        return None
    availability = variant.availability
    if availability is None:
        logger.info("Alias size %s of %s has no availability; skipping", label, product.sku)
        return None
    return MarketRecord(
        provider=ALIAS,
        provider_source=SOURCE_AVAILABILITIES,
        provider_product_id=product.alias_catalog_id,
        sku=product.sku,
        size_label=label,
        size_numeric=numeric,
        currency_code=product.currency,
        region_code=product.region or GLOBAL_REGION,
        is_consigned=variant.consigned,
        lowest_ask=parse_minor_units(availability.lowest_listing_price_cents, field="lowest_listing_price_cents"),
        highest_bid=parse_minor_units(availability.highest_offer_price_cents, field="highest_offer_price_cents"),
        last_sale_price=parse_minor_units(
            availability.last_sold_listing_price_cents, field="last_sold_listing_price_cents"
        ),
        global_indicator_price=parse_minor_units(
            availability.global_indicator_price_cents, field="global_indicator_price_cents"
        ),
        listing_count=availability.number_of_listings,
        offer_count=availability.number_of_offers,
        raw_snapshot_id=snapshot_id,
        captured_at=captured_at,
    )


# Recent sales pass -------------------------------------------------------


@dataclass(slots=True)
class SalesGroup:
    size_label: str
    consigned: bool
    sales: list[AliasRecentSale]


def _sale_label(sale: AliasRecentSale) -> str | None:
    try:
        return size_label(sale.size)
    except (ArithmeticError, ValueError) as exc:
        logger.warning("Skipping Alias sale at %s: %s", sale.purchased_at, exc)
        return None


def group_recent_sales(sales: list[AliasRecentSale]) -> list[SalesGroup]:
    """Group sales by (size, consigned), each group sorted newest first."""
    grouped: dict[tuple[str, bool], list[AliasRecentSale]] = defaultdict(list)
    for sale in sales:
        label = _sale_label(sale)
        if label is not None:
            grouped[(label, sale.consigned)].append(sale)
    return [
        SalesGroup(label, consigned, sorted(items, key=lambda s: to_utc_naive(s.purchased_at), reverse=True))
        for (label, consigned), items in grouped.items()
    ]


def map_recent_sales(payload: Any, product: TrackedProduct, *, now: datetime | None = None) -> list[VolumeUpdate]:
    """Aggregate recent sales into volume updates, one per (size, consigned)."""
    return volume_updates(parse_alias_recent_sales(payload), product, now=now)


def volume_updates(
    sales: list[AliasRecentSale], product: TrackedProduct, *, now: datetime | None = None
) -> list[VolumeUpdate]:
    if not product.alias_catalog_id:
        raise ValueError(f"{product.sku} has no Alias catalog id")
    reference = to_utc_naive(now) if now else utc_now()
    cutoff_72h = reference - RECENT_WINDOW
    cutoff_30d = reference - MONTH_WINDOW

    updates: list[VolumeUpdate] = []
    for group in group_recent_sales(sales):
        times = [to_utc_naive(sale.purchased_at) for sale in group.sales]
        last_price, last_at = _last_priced_sale(group)
        identity = RecordIdentity(
            provider=ALIAS,
            provider_product_id=product.alias_catalog_id,
            size_label=group.size_label,
            currency_code=product.currency,
            region_code=product.region or GLOBAL_REGION,
            is_consigned=group.consigned,
        )
        updates.append(
            VolumeUpdate(
                identity=identity,
                sales_last_72h=sum(1 for ts in times if ts >= cutoff_72h),
                sales_last_30d=sum(1 for ts in times if ts >= cutoff_30d),
                last_sale_price=last_price,
                last_sale_at=last_at,
            )
        )
    return updates


def _last_priced_sale(group: SalesGroup) -> tuple[Decimal | None, datetime | None]:
    """Newest sale with a usable amount; unpriced sales still count toward volume."""
    for sale in group.sales:
        price = parse_minor_units(sale.price_cents, field="price_cents")
        if price is not None:
            return price, to_utc_naive(sale.purchased_at)
    return None, None


def map_sale_details(
    payload: Any,
    product: TrackedProduct,
    *,
    snapshot_id: str | None = None,
    snapshot_at: datetime | None = None,
) -> list[SaleDetail]:
    """Individual sales for the time-series table."""
    return sale_details(parse_alias_recent_sales(payload), product, snapshot_id=snapshot_id, snapshot_at=snapshot_at)


def sale_details(
    sales: list[AliasRecentSale],
    product: TrackedProduct,
    *,
    snapshot_id: str | None = None,
    snapshot_at: datetime | None = None,
) -> list[SaleDetail]:
    if not product.alias_catalog_id:
        raise ValueError(f"{product.sku} has no Alias catalog id")
    details: list[SaleDetail] = []
    for sale in sales:
        label = _sale_label(sale)
        if label is None:
            continue
        details.append(
            SaleDetail(
                provider_product_id=product.alias_catalog_id,
                sku=product.sku,
                size_label=label,
                currency_code=product.currency,
                region_code=product.region or GLOBAL_REGION,
                is_consigned=sale.consigned,
                purchased_at=to_utc_naive(sale.purchased_at),
                sale_price=parse_minor_units(sale.price_cents, field="price_cents"),
                raw_snapshot_id=snapshot_id,
                snapshot_at=snapshot_at,
            )
        )
    return details


# Ingestor ----------------------------------------------------------------


class AliasIngestor:
    def __init__(
        self,
        engine: Engine,
        client: AliasClient | None = None,
        *,
        store: MarketRecordStore | None = None,
        snapshots: RawSnapshotLogger | None = None,
        sales: RecentSalesStore | None = None,
    ) -> None:
        self.engine = engine
        self.client = client or AliasClient()
        self.store = store or MarketRecordStore(engine)
        self.snapshots = snapshots or RawSnapshotLogger(engine, ALIAS)
        self.sales = sales or RecentSalesStore(engine, ALIAS)

    async def sync(
        self,
        product: TrackedProduct,
        *,
        include_consigned: bool = False,
        backfill: bool = True,
        captured_at: datetime | None = None,
        now: datetime | None = None,
    ) -> SyncOutcome:
        """Run the availability pass followed by the volume backfill."""
        availability = await self.sync_availability(
            product, include_consigned=include_consigned, captured_at=captured_at
        )
        outcome = SyncOutcome(provider=ALIAS, sku=product.sku, availability=availability)
        if availability.failed or availability.status == STAGE_SKIPPED:
            outcome.volume_backfill = StageResult(RECENT_SALES_ENDPOINT, STAGE_SKIPPED)
            return outcome
        if not backfill:
            return outcome
        outcome.volume_backfill = await self.backfill_volume(product, now=now)
        if outcome.volume_backfill.failed:
            message = f"volume backfill failed: {outcome.volume_backfill.error}"
            logger.warning("Alias sync for %s partially complete: %s", product.sku, message)
            outcome.warnings.append(message)
        return outcome

    async def sync_availability(
        self,
        product: TrackedProduct,
        *,
        include_consigned: bool = False,
        captured_at: datetime | None = None,
    ) -> StageResult:
        if not product.alias_catalog_id:
            logger.info("Skipping Alias sync for %s: no catalog id", product.sku)
            return StageResult(AVAILABILITIES_ENDPOINT, STAGE_SKIPPED)
        parameters = _parameters(product, consigned=include_consigned)
        try:
            payload = await self.client.fetch_availabilities(product.alias_catalog_id, product.region)
        except ProviderTransportError as exc:
            logger.warning("Alias availabilities failed for %s: %s", product.sku, exc)
            await self._record_failure(AVAILABILITIES_ENDPOINT, parameters, exc)
            return StageResult(AVAILABILITIES_ENDPOINT, STAGE_FAILED, error=str(exc))
        captured = captured_at or utc_now()
        try:
            written = await asyncio.get_running_loop().run_in_executor(
                None, self._persist_availability, product, parameters, payload, include_consigned, captured
            )
        except (SQLAlchemyError, ArithmeticError, ValueError) as exc:
            logger.exception("Failed to store Alias availabilities for %s", product.sku)
            return StageResult(AVAILABILITIES_ENDPOINT, STAGE_FAILED, error=str(exc))
        logger.info("Stored %s Alias records for %s", written, product.sku)
        return StageResult(AVAILABILITIES_ENDPOINT, written=written)

    async def backfill_volume(self, product: TrackedProduct, *, now: datetime | None = None) -> StageResult:
        if not product.alias_catalog_id:
            return StageResult(RECENT_SALES_ENDPOINT, STAGE_SKIPPED)
        parameters = _parameters(product)
        try:
            payload = await self.client.fetch_recent_sales(product.alias_catalog_id, product.region)
        except ProviderTransportError as exc:
            logger.warning("Alias recent sales failed for %s: %s", product.sku, exc)
            await self._record_failure(RECENT_SALES_ENDPOINT, parameters, exc)
            return StageResult(RECENT_SALES_ENDPOINT, STAGE_FAILED, error=str(exc))
        try:
            return await asyncio.get_running_loop().run_in_executor(
                None, self._persist_recent_sales, product, parameters, payload, now
            )
        except (SQLAlchemyError, ArithmeticError, ValueError) as exc:
            logger.exception("Failed to backfill Alias volume for %s", product.sku)
            return StageResult(RECENT_SALES_ENDPOINT, STAGE_FAILED, error=str(exc))

    def _persist_availability(
        self,
        product: TrackedProduct,
        parameters: dict[str, Any],
        payload: Any,
        include_consigned: bool,
        captured_at: datetime,
    ) -> int:
        snapshot_id = self.snapshots.record(
            AVAILABILITIES_ENDPOINT, parameters, payload, http_status=200, captured_at=captured_at
        )
        records = map_availabilities(
            payload,
            product,
            include_consigned=include_consigned,
            snapshot_id=snapshot_id,
            captured_at=captured_at,
        )
        return self.store.upsert(records)

    def _persist_recent_sales(
        self, product: TrackedProduct, parameters: dict[str, Any], payload: Any, now: datetime | None
    ) -> StageResult:
        snapshot_at = utc_now()
        snapshot_id = self.snapshots.record(
            RECENT_SALES_ENDPOINT, parameters, payload, http_status=200, captured_at=snapshot_at
        )
        sales = parse_alias_recent_sales(payload)
        result = StageResult(RECENT_SALES_ENDPOINT)
        for update in volume_updates(sales, product, now=now):
            if self.store.update_volume_fields(update.identity, update.fields()):
                result.written += 1
            else:
                result.skipped += 1
                logger.info(
                    "No Alias record for %s size %s (consigned=%s); skipping volume backfill",
                    product.sku,
                    update.identity.size_label,
                    update.identity.is_consigned,
                )
        logger.info(
            "Backfilled volume on %s Alias records for %s (%s skipped)", result.written, product.sku, result.skipped
        )
        self._store_sale_details(product, sales, snapshot_id, snapshot_at)
        return result

    def _store_sale_details(
        self,
        product: TrackedProduct,
        sales: list[AliasRecentSale],
        snapshot_id: str | None,
        snapshot_at: datetime,
    ) -> None:
        try:
            stored = self.sales.insert(
                sale_details(sales, product, snapshot_id=snapshot_id, snapshot_at=snapshot_at)
            )
        except SQLAlchemyError:
            logger.exception("Failed to store Alias sale details for %s; volume backfill kept", product.sku)
            return
        logger.info("Stored %s Alias sale details for %s", stored, product.sku)

    async def _record_failure(self, endpoint: str, parameters: dict[str, Any], exc: ProviderTransportError) -> None:
        await asyncio.get_running_loop().run_in_executor(
            None,
            lambda: self.snapshots.record(
                endpoint, parameters, None, http_status=exc.status_code, error_message=str(exc)
            ),
        )


def _parameters(product: TrackedProduct, *, consigned: bool | None = None) -> dict[str, Any]:
    params: dict[str, Any] = {
        "catalog_id": product.alias_catalog_id,
        "sku": product.sku,
        "currency": product.currency,
        "region": product.region,
        "product_condition": PRODUCT_CONDITION_NEW,
        "packaging_condition": PACKAGING_CONDITION_GOOD,
    }
    if consigned is not None:
        params["consigned"] = consigned
    return params
