"""Ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from marketsync.db.schema import GLOBAL_REGION

STOCKX = "stockx"
ALIAS = "alias"

STAGE_OK = "ok"
STAGE_FAILED = "failed"
STAGE_SKIPPED = "skipped"

_NULL_KEY = "__null__"


@dataclass(slots=True)
class TrackedProduct:
    sku: str
    name: str | None = None
    stockx_product_id: str | None = None
    alias_catalog_id: str | None = None
    currency: str = "USD"
    region: str | None = None
    category: str | None = None


@dataclass(frozen=True, slots=True)
class RecordIdentity:
    """Identity of a pricing fact, ignoring when it was captured."""

    provider: str
    provider_product_id: str
    size_label: str
    currency_code: str
    region_code: str = GLOBAL_REGION
    provider_variant_id: str | None = None
    is_expedited: bool = False
    is_consigned: bool = False

    @property
    def key(self) -> str:
        parts = (
            self.provider,
            self.provider_product_id,
            self.provider_variant_id or _NULL_KEY,
            self.size_label,
            self.currency_code.upper(),
            self.region_code or GLOBAL_REGION,
            "1" if self.is_expedited else "0",
            "1" if self.is_consigned else "0",
        )
        return "|".join(parts)


@dataclass(slots=True)
class MarketRecord:
    """One canonical pricing fact. Prices are major currency units."""

    provider: str
    provider_source: str
    provider_product_id: str
    size_label: str
    currency_code: str
    region_code: str = GLOBAL_REGION
    provider_variant_id: str | None = None
    sku: str | None = None
    size_numeric: Decimal | None = None
    is_expedited: bool = False
    is_consigned: bool = False
    lowest_ask: Decimal | None = None
    highest_bid: Decimal | None = None
    last_sale_price: Decimal | None = None
    last_sale_at: datetime | None = None
    sell_faster_price: Decimal | None = None
    earn_more_price: Decimal | None = None
    global_indicator_price: Decimal | None = None
    sales_last_72h: int | None = None
    sales_last_30d: int | None = None
    total_sales: int | None = None
    listing_count: int | None = None
    offer_count: int | None = None
    average_price: Decimal | None = None
    volatility: Decimal | None = None
    price_premium: Decimal | None = None
    raw_snapshot_id: str | None = None
    captured_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.is_expedited and self.is_consigned:
            raise ValueError("a record is either expedited or consigned, not both")

    @property
    def identity(self) -> RecordIdentity:
        return RecordIdentity(
            provider=self.provider,
            provider_product_id=self.provider_product_id,
            size_label=self.size_label,
            currency_code=self.currency_code,
            region_code=self.region_code or GLOBAL_REGION,
            provider_variant_id=self.provider_variant_id,
            is_expedited=self.is_expedited,
            is_consigned=self.is_consigned,
        )

    @property
    def spread_absolute(self) -> Decimal | None:
        if self.lowest_ask is None or self.highest_bid is None:
            return None
        return self.lowest_ask - self.highest_bid

    @property
    def spread_percentage(self) -> Decimal | None:
        spread = self.spread_absolute
        if spread is None or self.lowest_ask is None or self.lowest_ask <= 0:
            return None
        return spread / self.lowest_ask * 100


@dataclass(slots=True)
class VolumeUpdate:
    identity: RecordIdentity
    sales_last_72h: int
    sales_last_30d: int
    last_sale_price: Decimal | None
    last_sale_at: datetime | None

    def fields(self) -> dict[str, Any]:
        values: dict[str, Any] = {
            "sales_last_72h": self.sales_last_72h,
            "sales_last_30d": self.sales_last_30d,
        }
        # Without a priced sale the availability pass keeps its last sale.
        if self.last_sale_price is not None:
            values["last_sale_price"] = self.last_sale_price
            values["last_sale_at"] = self.last_sale_at
        return values


@dataclass(slots=True)
class SaleDetail:
    """One individual recent sale, kept as a time series."""

    provider_product_id: str
    size_label: str
    currency_code: str
    purchased_at: datetime
    sale_price: Decimal | None
    region_code: str = GLOBAL_REGION
    is_consigned: bool = False
    sku: str | None = None
    raw_snapshot_id: str | None = None
    snapshot_at: datetime | None = None


@dataclass(slots=True)
class StageResult:
    stage: str
    status: str = STAGE_OK
    written: int = 0
    skipped: int = 0
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == STAGE_FAILED


@dataclass(slots=True)
class SyncOutcome:
    """Result of one (provider, product) unit of work."""

    provider: str
    sku: str
    availability: StageResult
    volume_backfill: StageResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.availability.failed:
            return "failed"
        if self.volume_backfill is not None and self.volume_backfill.failed:
            return "partial"
        return "success"
