"""Read-side pricing helpers over the latest-snapshot projection."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.engine import Engine

from marketsync.db.schema import market_latest
from marketsync.ingest.models import ALIAS, STOCKX


@dataclass(slots=True)
class PriceSnapshot:
    provider: str
    is_expedited: bool
    is_consigned: bool
    region_code: str
    lowest_ask: Decimal | None
    highest_bid: Decimal | None
    last_sale_price: Decimal | None
    spread_percentage: Decimal | None
    sales_last_72h: int | None
    captured_at: datetime


@dataclass(slots=True)
class BestPrice:
    provider: str
    lowest_ask: Decimal
    is_expedited: bool
    is_consigned: bool
    region_code: str
    captured_at: datetime


@dataclass(slots=True)
class StandardPricing:
    stockx: PriceSnapshot | None = None
    alias: PriceSnapshot | None = None


@dataclass(slots=True)
class PricingOptions:
    stockx_standard: PriceSnapshot | None = None
    stockx_expedited: PriceSnapshot | None = None
    alias_standard: PriceSnapshot | None = None
    alias_consigned: PriceSnapshot | None = None


@dataclass(slots=True)
class ExpeditedSavings:
    standard_price: Decimal
    expedited_price: Decimal
    savings: Decimal
    savings_pct: Decimal


@dataclass(slots=True)
class ConsignedComparison:
    standard_price: Decimal
    consigned_price: Decimal
    difference: Decimal
    difference_pct: Decimal


def _load_rows(
    engine: Engine, sku: str, size: str, currency: str, region: str | None, **flags: bool
) -> list[dict[str, Any]]:
    query = select(market_latest).where(
        market_latest.c.sku == sku,
        market_latest.c.size_label == size,
        market_latest.c.currency_code == currency.upper(),
    )
    if region is not None:
        query = query.where(market_latest.c.region_code == region)
    for name, value in flags.items():
        query = query.where(market_latest.c[name] == value)
    query = query.order_by(market_latest.c.captured_at.desc(), market_latest.c.record_id.desc())
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(query).mappings()]


def _snapshot(row: dict[str, Any]) -> PriceSnapshot:
    return PriceSnapshot(
        provider=row["provider"],
        is_expedited=bool(row["is_expedited"]),
        is_consigned=bool(row["is_consigned"]),
        region_code=row["region_code"],
        lowest_ask=row["lowest_ask"],
        highest_bid=row["highest_bid"],
        last_sale_price=row["last_sale_price"],
        spread_percentage=row["spread_percentage"],
        sales_last_72h=row["sales_last_72h"],
        captured_at=row["captured_at"],
    )


def best_price(
    engine: Engine, sku: str, size: str, currency: str = "USD", *, region: str | None = None
) -> BestPrice | None:
    """Lowest ask across every provider and tier, or None when nothing is priced."""
    candidates = [row for row in _load_rows(engine, sku, size, currency, region) if row["lowest_ask"] is not None]
    if not candidates:
        return None
    # Rows arrive newest first, so min() keeps the freshest of equal asks.
    best = min(candidates, key=lambda row: row["lowest_ask"])
    return BestPrice(
        provider=best["provider"],
        lowest_ask=best["lowest_ask"],
        is_expedited=bool(best["is_expedited"]),
        is_consigned=bool(best["is_consigned"]),
        region_code=best["region_code"],
        captured_at=best["captured_at"],
    )


def standard_pricing(
    engine: Engine, sku: str, size: str, currency: str = "USD", *, region: str | None = None
) -> StandardPricing:
    """Newest non-expedited, non-consigned snapshot per provider."""
    result = StandardPricing()
    for row in _load_rows(engine, sku, size, currency, region, is_expedited=False, is_consigned=False):
        if row["provider"] == STOCKX and result.stockx is None:
            result.stockx = _snapshot(row)
        elif row["provider"] == ALIAS and result.alias is None:
            result.alias = _snapshot(row)
    return result


def all_pricing_options(
    engine: Engine, sku: str, size: str, currency: str = "USD", *, region: str | None = None
) -> PricingOptions:
    result = PricingOptions()
    for row in _load_rows(engine, sku, size, currency, region):
        slot = _slot_for(row)
        if slot is not None and getattr(result, slot) is None:
            setattr(result, slot, _snapshot(row))
    return result


def _slot_for(row: dict[str, Any]) -> str | None:
    if row["provider"] == STOCKX and not row["is_consigned"]:
        return "stockx_expedited" if row["is_expedited"] else "stockx_standard"
    if row["provider"] == ALIAS and not row["is_expedited"]:
        return "alias_consigned" if row["is_consigned"] else "alias_standard"
    return None


def expedited_savings(
    engine: Engine, sku: str, size: str, currency: str = "USD", *, region: str | None = None
) -> ExpeditedSavings | None:
    """Difference between the StockX standard and expedited asks."""
    options = all_pricing_options(engine, sku, size, currency, region=region)
    standard, expedited = options.stockx_standard, options.stockx_expedited
    if standard is None or expedited is None:
        return None
    if not standard.lowest_ask or expedited.lowest_ask is None:
        return None
    savings = standard.lowest_ask - expedited.lowest_ask
    return ExpeditedSavings(
        standard_price=standard.lowest_ask,
        expedited_price=expedited.lowest_ask,
        savings=savings,
        savings_pct=savings / standard.lowest_ask * 100,
    )


def consigned_comparison(
    engine: Engine, sku: str, size: str, currency: str = "USD", *, region: str | None = None
) -> ConsignedComparison | None:
    """Premium of the Alias consigned ask over the standard ask."""
    options = all_pricing_options(engine, sku, size, currency, region=region)
    standard, consigned = options.alias_standard, options.alias_consigned
    if standard is None or consigned is None:
        return None
    if not standard.lowest_ask or consigned.lowest_ask is None:
        return None
    difference = consigned.lowest_ask - standard.lowest_ask
    return ConsignedComparison(
        standard_price=standard.lowest_ask,
        consigned_price=consigned.lowest_ask,
        difference=difference,
        difference_pct=difference / standard.lowest_ask * 100,
    )
