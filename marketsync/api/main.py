"""FastAPI application exposing the pricing query helpers."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from functools import lru_cache

from fastapi import Depends, FastAPI, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.db.session import create_engine_from_env
from marketsync.logic import pricing

logger = logging.getLogger(__name__)

app = FastAPI(title="Market Data API")


class PriceSnapshotModel(BaseModel):
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


class BestPriceResponse(BaseModel):
    provider: str
    lowest_ask: Decimal
    is_expedited: bool
    is_consigned: bool
    region_code: str
    captured_at: datetime


class StandardPricingResponse(BaseModel):
    stockx: PriceSnapshotModel | None
    alias: PriceSnapshotModel | None


class PricingOptionsResponse(BaseModel):
    stockx_standard: PriceSnapshotModel | None
    stockx_expedited: PriceSnapshotModel | None
    alias_standard: PriceSnapshotModel | None
    alias_consigned: PriceSnapshotModel | None


class ExpeditedSavingsResponse(BaseModel):
    standard_price: Decimal
    expedited_price: Decimal
    savings: Decimal
    savings_pct: Decimal


class ConsignedComparisonResponse(BaseModel):
    standard_price: Decimal
    consigned_price: Decimal
    difference: Decimal
    difference_pct: Decimal


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_engine_from_env()


def _snapshot(value: pricing.PriceSnapshot | None) -> PriceSnapshotModel | None:
    if value is None:
        return None
    return PriceSnapshotModel(
        provider=value.provider,
        is_expedited=value.is_expedited,
        is_consigned=value.is_consigned,
        region_code=value.region_code,
        lowest_ask=value.lowest_ask,
        highest_bid=value.highest_bid,
        last_sale_price=value.last_sale_price,
        spread_percentage=value.spread_percentage,
        sales_last_72h=value.sales_last_72h,
        captured_at=value.captured_at,
    )


@app.get("/health")
async def health(engine: Engine = Depends(get_engine)) -> dict[str, str]:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("Health check failed: %s", exc)
        raise HTTPException(status_code=503, detail="Database unavailable") from exc
    return {"status": "ok"}


@app.get("/pricing/best", response_model=BestPriceResponse)
async def get_best_price(
    sku: str,
    size: str,
    currency: str = Query("USD", min_length=3, max_length=3),
    region: str | None = None,
    engine: Engine = Depends(get_engine),
) -> BestPriceResponse:
    best = pricing.best_price(engine, sku, size, currency, region=region)
    if best is None:
        raise HTTPException(status_code=404, detail="No pricing data")
    return BestPriceResponse(
        provider=best.provider,
        lowest_ask=best.lowest_ask,
        is_expedited=best.is_expedited,
        is_consigned=best.is_consigned,
        region_code=best.region_code,
        captured_at=best.captured_at,
    )


@app.get("/pricing/standard", response_model=StandardPricingResponse)
async def get_standard_pricing(
    sku: str,
    size: str,
    currency: str = Query("USD", min_length=3, max_length=3),
    region: str | None = None,
    engine: Engine = Depends(get_engine),
) -> StandardPricingResponse:
    result = pricing.standard_pricing(engine, sku, size, currency, region=region)
    return StandardPricingResponse(stockx=_snapshot(result.stockx), alias=_snapshot(result.alias))


@app.get("/pricing/options", response_model=PricingOptionsResponse)
async def get_pricing_options(
    sku: str,
    size: str,
    currency: str = Query("USD", min_length=3, max_length=3),
    region: str | None = None,
    engine: Engine = Depends(get_engine),
) -> PricingOptionsResponse:
    result = pricing.all_pricing_options(engine, sku, size, currency, region=region)
    return PricingOptionsResponse(
        stockx_standard=_snapshot(result.stockx_standard),
        stockx_expedited=_snapshot(result.stockx_expedited),
        alias_standard=_snapshot(result.alias_standard),
        alias_consigned=_snapshot(result.alias_consigned),
    )


@app.get("/pricing/expedited-savings", response_model=ExpeditedSavingsResponse)
async def get_expedited_savings(
    sku: str,
    size: str,
    currency: str = Query("USD", min_length=3, max_length=3),
    region: str | None = None,
    engine: Engine = Depends(get_engine),
) -> ExpeditedSavingsResponse:
    result = pricing.expedited_savings(engine, sku, size, currency, region=region)
    if result is None:
        raise HTTPException(status_code=404, detail="No standard and expedited asks to compare")
    return ExpeditedSavingsResponse(
        standard_price=result.standard_price,
        expedited_price=result.expedited_price,
        savings=result.savings,
        savings_pct=result.savings_pct,
    )


@app.get("/pricing/consigned-comparison", response_model=ConsignedComparisonResponse)
async def get_consigned_comparison(
    sku: str,
    size: str,
    currency: str = Query("USD", min_length=3, max_length=3),
    region: str | None = None,
    engine: Engine = Depends(get_engine),
) -> ConsignedComparisonResponse:
    result = pricing.consigned_comparison(engine, sku, size, currency, region=region)
    if result is None:
        raise HTTPException(status_code=404, detail="No standard and consigned asks to compare")
    return ConsignedComparisonResponse(
        standard_price=result.standard_price,
        consigned_price=result.consigned_price,
        difference=result.difference,
        difference_pct=result.difference_pct,
    )
