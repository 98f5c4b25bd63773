"""Typed views of provider responses.

Each provider response is validated entry by entry so that one malformed
variant or sale never hides its siblings.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Annotated, Any, TypeVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from marketsync.utils.dates import parse_timestamp

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _lenient_int(value: Any) -> int | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        logger.warning("Unparseable count %r; storing null", value)
        return None


def _as_raw_amount(value: Any) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (str, int, float)):
        return str(value)
    logger.warning("Unexpected amount %r; storing null", value)
    return None


def _as_label(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value).strip()


def _as_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return parse_timestamp(str(value))


Count = Annotated[int | None, BeforeValidator(_lenient_int)]
RawAmount = Annotated[str | None, BeforeValidator(_as_raw_amount)]
Label = Annotated[str | None, BeforeValidator(_as_label)]
Timestamp = Annotated[datetime, BeforeValidator(_as_timestamp)]


class _ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# StockX ------------------------------------------------------------------


class StockXFlexMarketData(_ProviderModel):
    """Expedited (Flex) tier amounts, major units."""

    lowest_ask: RawAmount = Field(None, alias="lowestAsk")
    highest_bid: RawAmount = Field(None, alias="highestBidAmount")
    sell_faster: RawAmount = Field(None, alias="sellFaster")
    earn_more: RawAmount = Field(None, alias="earnMore")

    @property
    def has_amounts(self) -> bool:
        return any(
            amount is not None for amount in (self.lowest_ask, self.highest_bid, self.sell_faster, self.earn_more)
        )


class StockXMarketVariant(_ProviderModel):
    variant_id: str = Field(alias="variantId")
    size_key: Label = Field(None, alias="sizeKey")
    variant_value: Label = Field(None, alias="variantValue")
    size: Label = None
    lowest_ask_amount: RawAmount = Field(None, alias="lowestAskAmount")
    highest_bid_amount: RawAmount = Field(None, alias="highestBidAmount")
    last_sale_amount: RawAmount = Field(None, alias="lastSaleAmount")
    sell_faster_amount: RawAmount = Field(None, alias="sellFasterAmount")
    earn_more_amount: RawAmount = Field(None, alias="earnMoreAmount")
    sales_last_72h: Count = Field(None, alias="salesLast72Hours")
    sales_last_30d: Count = Field(None, alias="salesLast30Days")
    total_sales: Count = Field(None, alias="totalSales")
    average_price: RawAmount = Field(None, alias="averagePrice")
    volatility: RawAmount = None
    price_premium: RawAmount = Field(None, alias="pricePremium")
    flex: StockXFlexMarketData | None = Field(None, alias="flexMarketData")

    @property
    def label(self) -> str | None:
        return self.size_key or self.variant_value or self.size


# Alias -------------------------------------------------------------------


class AliasAvailability(_ProviderModel):
    """Availability amounts, integer minor units as strings."""

    lowest_listing_price_cents: RawAmount = None
    highest_offer_price_cents: RawAmount = None
    last_sold_listing_price_cents: RawAmount = None
    global_indicator_price_cents: RawAmount = None
    number_of_listings: Count = None
    number_of_offers: Count = None


class AliasVariant(_ProviderModel):
    size: float
    size_unit: str = "US"
    product_condition: str | None = None
    packaging_condition: str | None = None
    consigned: bool = False
    availability: AliasAvailability | None = None


class AliasRecentSale(_ProviderModel):
    purchased_at: Timestamp
    price_cents: RawAmount = None
    size: float
    consigned: bool = False


# Parsing -----------------------------------------------------------------


def _entries(payload: Any, key: str) -> list[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get(key), list):
        return payload[key]
    logger.error("Unexpected payload shape (expected list or %r array): %s", key, type(payload).__name__)
    return []


def _validate_each(model: type[ModelT], entries: list[Any]) -> list[ModelT]:
    parsed: list[ModelT] = []
    for index, entry in enumerate(entries):
        try:
            parsed.append(model.model_validate(entry))
        except (ValidationError, ValueError, ArithmeticError, TypeError, AttributeError) as exc:
            logger.warning("Skipping %s entry %s: %s", model.__name__, index, exc)
    return parsed


def parse_stockx_market_data(payload: Any) -> list[StockXMarketVariant]:
    return _validate_each(StockXMarketVariant, _entries(payload, "variants"))


def parse_alias_availabilities(payload: Any) -> list[AliasVariant]:
    return _validate_each(AliasVariant, _entries(payload, "variants"))


def parse_alias_recent_sales(payload: Any) -> list[AliasRecentSale]:
    return _validate_each(AliasRecentSale, _entries(payload, "recent_sales"))
