"""Canonical market record store.

Rows are keyed by record identity plus the capture minute. Re-ingesting the same
fact within one minute overwrites the earlier row; a later minute starts a new
row so the time series is preserved.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection, Engine

from marketsync.db.schema import BASE_CURRENCY_COLUMNS, IDENTITY_COLUMNS, VOLUME_COLUMNS, market_records
from marketsync.ingest.models import MarketRecord, RecordIdentity
from marketsync.utils.dates import minute_bucket, to_utc_naive, utc_now

logger = logging.getLogger(__name__)

PRICE_CEILING = Decimal(os.environ.get("MARKET_PRICE_CEILING", "10000"))

CHECKED_PRICE_FIELDS = ("lowest_ask", "highest_bid", "last_sale_price")

# Largest spread percentage the column holds.
SPREAD_PERCENTAGE_LIMIT = Decimal("1000000000")

# Fields the volume backfill may touch. ingested_at is always refreshed.
BACKFILL_COLUMNS = frozenset(VOLUME_COLUMNS) | {"last_sale_price", "last_sale_at"}

_PRESERVED_COLUMNS = {"id", "identity_key", "captured_minute", *IDENTITY_COLUMNS, *BASE_CURRENCY_COLUMNS}
UPSERT_COLUMNS = tuple(c.name for c in market_records.columns if c.name not in _PRESERVED_COLUMNS)


def insert_for(conn: Connection):
    if conn.dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


class MarketRecordStore:
    def __init__(self, engine: Engine, *, price_ceiling: Decimal | None = None) -> None:
        self.engine = engine
        self.price_ceiling = price_ceiling if price_ceiling is not None else PRICE_CEILING

    def upsert(self, records: Sequence[MarketRecord], *, ingested_at: datetime | None = None) -> int:
        """Insert records, replacing any row with the same identity and capture minute."""
        if not records:
            return 0
        now = ingested_at or utc_now()
        rows = _dedupe(self._to_row(record, now) for record in records)
        with self.engine.begin() as conn:
            stmt = insert_for(conn)(market_records)
            stmt = stmt.on_conflict_do_update(
                index_elements=["identity_key", "captured_minute"],
                set_={name: stmt.excluded[name] for name in UPSERT_COLUMNS},
            )
            conn.execute(stmt, rows)
        return len(rows)

    def update_volume_fields(
        self,
        identity: RecordIdentity,
        fields: Mapping[str, Any],
        *,
        ingested_at: datetime | None = None,
    ) -> bool:
        """Backfill volume fields on the newest row for ``identity``.

        Pricing and derived columns are never touched. Returns False when no row
        exists for the identity.
        """
        unknown = set(fields) - BACKFILL_COLUMNS
        if unknown:
            raise ValueError(f"not volume fields: {sorted(unknown)}")
        values = dict(fields)
        values["ingested_at"] = ingested_at or utc_now()
        with self.engine.begin() as conn:
            target = conn.execute(
                select(market_records.c.id)
                .where(market_records.c.identity_key == identity.key)
                .order_by(market_records.c.captured_at.desc(), market_records.c.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if target is None:
                return False
            conn.execute(update(market_records).where(market_records.c.id == target).values(**values))
        return True

    def history(self, identity: RecordIdentity, *, since: datetime | None = None) -> list[dict[str, Any]]:
        """Time series for one identity, newest first."""
        query = select(market_records).where(market_records.c.identity_key == identity.key)
        if since is not None:
            query = query.where(market_records.c.captured_at >= to_utc_naive(since))
        query = query.order_by(market_records.c.captured_at.desc(), market_records.c.id.desc())
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def _to_row(self, record: MarketRecord, ingested_at: datetime) -> dict[str, Any]:
        self._check_prices(record)
        captured_at = to_utc_naive(record.captured_at) if record.captured_at else ingested_at
        identity = record.identity
        return {
            "identity_key": identity.key,
            "provider": identity.provider,
            "provider_source": record.provider_source,
            "provider_product_id": identity.provider_product_id,
            "provider_variant_id": identity.provider_variant_id,
            "sku": record.sku,
            "size_label": identity.size_label,
            "size_numeric": record.size_numeric,
            "currency_code": identity.currency_code.upper(),
            "region_code": identity.region_code,
            "is_expedited": identity.is_expedited,
            "is_consigned": identity.is_consigned,
            "lowest_ask": record.lowest_ask,
            "highest_bid": record.highest_bid,
            "last_sale_price": record.last_sale_price,
            "last_sale_at": record.last_sale_at,
            "sell_faster_price": record.sell_faster_price,
            "earn_more_price": record.earn_more_price,
            "global_indicator_price": record.global_indicator_price,
            "spread_absolute": record.spread_absolute,
            "spread_percentage": self._spread_percentage(record),
            "sales_last_72h": record.sales_last_72h,
            "sales_last_30d": record.sales_last_30d,
            "total_sales": record.total_sales,
            "listing_count": record.listing_count,
            "offer_count": record.offer_count,
            "average_price": record.average_price,
            "volatility": record.volatility,
            "price_premium": record.price_premium,
            "raw_snapshot_id": record.raw_snapshot_id,
            "captured_at": captured_at,
            "captured_minute": minute_bucket(captured_at),
            "ingested_at": ingested_at,
        }

    def _spread_percentage(self, record: MarketRecord) -> Decimal | None:
        value = record.spread_percentage
        if value is not None and abs(value) >= SPREAD_PERCENTAGE_LIMIT:
            logger.warning(
                "Spread percentage %s out of range for %s %s size %s; storing null",
                value,
                record.provider,
                record.provider_product_id,
                record.size_label,
            )
            return None
        return value

    def _check_prices(self, record: MarketRecord) -> None:
        for name in CHECKED_PRICE_FIELDS:
            value = getattr(record, name)
            if value is not None and value > self.price_ceiling:
                logger.warning(
                    "Suspicious %s %s for %s %s size %s (ceiling %s); check unit conversion",
                    name,
                    value,
                    record.provider,
                    record.provider_product_id,
                    record.size_label,
                    self.price_ceiling,
                )


def _dedupe(rows: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    unique: dict[tuple[str, datetime], dict[str, Any]] = {}
    for row in rows:
        key = (row["identity_key"], row["captured_minute"])
        if key in unique:
            logger.info("Duplicate record %s in batch; keeping the later one", row["identity_key"])
        unique[key] = row
    return list(unique.values())
