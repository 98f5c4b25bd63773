"""Canonical storage schema.

Bump ``SCHEMA_VERSION`` with every change to the tables below; ``run_migrations``
records the version it applied.
"""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

SCHEMA_VERSION = 4

GLOBAL_REGION = "global"

metadata = MetaData()

raw_snapshots = Table(
    "raw_snapshots",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("provider", Text, nullable=False),
    Column("endpoint", Text, nullable=False),
    Column("parameters", JSON, nullable=False),
    Column("response", JSON),
    Column("http_status", Integer),
    Column("error_message", Text),
    Column("captured_at", DateTime, nullable=False),
    Index("ix_raw_snapshots_endpoint", "provider", "endpoint", "captured_at"),
)

# Columns shared by the record store and its latest projection.
IDENTITY_COLUMNS = (
    "provider",
    "provider_product_id",
    "provider_variant_id",
    "size_label",
    "currency_code",
    "region_code",
    "is_expedited",
    "is_consigned",
)

# Filled by an external FX step; ingestion never writes them.
BASE_CURRENCY_COLUMNS = ("lowest_ask_base", "highest_bid_base", "last_sale_price_base")

VOLUME_COLUMNS = (
    "sales_last_72h",
    "sales_last_30d",
    "total_sales",
    "listing_count",
    "offer_count",
)


def _record_columns() -> list[Column]:
    return [
        Column("identity_key", Text, nullable=False),
        Column("provider", Text, nullable=False),
        Column("provider_source", Text, nullable=False),
        Column("provider_product_id", Text, nullable=False),
        Column("provider_variant_id", Text),
        Column("sku", Text),
        Column("size_label", Text, nullable=False),
        Column("size_numeric", Numeric(6, 2)),
        Column("currency_code", String(3), nullable=False),
        Column("region_code", Text, nullable=False, default=GLOBAL_REGION),
        Column("is_expedited", Boolean, nullable=False, default=False),
        Column("is_consigned", Boolean, nullable=False, default=False),
        Column("lowest_ask", Numeric(12, 4)),
        Column("highest_bid", Numeric(12, 4)),
        Column("last_sale_price", Numeric(12, 4)),
        Column("last_sale_at", DateTime),
        Column("lowest_ask_base", Numeric(12, 4)),
        Column("highest_bid_base", Numeric(12, 4)),
        Column("last_sale_price_base", Numeric(12, 4)),
        Column("sell_faster_price", Numeric(12, 4)),
        Column("earn_more_price", Numeric(12, 4)),
        Column("global_indicator_price", Numeric(12, 4)),
        Column("spread_absolute", Numeric(12, 4)),
        Column("spread_percentage", Numeric(14, 4)),
        Column("sales_last_72h", Integer),
        Column("sales_last_30d", Integer),
        Column("total_sales", Integer),
        Column("listing_count", Integer),
        Column("offer_count", Integer),
        Column("average_price", Numeric(12, 4)),
        Column("volatility", Numeric(8, 4)),
        Column("price_premium", Numeric(8, 4)),
        Column("raw_snapshot_id", String(36)),
        Column("captured_at", DateTime, nullable=False),
        Column("ingested_at", DateTime, nullable=False),
    ]


market_records = Table(
    "market_records",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    *_record_columns(),
    Column("captured_minute", DateTime, nullable=False),
    UniqueConstraint("identity_key", "captured_minute", name="uq_market_records_identity_minute"),
    Index("ix_market_records_identity_latest", "identity_key", "captured_at"),
    Index("ix_market_records_lookup", "sku", "size_label", "currency_code"),
)

market_latest = Table(
    "market_latest",
    metadata,
    Column("record_id", Integer, primary_key=True),
    *_record_columns(),
    UniqueConstraint("identity_key", name="uq_market_latest_identity"),
    Index("ix_market_latest_lookup", "sku", "size_label", "currency_code"),
)

recent_sales = Table(
    "recent_sales",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("provider", Text, nullable=False),
    Column("provider_product_id", Text, nullable=False),
    Column("sku", Text),
    Column("size_label", Text, nullable=False),
    Column("currency_code", String(3), nullable=False),
    Column("region_code", Text, nullable=False, default=GLOBAL_REGION),
    Column("is_consigned", Boolean, nullable=False, default=False),
    Column("purchased_at", DateTime, nullable=False),
    Column("sale_price", Numeric(12, 4)),
    Column("raw_snapshot_id", String(36)),
    Column("snapshot_at", DateTime, nullable=False),
    UniqueConstraint(
        "provider",
        "provider_product_id",
        "size_label",
        "currency_code",
        "region_code",
        "is_consigned",
        "purchased_at",
        name="uq_recent_sales_event",
    ),
    Index("ix_recent_sales_lookup", "provider_product_id", "size_label", "purchased_at"),
)

schema_version = Table(
    "schema_version",
    metadata,
    Column("version", Integer, primary_key=True),
    Column("applied_at", DateTime, nullable=False),
)
