"""Individual recent sales kept as a time series beside the record store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.engine import Engine

from marketsync.db.schema import recent_sales
from marketsync.ingest.models import SaleDetail
from marketsync.store.records import insert_for
from marketsync.utils.dates import to_utc_naive, utc_now

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "provider",
    "provider_product_id",
    "size_label",
    "currency_code",
    "region_code",
    "is_consigned",
    "purchased_at",
]


class RecentSalesStore:
    def __init__(self, engine: Engine, provider: str) -> None:
        self.engine = engine
        self.provider = provider

    def insert(self, sales: Sequence[SaleDetail]) -> int:
        """Store sales, ignoring events already recorded. Returns the number submitted."""
        if not sales:
            return 0
        rows = [self._to_row(sale) for sale in sales]
        with self.engine.begin() as conn:
            stmt = insert_for(conn)(recent_sales).on_conflict_do_nothing(index_elements=EVENT_COLUMNS)
            conn.execute(stmt, rows)
        logger.debug("Submitted %s %s sales", len(rows), self.provider)
        return len(rows)

    def history(
        self,
        provider_product_id: str,
        size_label: str,
        *,
        consigned: bool | None = None,
        since: datetime | None = None,
    ) -> list[dict[str, Any]]:
        query = select(recent_sales).where(
            recent_sales.c.provider == self.provider,
            recent_sales.c.provider_product_id == provider_product_id,
            recent_sales.c.size_label == size_label,
        )
        if consigned is not None:
            query = query.where(recent_sales.c.is_consigned == consigned)
        if since is not None:
            query = query.where(recent_sales.c.purchased_at >= to_utc_naive(since))
        query = query.order_by(recent_sales.c.purchased_at.desc(), recent_sales.c.id.desc())
        with self.engine.connect() as conn:
            return [dict(row) for row in conn.execute(query).mappings()]

    def _to_row(self, sale: SaleDetail) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "provider_product_id": sale.provider_product_id,
            "sku": sale.sku,
            "size_label": sale.size_label,
            "currency_code": sale.currency_code.upper(),
            "region_code": sale.region_code,
            "is_consigned": sale.is_consigned,
            "purchased_at": to_utc_naive(sale.purchased_at),
            "sale_price": sale.sale_price,
            "raw_snapshot_id": sale.raw_snapshot_id,
            "snapshot_at": to_utc_naive(sale.snapshot_at) if sale.snapshot_at else utc_now(),
        }
