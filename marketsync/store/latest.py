"""Latest-snapshot projection of the record store."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.engine import Engine

from marketsync.db.schema import market_latest, market_records

logger = logging.getLogger(__name__)

PROJECTED_COLUMNS = tuple(c.name for c in market_latest.columns if c.name != "record_id")


def rebuild_latest(engine: Engine) -> int:
    """Replace the projection with the newest record per identity.

    Runs in one transaction so readers see either the previous projection or the
    new one. Writes that land mid-rebuild are picked up by the next run.
    """
    ranked = select(
        market_records.c.id.label("record_id"),
        *(market_records.c[name] for name in PROJECTED_COLUMNS),
        func.row_number()
        .over(
            partition_by=market_records.c.identity_key,
            order_by=(market_records.c.captured_at.desc(), market_records.c.id.desc()),
        )
        .label("position"),
    ).subquery()
    newest = select(ranked.c.record_id, *(ranked.c[name] for name in PROJECTED_COLUMNS)).where(
        ranked.c.position == 1
    )
    with engine.begin() as conn:
        conn.execute(market_latest.delete())
        conn.execute(market_latest.insert().from_select(["record_id", *PROJECTED_COLUMNS], newest))
        count = conn.execute(select(func.count()).select_from(market_latest)).scalar_one()
    logger.info("Rebuilt latest projection with %s rows", count)
    return count
