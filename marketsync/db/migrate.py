"""Database migration helpers."""

from __future__ import annotations

import logging
import sys

from sqlalchemy import select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from marketsync.db.schema import SCHEMA_VERSION, metadata, schema_version
from marketsync.db.session import create_engine_from_env
from marketsync.utils.dates import utc_now

logger = logging.getLogger(__name__)

# In-place changes to tables that already exist. New tables come from create_all.
# SQLite ignores numeric precision, so these only run on PostgreSQL.
UPGRADES: dict[int, list[str]] = {
    4: [
        "ALTER TABLE market_records ALTER COLUMN spread_percentage TYPE NUMERIC(14, 4)",
        "ALTER TABLE market_latest ALTER COLUMN spread_percentage TYPE NUMERIC(14, 4)",
    ],
}


def run_migrations(engine: Engine) -> int:
    """Create missing tables, apply pending upgrades and record the version."""
    metadata.create_all(engine)
    with engine.begin() as conn:
        applied = _applied_version(conn)
        if applied == SCHEMA_VERSION:
            return SCHEMA_VERSION
        if applied is not None:
            _upgrade(conn, applied)
        conn.execute(schema_version.insert().values(version=SCHEMA_VERSION, applied_at=utc_now()))
        logger.info("Applied schema version %s", SCHEMA_VERSION)
    return SCHEMA_VERSION


def _applied_version(conn: Connection) -> int | None:
    return conn.execute(select(schema_version.c.version).order_by(schema_version.c.version.desc())).scalar()


def _upgrade(conn: Connection, applied: int) -> None:
    for version in sorted(v for v in UPGRADES if applied < v <= SCHEMA_VERSION):
        if conn.dialect.name != "postgresql":
            continue
        for stmt in UPGRADES[version]:
            conn.execute(text(stmt))
        logger.info("Upgraded schema from %s to %s", applied, version)


def current_version(engine: Engine) -> int | None:
    with engine.connect() as conn:
        return _applied_version(conn)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    try:
        engine = create_engine_from_env()
    except KeyError as exc:  # pragma: no cover - env failure is user error
        print(f"Missing environment variable: {exc}", file=sys.stderr)
        sys.exit(1)
    try:
        run_migrations(engine)
    except SQLAlchemyError as exc:
        print(f"Migration failed: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
