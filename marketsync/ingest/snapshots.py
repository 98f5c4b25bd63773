"""Append-only log of untouched provider responses."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.engine import Engine

from marketsync.db.schema import raw_snapshots
from marketsync.utils.dates import utc_now

logger = logging.getLogger(__name__)


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


class RawSnapshotLogger:
    """Records every provider response before it is parsed.

    Logging is best effort: ``record`` never raises and returns ``None`` when the
    row could not be written, so a logging failure never blocks ingestion.
    """

    def __init__(self, engine: Engine, provider: str) -> None:
        self.engine = engine
        self.provider = provider

    def record(
        self,
        endpoint: str,
        parameters: Mapping[str, Any] | None,
        response: Any,
        *,
        http_status: int | None = None,
        error_message: str | None = None,
        captured_at: datetime | None = None,
    ) -> str | None:
        snapshot_id = str(uuid.uuid4())
        try:
            row = {
                "id": snapshot_id,
                "provider": self.provider,
                "endpoint": endpoint,
                "parameters": _jsonable(dict(parameters or {})),
                "response": _jsonable(response),
                "http_status": http_status,
                "error_message": error_message,
                "captured_at": captured_at or utc_now(),
            }
            with self.engine.begin() as conn:
                conn.execute(raw_snapshots.insert().values(**row))
        except Exception:
            logger.exception("Failed to log raw %s snapshot for %s", self.provider, endpoint)
            return None
        return snapshot_id

    def fetch(self, snapshot_id: str) -> dict[str, Any] | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(raw_snapshots).where(raw_snapshots.c.id == snapshot_id)).mappings().first()
        return dict(row) if row else None
