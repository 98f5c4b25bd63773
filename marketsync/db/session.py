"""Database engine helpers."""

from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url


DEFAULT_DATABASE_URL = "postgresql://user:pass@db:5432/market"


def create_engine_from_env() -> Engine:
    """Create an engine using the DATABASE_URL environment variable.

    Ingestors write from executor threads, so SQLite connections are opened
    without the same-thread check.
    """
    url = make_url(os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL))
    connect_args = {"check_same_thread": False} if url.get_backend_name() == "sqlite" else {}
    return create_engine(url, pool_pre_ping=True, future=True, connect_args=connect_args)
