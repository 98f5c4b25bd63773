"""Latest-projection refresh job."""

from __future__ import annotations

import logging

from dotenv import load_dotenv

from marketsync.db.session import create_engine_from_env
from marketsync.store.latest import rebuild_latest

logger = logging.getLogger(__name__)


def run_refresh() -> int:
    load_dotenv()
    engine = create_engine_from_env()
    try:
        return rebuild_latest(engine)
    finally:
        engine.dispose()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_refresh()
