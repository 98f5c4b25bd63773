import json
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from marketsync.db.migrate import run_migrations
from marketsync.ingest.models import TrackedProduct

FIXTURES = Path(__file__).parent / "fixtures" / "http"

NOW = datetime(2025, 12, 5, 12, 0, 0)


def load_fixture(path: str):
    return json.loads((FIXTURES / path).read_text())


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    run_migrations(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def panda():
    return TrackedProduct(
        sku="DD1391-100",
        name="Nike Dunk Low Retro White Black Panda",
        stockx_product_id="sx-panda",
        alias_catalog_id="nike-dunk-low-panda",
        currency="USD",
        category="sneakers",
    )


@pytest.fixture()
def now():
    return NOW
