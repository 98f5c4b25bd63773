import logging

import pytest

from marketsync.ingest import load_products
from marketsync.ingest.alias import AliasIngestor
from marketsync.ingest.models import StageResult, SyncOutcome
from marketsync.ingest.stockx import StockXIngestor
from marketsync.jobs import latest, sync


@pytest.fixture()
def credentials(monkeypatch, engine):
    monkeypatch.setenv("STOCKX_API_KEY", "key")
    monkeypatch.setenv("ALIAS_API_TOKEN", "token")
    monkeypatch.setattr(sync, "load_dotenv", lambda: None)
    monkeypatch.setattr(sync, "create_engine_from_env", lambda: engine)


@pytest.mark.asyncio
async def test_run_sync_isolates_failing_units(credentials, monkeypatch, panda):
    calls = []

    async def fake_stockx(self, product, captured_at=None):
        calls.append(("stockx", product.sku))
        raise RuntimeError("boom")

    async def fake_alias(self, product, **kwargs):
        calls.append(("alias", product.sku))
        assert kwargs["include_consigned"] is True
        return SyncOutcome("alias", product.sku, StageResult("pricing_availabilities", written=2))

    monkeypatch.setattr(StockXIngestor, "sync", fake_stockx)
    monkeypatch.setattr(AliasIngestor, "sync", fake_alias)

    outcomes = await sync.run_sync([panda])

    assert sorted(calls) == [("alias", "DD1391-100"), ("stockx", "DD1391-100")]
    statuses = {outcome.provider: outcome.status for outcome in outcomes}
    assert statuses == {"stockx": "failed", "alias": "success"}


@pytest.mark.asyncio
async def test_run_sync_only_uses_configured_providers(credentials, monkeypatch, panda):
    monkeypatch.delenv("STOCKX_API_KEY")

    async def fake_alias(self, product, **kwargs):
        return SyncOutcome("alias", product.sku, StageResult("pricing_availabilities"))

    monkeypatch.setattr(AliasIngestor, "sync", fake_alias)
    outcomes = await sync.run_sync([panda])
    assert [outcome.provider for outcome in outcomes] == ["alias"]


@pytest.mark.asyncio
async def test_run_sync_without_credentials(monkeypatch, engine, panda):
    monkeypatch.delenv("STOCKX_API_KEY", raising=False)
    monkeypatch.delenv("ALIAS_API_TOKEN", raising=False)
    monkeypatch.setattr(sync, "load_dotenv", lambda: None)
    monkeypatch.setattr(sync, "create_engine_from_env", lambda: engine)
    assert await sync.run_sync([panda]) == []


def test_summarize_counts_statuses(caplog):
    caplog.set_level(logging.INFO)
    ok = StageResult("market_data", written=3)
    failed = StageResult("market_data", "failed", error="503")
    partial = SyncOutcome("alias", "DZ5485-612", ok, StageResult("recent_sales", "failed"), ["volume backfill failed"])
    counts = sync.summarize(
        [SyncOutcome("stockx", "DD1391-100", ok), SyncOutcome("stockx", "DZ5485-612", failed), partial]
    )
    assert counts == {"success": 1, "failed": 1, "partial": 1}
    assert "1 succeeded, 1 partial, 1 failed" in caplog.text


def test_run_refresh(monkeypatch, engine):
    monkeypatch.setattr(latest, "create_engine_from_env", lambda: engine)
    assert latest.run_refresh() == 0


def test_watchlist_loads(tmp_path):
    products = load_products()
    assert products
    assert all(product.sku for product in products)

    watchlist = tmp_path / "products.yml"
    watchlist.write_text("- sku: ABC-1\n  name: Test\n  alias_catalog_id: test-1\n- sku: ABC-2\n  name: Other\n")
    loaded = load_products(watchlist, limit=1)
    assert [product.sku for product in loaded] == ["ABC-1"]
    assert loaded[0].stockx_product_id is None
    assert loaded[0].currency == "USD"


def test_schedule_intervals(monkeypatch):
    from datetime import timedelta

    from marketsync.jobs import celery_app

    assert celery_app.celery_app.conf.beat_schedule["sync-market-data"]["schedule"] == celery_app.SYNC_INTERVAL
    monkeypatch.setenv("SYNC_INTERVAL_MINUTES", "90")
    assert celery_app.interval_minutes("SYNC_INTERVAL_MINUTES", 30) == timedelta(minutes=90)
    monkeypatch.setenv("SYNC_INTERVAL_MINUTES", "0")
    with pytest.raises(ValueError):
        celery_app.interval_minutes("SYNC_INTERVAL_MINUTES", 30)
