import json
from decimal import Decimal

import httpx
import pytest
import respx
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from conftest import NOW, load_fixture
from marketsync.db.schema import market_records, raw_snapshots, recent_sales
from marketsync.ingest.alias import AliasClient, AliasIngestor
from marketsync.ingest.models import STAGE_FAILED, STAGE_SKIPPED
from marketsync.ingest.stockx import StockXClient, StockXIngestor
from marketsync.utils.rate_limit import RateLimiter

STOCKX_URL = "https://api.stockx.test"
ALIAS_URL = "https://api.alias.test"


def _records(engine, provider):
    with engine.connect() as conn:
        query = select(market_records).where(market_records.c.provider == provider)
        return [dict(row) for row in conn.execute(query).mappings()]


def _snapshots(engine):
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(select(raw_snapshots)).mappings()]


@pytest.mark.asyncio
async def test_stockx_sync(engine, panda):
    body = json.dumps(load_fixture("stockx/market_data.json"))
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(f"{STOCKX_URL}/v2/catalog/products/sx-panda/market-data").mock(
            return_value=httpx.Response(200, text=body)
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = StockXClient("key", "token", base_url=STOCKX_URL, session=session, rate_limiter=RateLimiter(rate=0))
            outcome = await StockXIngestor(engine, client).sync(panda, captured_at=NOW)

    request = route.calls.last.request
    assert request.headers["x-api-key"] == "key"
    assert request.headers["Authorization"] == "Bearer token"
    assert request.url.params["currencyCode"] == "USD"

    assert outcome.status == "success"
    assert outcome.availability.written == 4
    rows = _records(engine, "stockx")
    assert len(rows) == 4
    expedited = [row for row in rows if row["is_expedited"]]
    assert len(expedited) == 1
    assert expedited[0]["lowest_ask"] == Decimal("138.00")

    snapshots = _snapshots(engine)
    assert len(snapshots) == 1
    assert snapshots[0]["http_status"] == 200
    assert {row["raw_snapshot_id"] for row in rows} == {snapshots[0]["id"]}


@pytest.mark.asyncio
async def test_stockx_failure_is_logged_as_snapshot(engine, panda):
    async with respx.mock() as router:
        router.get(f"{STOCKX_URL}/v2/catalog/products/sx-panda/market-data").mock(
            return_value=httpx.Response(401, json={"message": "unauthorized"})
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = StockXClient("key", base_url=STOCKX_URL, session=session, rate_limiter=RateLimiter(rate=0))
            outcome = await StockXIngestor(engine, client).sync(panda, captured_at=NOW)

    assert outcome.status == "failed"
    assert _records(engine, "stockx") == []
    snapshot = _snapshots(engine)[0]
    assert snapshot["http_status"] == 401
    assert "401" in snapshot["error_message"]
    assert snapshot["response"] is None


@pytest.mark.asyncio
async def test_stockx_sync_without_product_id_is_skipped(engine, panda):
    panda.stockx_product_id = None
    client = StockXClient("key", base_url=STOCKX_URL, rate_limiter=RateLimiter(rate=0))
    try:
        outcome = await StockXIngestor(engine, client).sync(panda)
    finally:
        await client.close()
    assert outcome.availability.status == STAGE_SKIPPED


def _alias_router(router, *, sales_response):
    router.get(f"{ALIAS_URL}/api/v1/pricing_insights/availabilities").mock(
        return_value=httpx.Response(200, text=json.dumps(load_fixture("alias/availabilities.json")))
    )
    return router.get(f"{ALIAS_URL}/api/v1/pricing_insights/recent_sales").mock(return_value=sales_response)


@pytest.mark.asyncio
async def test_alias_sync_with_volume_backfill(engine, panda):
    sales = httpx.Response(200, text=json.dumps(load_fixture("alias/recent_sales.json")))
    async with respx.mock(assert_all_called=True) as router:
        _alias_router(router, sales_response=sales)
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = AliasClient("token", base_url=ALIAS_URL, session=session, rate_limiter=RateLimiter(rate=0))
            outcome = await AliasIngestor(engine, client).sync(
                panda, include_consigned=True, captured_at=NOW, now=NOW
            )

    assert outcome.status == "success"
    assert outcome.availability.written == 3
    assert outcome.volume_backfill.written == 2
    assert outcome.volume_backfill.skipped == 1

    rows = {(row["size_label"], row["is_consigned"]): row for row in _records(engine, "alias")}
    standard = rows[("10", False)]
    assert standard["lowest_ask"] == Decimal("142.00")
    assert standard["sales_last_72h"] == 1
    assert standard["sales_last_30d"] == 1
    assert standard["last_sale_price"] == Decimal("99.00")
    assert standard["spread_absolute"] == Decimal("22.00")

    consigned = rows[("10.5", True)]
    assert consigned["lowest_ask"] == Decimal("145.00")
    assert consigned["sales_last_30d"] == 2

    assert rows[("11", False)]["sales_last_72h"] is None
    assert {row["endpoint"] for row in _snapshots(engine)} == {"pricing_availabilities", "recent_sales"}


@pytest.mark.asyncio
async def test_alias_backfill_failure_is_partial(engine, panda):
    async with respx.mock() as router:
        _alias_router(router, sales_response=httpx.Response(500))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = AliasClient("token", base_url=ALIAS_URL, session=session, rate_limiter=RateLimiter(rate=0))
            outcome = await AliasIngestor(engine, client).sync(panda, captured_at=NOW, now=NOW)

    assert outcome.status == "partial"
    assert outcome.volume_backfill.status == STAGE_FAILED
    assert outcome.warnings
    rows = _records(engine, "alias")
    assert len(rows) == 2
    assert all(row["sales_last_72h"] is None for row in rows)
    assert all(row["lowest_ask"] is not None or row["highest_bid"] is not None for row in rows)


@pytest.mark.asyncio
async def test_alias_availability_failure_skips_backfill(engine, panda):
    async with respx.mock(assert_all_called=False) as router:
        availabilities = router.get(f"{ALIAS_URL}/api/v1/pricing_insights/availabilities").mock(
            return_value=httpx.Response(503)
        )
        sales = router.get(f"{ALIAS_URL}/api/v1/pricing_insights/recent_sales").mock(
            return_value=httpx.Response(200, json={"recent_sales": []})
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = AliasClient("token", base_url=ALIAS_URL, session=session, rate_limiter=RateLimiter(rate=0))
            outcome = await AliasIngestor(engine, client).sync(panda, captured_at=NOW, now=NOW)

    assert availabilities.called
    assert not sales.called
    assert outcome.status == "failed"
    assert outcome.volume_backfill.status == STAGE_SKIPPED
    assert _records(engine, "alias") == []
    assert _snapshots(engine)[0]["http_status"] == 503


@pytest.mark.asyncio
async def test_alias_backfill_can_run_on_its_own(engine, panda):
    async with respx.mock() as router:
        _alias_router(router, sales_response=httpx.Response(200, text=json.dumps(load_fixture("alias/recent_sales.json"))))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            client = AliasClient("token", base_url=ALIAS_URL, session=session, rate_limiter=RateLimiter(rate=0))
            ingestor = AliasIngestor(engine, client)
            first = await ingestor.sync(panda, backfill=False, captured_at=NOW)
            assert first.volume_backfill is None
            retry = await ingestor.backfill_volume(panda, now=NOW)

    assert retry.written == 1
    rows = {row["size_label"]: row for row in _records(engine, "alias")}
    assert rows["10"]["sales_last_72h"] == 1


def _sale_rows(engine):
    with engine.connect() as conn:
        return [dict(row) for row in conn.execute(select(recent_sales)).mappings()]


def _alias_client(session):
    return AliasClient("token", base_url=ALIAS_URL, session=session, rate_limiter=RateLimiter(rate=0))


@pytest.mark.asyncio
async def test_alias_backfill_stores_sale_details_once(engine, panda):
    sales = httpx.Response(200, text=json.dumps(load_fixture("alias/recent_sales.json")))
    async with respx.mock() as router:
        _alias_router(router, sales_response=sales)
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = AliasIngestor(engine, _alias_client(session))
            await ingestor.sync(panda, include_consigned=True, captured_at=NOW, now=NOW)
            await ingestor.backfill_volume(panda, now=NOW)

    rows = _sale_rows(engine)
    assert len(rows) == 5
    snapshot_ids = {s["id"] for s in _snapshots(engine) if s["endpoint"] == "recent_sales"}
    assert {row["raw_snapshot_id"] for row in rows} <= snapshot_ids
    assert {row["size_label"] for row in rows} == {"10", "10.5", "12"}


@pytest.mark.asyncio
async def test_alias_malformed_sales_do_not_fail_the_unit(engine, panda):
    payload = {
        "recent_sales": [
            {"purchased_at": "P1D", "price_cents": "100", "size": 10},
            {"purchased_at": "2025-12-05T02:00:00Z", "price_cents": "inf", "size": "inf"},
            {"purchased_at": "2025-12-05T02:00:00Z", "price_cents": "9900", "size": 10},
        ]
    }
    async with respx.mock() as router:
        _alias_router(router, sales_response=httpx.Response(200, json=payload))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            outcome = await AliasIngestor(engine, _alias_client(session)).sync(
                panda, captured_at=NOW, now=NOW
            )

    assert outcome.status == "success"
    assert outcome.volume_backfill.written == 1
    rows = {row["size_label"]: row for row in _records(engine, "alias")}
    assert rows["10"]["sales_last_72h"] == 1
    assert len(_sale_rows(engine)) == 1


@pytest.mark.asyncio
async def test_sale_detail_failure_keeps_volume_backfill(engine, panda, monkeypatch):
    def broken_insert(sales):
        raise OperationalError("INSERT INTO recent_sales", {}, Exception("disk full"))

    sales = httpx.Response(200, text=json.dumps(load_fixture("alias/recent_sales.json")))
    async with respx.mock() as router:
        _alias_router(router, sales_response=sales)
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.async_handler)) as session:
            ingestor = AliasIngestor(engine, _alias_client(session))
            monkeypatch.setattr(ingestor.sales, "insert", broken_insert)
            outcome = await ingestor.sync(panda, captured_at=NOW, now=NOW)

    assert outcome.status == "success"
    assert outcome.volume_backfill.written == 1
    assert _sale_rows(engine) == []
    rows = {row["size_label"]: row for row in _records(engine, "alias")}
    assert rows["10"]["last_sale_price"] == Decimal("99.00")
