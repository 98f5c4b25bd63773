from datetime import timedelta
from decimal import Decimal

import pytest

from marketsync.ingest.models import MarketRecord
from marketsync.logic import pricing
from marketsync.store.latest import rebuild_latest
from marketsync.store.records import MarketRecordStore


def _record(now, provider, ask, **overrides):
    values = dict(
        provider=provider,
        provider_source=f"{provider}_test",
        provider_product_id=f"{provider}-panda",
        sku="DD1391-100",
        size_label="10",
        currency_code="USD",
        lowest_ask=Decimal(ask) if ask is not None else None,
        highest_bid=Decimal("120.00"),
        captured_at=now,
    )
    values.update(overrides)
    return MarketRecord(**values)


@pytest.fixture()
def priced(engine, now):
    MarketRecordStore(engine).upsert(
        [
            _record(now, "stockx", "145.00", provider_variant_id="v1"),
            _record(now, "stockx", "138.00", provider_variant_id="v1", is_expedited=True),
            _record(now, "alias", "142.00"),
            _record(now, "alias", "136.00", is_consigned=True),
            _record(now, "alias", "150.00", size_label="10.5"),
        ]
    )
    rebuild_latest(engine)
    return engine


def test_best_price_is_lowest_ask_across_tiers(priced):
    best = pricing.best_price(priced, "DD1391-100", "10")
    assert best.provider == "alias"
    assert best.lowest_ask == Decimal("136.00")
    assert best.is_consigned is True
    assert best.is_expedited is False


def test_best_price_without_data(engine):
    assert pricing.best_price(engine, "DD1391-100", "10") is None


def test_best_price_ignores_rows_without_asks(engine, now):
    MarketRecordStore(engine).upsert([_record(now, "stockx", None, provider_variant_id="v3")])
    rebuild_latest(engine)
    assert pricing.best_price(engine, "DD1391-100", "10") is None


def test_best_price_filters_currency_and_region(priced):
    assert pricing.best_price(priced, "DD1391-100", "10", "GBP") is None
    assert pricing.best_price(priced, "DD1391-100", "10", "usd").lowest_ask == Decimal("136.00")
    assert pricing.best_price(priced, "DD1391-100", "10", region="GB") is None


def test_standard_pricing_per_provider(priced):
    result = pricing.standard_pricing(priced, "DD1391-100", "10")
    assert result.stockx.lowest_ask == Decimal("145.00")
    assert result.alias.lowest_ask == Decimal("142.00")
    assert result.stockx.is_expedited is False
    assert result.alias.is_consigned is False


def test_all_pricing_options(priced):
    options = pricing.all_pricing_options(priced, "DD1391-100", "10")
    assert options.stockx_standard.lowest_ask == Decimal("145.00")
    assert options.stockx_expedited.lowest_ask == Decimal("138.00")
    assert options.alias_standard.lowest_ask == Decimal("142.00")
    assert options.alias_consigned.lowest_ask == Decimal("136.00")


def test_missing_tier_is_none(engine, now):
    MarketRecordStore(engine).upsert([_record(now, "alias", "142.00")])
    rebuild_latest(engine)
    options = pricing.all_pricing_options(engine, "DD1391-100", "10")
    assert options.alias_standard is not None
    assert options.stockx_standard is None
    assert options.stockx_expedited is None
    assert options.alias_consigned is None


def test_expedited_savings(priced):
    savings = pricing.expedited_savings(priced, "DD1391-100", "10")
    assert savings.standard_price == Decimal("145.00")
    assert savings.expedited_price == Decimal("138.00")
    assert savings.savings == Decimal("7.00")
    assert float(savings.savings_pct) == pytest.approx(4.83, abs=0.01)


def test_expedited_savings_requires_both_tiers(engine, now):
    MarketRecordStore(engine).upsert([_record(now, "stockx", "145.00", provider_variant_id="v1")])
    rebuild_latest(engine)
    assert pricing.expedited_savings(engine, "DD1391-100", "10") is None


def test_queries_read_the_newest_snapshot(engine, now):
    store = MarketRecordStore(engine)
    store.upsert([_record(now - timedelta(hours=1), "alias", "120.00")])
    store.upsert([_record(now, "alias", "142.00")])
    rebuild_latest(engine)
    assert pricing.best_price(engine, "DD1391-100", "10").lowest_ask == Decimal("142.00")


def test_consigned_comparison(priced):
    comparison = pricing.consigned_comparison(priced, "DD1391-100", "10")
    assert comparison.standard_price == Decimal("142.00")
    assert comparison.consigned_price == Decimal("136.00")
    assert comparison.difference == Decimal("-6.00")
    assert float(comparison.difference_pct) == pytest.approx(-4.225, abs=0.01)


def test_consigned_comparison_requires_both_tiers(engine, now):
    MarketRecordStore(engine).upsert([_record(now, "alias", "142.00")])
    rebuild_latest(engine)
    assert pricing.consigned_comparison(engine, "DD1391-100", "10") is None


def test_consigned_comparison_requires_priced_asks(engine, now):
    MarketRecordStore(engine).upsert(
        [_record(now, "alias", "142.00"), _record(now, "alias", None, is_consigned=True)]
    )
    rebuild_latest(engine)
    assert pricing.consigned_comparison(engine, "DD1391-100", "10") is None
