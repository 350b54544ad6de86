"""
Integration tests for FlowPipeline
raw feed records → normalize → quote → classify → grade, against FakeProvider.
"""
from datetime import timedelta

import pytest

from optionsflow.grader import InsufficientData, PositioningGrade
from optionsflow.market_state import LookupState
from optionsflow.models import FillStyle, Quote
from optionsflow.pipeline import FlowPipeline
from optionsflow.poller import MarketStatePoller
from tests.fakes import T0, FakeProvider, raw_record

OPT = "O:XYZ260306C00105000"
NOW = T0 + timedelta(hours=15)


def make_pipeline(provider: FakeProvider) -> FlowPipeline:
    poller = MarketStatePoller(provider, stagger=0, batch_pause=0, timeout=1.0, interval=60)
    return FlowPipeline(provider, poller=poller)


@pytest.fixture
def provider():
    return FakeProvider(
        prices={"XYZ": 98.5},
        snapshots={OPT: (0.70, 0.80)},
        bars={"XYZ": [100, 102, 99, 101, 103, 100, 98, 101]},
        quotes={OPT: Quote(bid=0.95, ask=1.05)},
    )


# ── ingestion ────────────────────────────────────────────────

class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_classifies_working_set(self, provider):
        flow = make_pipeline(provider)
        assert await flow.ingest([raw_record()], refresh=False) == 1
        (trade,) = flow.working_set
        assert trade.fill_style is FillStyle.AT_ASK
        assert trade.quote == Quote(bid=0.95, ask=1.05)

    @pytest.mark.asyncio
    async def test_missing_quote_leaves_trade_unknown(self, provider):
        provider.quotes.clear()
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()], refresh=False)
        assert flow.working_set[0].fill_style is FillStyle.UNKNOWN

    @pytest.mark.asyncio
    async def test_failed_quote_leaves_trade_unknown(self, provider):
        provider.fail.add(OPT)
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()], refresh=False)
        assert flow.working_set[0].fill_style is FillStyle.UNKNOWN

    @pytest.mark.asyncio
    async def test_quotes_fetched_once_per_trade(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()], refresh=False)
        await flow.ingest_incremental([raw_record(exchange_name="ISE")], refresh=False)
        await flow.ingest_incremental([raw_record()], refresh=False)  # duplicate print
        assert len(flow.working_set) == 2
        assert provider.count("quote") == 2

    @pytest.mark.asyncio
    async def test_quotes_kept_only_for_current_set(self, provider):
        flow = make_pipeline(provider)
        for i in range(50):
            await flow.ingest([raw_record(exchange_name=f"EX{i}")], refresh=False)
        assert len(flow.working_set) == 1
        assert len(flow._quotes) == 1
        assert provider.count("quote") == 50

        # a trade that stays in the set is not quoted again
        await flow.ingest([raw_record(exchange_name="EX49")], refresh=False)
        assert provider.count("quote") == 50

    @pytest.mark.asyncio
    async def test_duplicates_and_malformed_dropped(self, provider):
        flow = make_pipeline(provider)
        count = await flow.ingest(
            [raw_record(), raw_record(), raw_record(strike="n/a")], refresh=False
        )
        assert count == 1

    @pytest.mark.asyncio
    async def test_small_prints_bundled_before_classification(self, provider):
        flow = make_pipeline(provider)
        records = [
            raw_record(trade_size=1, total_premium=100, trade_timestamp="2026-03-02T15:00:05Z"),
            raw_record(trade_size=2, total_premium=200, trade_timestamp="2026-03-02T15:00:40Z"),
        ]
        await flow.ingest(records, refresh=False)
        (trade,) = flow.working_set
        assert trade.trade.size == 3
        assert trade.trade.bundled_count == 2

    @pytest.mark.asyncio
    async def test_replacing_set_unwatches_stale_tickers(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()], refresh=False)
        assert flow.poller.watched == frozenset({"XYZ"})
        await flow.ingest([raw_record(underlying_ticker="ABC")], refresh=False)
        assert flow.poller.watched == frozenset({"ABC"})

    @pytest.mark.asyncio
    async def test_classify_with_explicit_quotes(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()], refresh=False)
        trade = flow.working_set[0].trade
        (again,) = flow.classify([trade], {trade.identity_key: Quote(bid=0.50, ask=0.60)})
        assert again.fill_style is FillStyle.ABOVE_ASK


# ── market state + grading ───────────────────────────────────

class TestGrading:
    @pytest.mark.asyncio
    async def test_refresh_populates_market_state(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()])
        assert flow.store.price("XYZ").value == 98.5
        assert flow.store.option_mark(OPT).value == pytest.approx(0.75)
        assert flow.store.volatility_of("XYZ").has_value
        assert not flow.provider_outage

    @pytest.mark.asyncio
    async def test_pending_until_volatility_known(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()], refresh=False)
        flow.store.set_price("XYZ", 98.5)
        flow.store.set_option_mark(OPT, 0.75)

        trade = flow.working_set[0]
        assert isinstance(flow.grade(trade, now=NOW), InsufficientData)

        flow.store.set_volatility("XYZ", 2.0)
        result = flow.grade(trade, now=NOW)
        assert isinstance(result, PositioningGrade)
        assert result.score == 80
        assert result.grade == "A"

    @pytest.mark.asyncio
    async def test_graded_trades_covers_working_set(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest(
            [raw_record(), raw_record(type="put", strike=100, exchange_name="ISE")],
            refresh=False,
        )
        flow.store.set_price("XYZ", 98.5)
        flow.store.set_volatility("XYZ", 2.0)
        flow.store.set_option_mark(OPT, 0.75)

        graded = flow.graded_trades(now=NOW)
        assert len(graded) == 2
        by_symbol = {t.trade.option_symbol: r for t, r in graded}
        assert isinstance(by_symbol[OPT], PositioningGrade)
        assert not by_symbol[OPT].degraded
        put_grade = by_symbol["O:XYZ260306P00100000"]
        assert put_grade.degraded  # no mark for the put

    @pytest.mark.asyncio
    async def test_current_market_state(self, provider):
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()])
        state = flow.current_market_state("xyz")
        assert state["ticker"] == "XYZ"
        assert state["price"].value == 98.5
        assert state["option_marks"][OPT].value == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_failing_option_marks_alone_are_not_an_outage(self, provider):
        provider.fail.add(OPT)
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()])
        await flow.refresh_market_state()
        assert flow.store.price("XYZ").value == 98.5
        assert not flow.provider_outage

    @pytest.mark.asyncio
    async def test_total_provider_failure_is_flagged(self):
        provider = FakeProvider(fail=("XYZ", OPT))
        flow = make_pipeline(provider)
        await flow.ingest([raw_record()])
        assert flow.provider_outage
        assert flow.store.price("XYZ").state is LookupState.UNAVAILABLE
