"""
Shared builders and an in-memory market-data provider for the tests.
No network anywhere.
"""
import asyncio
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import pandas as pd

from optionsflow.models import (
    ClassifiedTrade,
    FillStyle,
    NormalizedTrade,
    OptionRight,
    Quote,
    TradePrint,
)

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def make_print(**overrides) -> TradePrint:
    fields = dict(
        underlying="XYZ",
        right=OptionRight.CALL,
        strike=105.0,
        expiry=date(2026, 3, 6),
        size=500,
        premium_per_contract=1.00,
        total_premium=50_000.0,
        spot_price=100.0,
        timestamp=T0,
        trade_type="SWEEP",
        exchange="CBOE",
    )
    fields.update(overrides)
    return TradePrint(**fields)


def make_trade(**overrides) -> NormalizedTrade:
    return NormalizedTrade.from_print(make_print(**overrides))


def make_classified(fill_style: FillStyle = FillStyle.AT_ASK, **overrides) -> ClassifiedTrade:
    return ClassifiedTrade(trade=make_trade(**overrides), fill_style=fill_style)


def raw_record(**overrides) -> dict:
    """A feed record as it arrives on the wire."""
    record = {
        "underlying_ticker": "XYZ",
        "type": "call",
        "strike": 105,
        "expiry": "2026-03-06",
        "trade_size": 500,
        "premium_per_contract": 1.00,
        "total_premium": 50_000,
        "spot_price": 100.0,
        "trade_timestamp": "2026-03-02T15:00:00Z",
        "trade_type": "SWEEP",
        "exchange_name": "CBOE",
    }
    record.update(overrides)
    return record


def daily_bars(closes: list[float], start: date = date(2026, 1, 2)) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "date": [start + timedelta(days=i) for i in range(len(closes))],
            "close": closes,
        }
    )


class FakeProvider:
    """
    Stands in for PolygonClient. Anything not configured (or listed in
    ``fail``) raises, the way a failed HTTP call would.
    """

    def __init__(
        self,
        prices: Optional[dict] = None,
        snapshots: Optional[dict] = None,
        bars: Optional[dict] = None,
        quotes: Optional[dict] = None,
        fail: tuple = (),
        delay: float = 0.0,
    ):
        self.prices = prices or {}
        self.snapshots = snapshots or {}
        self.bars = bars or {}
        self.quotes = quotes or {}
        self.fail = set(fail)
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def _enter(self, kind: str, key: str) -> None:
        self.calls.append((kind, key))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if key in self.fail:
            raise RuntimeError(f"simulated failure for {key}")

    async def get_stock_price(self, ticker: str) -> float:
        await self._enter("price", ticker)
        if ticker not in self.prices:
            raise ValueError(f"no price for {ticker}")
        return self.prices[ticker]

    async def get_option_snapshot(self, option_symbol: str) -> dict:
        await self._enter("option", option_symbol)
        if option_symbol not in self.snapshots:
            raise ValueError(f"no snapshot for {option_symbol}")
        bid, ask = self.snapshots[option_symbol]
        return {"bid": bid, "ask": ask, "mid": (bid + ask) / 2}

    async def get_daily_bars(self, ticker: str, start_date: date, end_date: date) -> pd.DataFrame:
        await self._enter("bars", ticker)
        if ticker not in self.bars:
            raise ValueError(f"no bars for {ticker}")
        return daily_bars(self.bars[ticker])

    async def get_quote_before(self, option_symbol: str, timestamp: datetime) -> Optional[Quote]:
        await self._enter("quote", option_symbol)
        return self.quotes.get(option_symbol)

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)
