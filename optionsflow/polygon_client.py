"""
Polygon/Massive API Client - market data for the flow grader
Fully async with TTL caching for historical quotes.
Docs: https://polygon.io/docs/options

Methods raise on failure (httpx.HTTPError for transport / status problems,
ValueError for payloads without the data we need). Callers decide whether
a failure matters; the poller treats every one of them as "no data".
No retries: a 429 is just another failed request.
"""
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import httpx
import pandas as pd
from cachetools import TTLCache

from optionsflow.config import settings
from optionsflow.models import Quote

# Underlyings whose chains live under the index namespace
INDEX_UNDERLYINGS = {"SPX", "VIX", "NDX", "RUT", "XSP"}


def underlying_of(option_symbol: str) -> str:
    """O:QQQ250117C00525000 → QQQ"""
    body = option_symbol[2:] if option_symbol.startswith("O:") else option_symbol
    return body[:-15]


class PolygonClient:
    """
    Async Polygon.io / Massive.com market data client.
    Exposes the three provider queries the poller needs plus the
    historical quote lookup used for fill classification.
    """

    BASE_URL = "https://api.polygon.io"

    def __init__(
        self,
        api_key: str | None = None,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._api_key = settings.POLYGON_API_KEY if api_key is None else api_key
        self._timeout = settings.REQUEST_TIMEOUT_SEC if timeout is None else timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Quotes before a past timestamp never change
        self._quote_cache: TTLCache = TTLCache(
            maxsize=10_000, ttl=settings.CACHE_TTL_QUOTES
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                headers={"Authorization": f"Bearer {self._api_key}"},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # ── helpers ──────────────────────────────────────────────

    async def _get_json(self, url: str, params: dict | None = None) -> dict:
        """Authenticated GET; raises on non-2xx or a non-object body."""
        resp = await self.client.get(url, params=params)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected payload from {url}: {type(data).__name__}")
        return data

    # ── Underlying price ─────────────────────────────────────

    async def get_stock_price(self, ticker: str) -> float:
        """Live price from the stock snapshot (last trade → last quote → day close)."""
        symbol = ticker.upper()
        url = f"{self.BASE_URL}/v2/snapshot/locale/us/markets/stocks/tickers/{symbol}"
        data = await self._get_json(url)

        snap = data.get("ticker") or {}
        last_trade = snap.get("lastTrade") or {}
        last_quote = snap.get("lastQuote") or {}
        day = snap.get("day") or {}
        price = last_trade.get("p") or last_quote.get("P") or day.get("c")
        if not price or float(price) <= 0:
            raise ValueError(f"No live price in snapshot for {symbol}")
        return float(price)

    # ── Option snapshot ──────────────────────────────────────

    async def get_option_snapshot(self, option_symbol: str) -> dict:
        """
        Snapshot for one contract.
        Returns dict with bid, ask, mid, open_interest, volume.
        """
        underlying = underlying_of(option_symbol)
        if underlying in INDEX_UNDERLYINGS:
            underlying = f"I:{underlying}"
        url = f"{self.BASE_URL}/v3/snapshot/options/{underlying}/{option_symbol}"
        data = await self._get_json(url)

        result = data.get("results")
        if not isinstance(result, dict):
            raise ValueError(f"No snapshot results for {option_symbol}")

        quote = result.get("last_quote") or {}
        day = result.get("day") or {}
        bid = float(quote.get("bid") or 0)
        ask = float(quote.get("ask") or 0)
        return {
            "bid": bid,
            "ask": ask,
            "mid": (bid + ask) / 2,
            "open_interest": int(result.get("open_interest") or 0),
            "volume": int(day.get("volume") or 0),
        }

    # ── Daily bars ───────────────────────────────────────────

    async def get_daily_bars(
        self, ticker: str, start_date: date, end_date: date
    ) -> pd.DataFrame:
        """Daily OHLCV aggregates. Columns: date, open, high, low, close, volume."""
        symbol = ticker.upper()
        url = (
            f"{self.BASE_URL}/v2/aggs/ticker/{symbol}"
            f"/range/1/day/{start_date}/{end_date}"
        )
        params = {"adjusted": "true", "sort": "asc", "limit": 50000}
        data = await self._get_json(url, params)
        bars = data.get("results") or []

        if not bars:
            return pd.DataFrame(columns=["date", "open", "high", "low", "close", "volume"])

        records = []
        for bar in bars:
            records.append(
                {
                    "date": datetime.fromtimestamp(bar["t"] / 1000, tz=timezone.utc).date(),
                    "open": bar.get("o"),
                    "high": bar.get("h"),
                    "low": bar.get("l"),
                    "close": bar["c"],
                    "volume": bar.get("v", 0),
                }
            )
        return pd.DataFrame(records).sort_values("date").reset_index(drop=True)

    # ── Historical quote (classification) ────────────────────

    async def get_quote_before(
        self, option_symbol: str, timestamp: datetime
    ) -> Optional[Quote]:
        """
        NBBO quote in force one second before ``timestamp`` (cached).
        Returns None when Polygon has no quote at or before that time.
        """
        cache_key = (option_symbol, timestamp)
        if cache_key in self._quote_cache:
            return self._quote_cache[cache_key]

        check_time = timestamp - timedelta(seconds=1)
        check_ns = int(check_time.timestamp() * 1_000_000_000)
        url = f"{self.BASE_URL}/v3/quotes/{option_symbol}"
        params = {
            "timestamp.lte": check_ns,
            "order": "desc",
            "sort": "timestamp",
            "limit": 1,
        }
        data = await self._get_json(url, params)
        results = data.get("results") or []

        quote = None
        if results:
            raw = results[0]
            ts_ns = raw.get("sip_timestamp")
            quote = Quote(
                bid=raw.get("bid_price"),
                ask=raw.get("ask_price"),
                timestamp=(
                    datetime.fromtimestamp(ts_ns / 1_000_000_000, tz=timestamp.tzinfo)
                    if ts_ns else None
                ),
            )
        self._quote_cache[cache_key] = quote
        return quote
