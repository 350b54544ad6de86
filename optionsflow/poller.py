"""
Market-State Poller
===================
Keeps the MarketStateStore fresh for every underlying / contract in the
working set while staying under the provider's rate limit.

Fetch policy
────────────
* keys are split into fixed-size batches
* members of a batch run concurrently, member i starting i × stagger later
  (back-to-back connects get reset by the remote side)
* batches run one after another with a pause in between
* every request has its own timeout; there is no cycle deadline

Failure policy
──────────────
Best effort. A failed request (timeout, HTTP error, 429, bad payload) is
logged and swallowed: the store entry is left as it was and marked failed
if it never had a value. Nothing is retried inside a cycle and one bad
member never aborts its batch. The next periodic cycle tries again.

Volatility is fetched once per ticker and kept for the life of the process.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional
import asyncio
import logging

import pandas as pd

from optionsflow.config import settings
from optionsflow.market_state import MarketStateStore

logger = logging.getLogger("optionsflow.poller")


# ── Volatility ──────────────────────────────────────────────

def historical_volatility(closes: pd.Series, lookback: int = 30) -> float:
    """
    Sample standard deviation (n-1) of daily percentage returns over the
    last ``lookback`` closes. Needs at least three closes.
    """
    closes = pd.Series(closes, dtype="float64").dropna().tail(lookback)
    if len(closes) < 3:
        raise ValueError(f"need at least 3 closes, got {len(closes)}")
    returns = closes.pct_change().dropna() * 100
    return float(returns.std(ddof=1))


# ── Batching ────────────────────────────────────────────────

def batched(keys: list, size: int) -> list[list]:
    size = max(1, size)
    return [keys[i:i + size] for i in range(0, len(keys), size)]


async def fetch_batched(
    keys: list,
    fetch: Callable[[Any], Awaitable[Any]],
    on_result: Callable[[Any, Any], None],
    *,
    batch_size: int,
    stagger: float,
    pause: float,
    timeout: float,
) -> None:
    """
    Run ``fetch`` for every key under the batching policy and hand each
    outcome (value or exception) to ``on_result`` as its batch completes,
    so later batches observe what earlier ones wrote.
    """

    async def one(key, position: int):
        if position and stagger > 0:
            await asyncio.sleep(position * stagger)
        return await asyncio.wait_for(fetch(key), timeout=timeout)

    batches = batched(keys, batch_size)
    for idx, batch in enumerate(batches):
        results = await asyncio.gather(
            *(one(key, i) for i, key in enumerate(batch)),
            return_exceptions=True,
        )
        for key, result in zip(batch, results):
            on_result(key, result)
        if idx < len(batches) - 1 and pause > 0:
            await asyncio.sleep(pause)


@dataclass
class CycleStats:
    """Outcome of the most recent refresh call."""
    kind: str = ""
    attempted: int = 0
    succeeded: int = 0

    @property
    def total_failure(self) -> bool:
        return self.attempted > 0 and self.succeeded == 0


# ── Periodic task ───────────────────────────────────────────

class PeriodicRefresh:
    """
    Runs ``cycle`` immediately and then every ``interval`` seconds until
    its cancellation token is set. A cycle already running when the token
    trips is allowed to finish.
    """

    def __init__(self, cycle: Callable[[], Awaitable], interval: float):
        self._cycle = cycle
        self.interval = interval
        self._task: Optional[asyncio.Task] = None
        self._token: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running and not self._token.is_set():
            return
        self._token = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._token))

    def cancel(self) -> None:
        if self._token is not None:
            self._token.set()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _loop(self, token: asyncio.Event) -> None:
        while not token.is_set():
            try:
                await self._cycle()
            except Exception:
                logger.exception("Periodic refresh cycle failed")
            try:
                await asyncio.wait_for(token.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue


# ── Poller ──────────────────────────────────────────────────

class MarketStatePoller:
    """
    Sole writer of a MarketStateStore.

    ``provider`` must offer the three market-data queries of PolygonClient:
    ``get_stock_price(ticker)``, ``get_option_snapshot(option_symbol)`` and
    ``get_daily_bars(ticker, start_date, end_date)``.
    """

    def __init__(
        self,
        provider,
        store: MarketStateStore | None = None,
        *,
        price_batch_size: int | None = None,
        option_batch_size: int | None = None,
        volatility_batch_size: int | None = None,
        stagger: float | None = None,
        batch_pause: float | None = None,
        timeout: float | None = None,
        interval: float | None = None,
        lookback_days: int | None = None,
    ):
        s = settings
        self._provider = provider
        self.store = store if store is not None else MarketStateStore()
        self.price_batch_size = price_batch_size or s.PRICE_BATCH_SIZE
        self.option_batch_size = option_batch_size or s.OPTION_BATCH_SIZE
        self.volatility_batch_size = volatility_batch_size or s.VOLATILITY_BATCH_SIZE
        self.stagger = s.REQUEST_STAGGER_SEC if stagger is None else stagger
        self.batch_pause = s.BATCH_PAUSE_SEC if batch_pause is None else batch_pause
        self.timeout = s.REQUEST_TIMEOUT_SEC if timeout is None else timeout
        self.lookback_days = lookback_days or s.VOLATILITY_LOOKBACK_DAYS

        self._in_flight: set[tuple[str, str]] = set()
        self._watched: set[str] = set()
        self._auto_refresh = False
        self._refresher = PeriodicRefresh(
            self.run_cycle, s.REFRESH_INTERVAL_SEC if interval is None else interval
        )
        self.last_cycle = CycleStats()

    # ── public refresh API ───────────────────────────────────

    async def refresh(self, tickers: Iterable[str]) -> int:
        """Fetch current underlying prices. Returns the number that succeeded."""
        return self._record(await self._refresh_prices(tickers)).succeeded

    async def refresh_option_prices(self, contracts: Iterable[str]) -> int:
        """Fetch current option marks (bid/ask mid) by OCC symbol."""
        return self._record(await self._refresh_options(contracts)).succeeded

    async def refresh_volatility(self, tickers: Iterable[str]) -> int:
        """Fetch 30-day historical volatility for tickers that don't have one yet."""
        return self._record(await self._refresh_volatility(tickers)).succeeded

    async def refresh_all(
        self, tickers: Iterable[str], contracts: Iterable[str]
    ) -> CycleStats:
        """
        One full pass: prices, then option marks, then missing volatility.
        The outage indicator covers the pass as a whole, so it only trips
        when nothing in any of the three steps came back.
        """
        tickers = set(tickers)
        total = CycleStats(kind="market-state")
        for stats in (
            await self._refresh_prices(tickers),
            await self._refresh_options(contracts),
            await self._refresh_volatility(tickers),
        ):
            total.attempted += stats.attempted
            total.succeeded += stats.succeeded
        return self._record(total)

    @property
    def provider_outage(self) -> bool:
        """True when every request of the latest refresh pass failed."""
        return self.last_cycle.total_failure

    def _record(self, stats: CycleStats) -> CycleStats:
        # a pass with nothing to do says nothing about the provider
        if stats.attempted:
            self.last_cycle = stats
        return stats

    async def _refresh_prices(self, tickers: Iterable[str]) -> CycleStats:
        return await self._run(
            "price",
            sorted({t.upper() for t in tickers}),
            self._provider.get_stock_price,
            self.store.set_price,
            self.store.mark_price_failed,
            self.price_batch_size,
        )

    async def _refresh_options(self, contracts: Iterable[str]) -> CycleStats:
        return await self._run(
            "option",
            sorted(set(contracts)),
            self._fetch_option_mark,
            self.store.set_option_mark,
            self.store.mark_option_failed,
            self.option_batch_size,
        )

    async def _refresh_volatility(self, tickers: Iterable[str]) -> CycleStats:
        missing = sorted(
            {t.upper() for t in tickers if not self.store.has_volatility(t)}
        )
        return await self._run(
            "volatility",
            missing,
            self._fetch_volatility,
            self.store.set_volatility,
            self.store.mark_volatility_failed,
            self.volatility_batch_size,
        )

    # ── interest set / periodic refresh ──────────────────────

    @property
    def watched(self) -> frozenset[str]:
        return frozenset(self._watched)

    @property
    def refreshing(self) -> bool:
        return self._refresher.running

    def watch(self, tickers: Iterable[str]) -> None:
        self._watched.update(t.upper() for t in tickers)
        if self._auto_refresh and self._watched:
            self._refresher.start()

    def unwatch(self, tickers: Iterable[str]) -> None:
        """Stop refreshing tickers; the periodic task ends once nothing is watched."""
        self._watched.difference_update(t.upper() for t in tickers)
        if not self._watched and self._refresher.running:
            self._refresher.cancel()
            logger.info("Periodic refresh stopped (nothing watched)")

    async def run_cycle(self) -> int:
        """One periodic pass: current prices for every watched ticker."""
        if not self._watched:
            return 0
        return await self.refresh(self._watched)

    def start(self) -> None:
        """Enable periodic refresh (must be called from a running event loop)."""
        self._auto_refresh = True
        if self._watched:
            self._refresher.start()
        logger.info(
            "Market-state poller started (interval %.0fs)", self._refresher.interval
        )

    async def stop(self) -> None:
        self._auto_refresh = False
        self._refresher.cancel()
        await self._refresher.wait()
        logger.info("Market-state poller stopped")

    # ── fetchers ─────────────────────────────────────────────

    async def _fetch_option_mark(self, option_symbol: str) -> float:
        snap = await self._provider.get_option_snapshot(option_symbol)
        bid = float(snap.get("bid") or 0)
        ask = float(snap.get("ask") or 0)
        mid = (bid + ask) / 2
        if mid <= 0:
            raise ValueError(f"no two-sided quote for {option_symbol}")
        return mid

    async def _fetch_volatility(self, ticker: str) -> float:
        end = date.today()
        start = end - timedelta(days=int(self.lookback_days * 1.5) + 7)
        bars = await self._provider.get_daily_bars(ticker, start, end)
        if bars is None or "close" not in bars:
            raise ValueError(f"no daily bars for {ticker}")
        return historical_volatility(bars["close"], self.lookback_days)

    # ── batch runner ─────────────────────────────────────────

    async def _run(
        self,
        kind: str,
        keys: list[str],
        fetch: Callable[[str], Awaitable[float]],
        on_value: Callable[[str, float], None],
        on_failure: Callable[[str], None],
        batch_size: int,
    ) -> CycleStats:
        todo = [k for k in keys if (kind, k) not in self._in_flight]
        if not todo:
            return CycleStats(kind=kind)

        succeeded = 0

        def record(key: str, result) -> None:
            nonlocal succeeded
            self._in_flight.discard((kind, key))
            if isinstance(result, BaseException):
                logger.debug("%s fetch failed for %s: %r", kind, key, result)
                on_failure(key)
            else:
                on_value(key, result)
                succeeded += 1

        self._in_flight.update((kind, k) for k in todo)
        try:
            await fetch_batched(
                todo,
                fetch,
                record,
                batch_size=batch_size,
                stagger=self.stagger,
                pause=self.batch_pause,
                timeout=self.timeout,
            )
        finally:
            self._in_flight.difference_update((kind, k) for k in todo)

        logger.info("Refreshed %s: %d/%d ok", kind, succeeded, len(todo))
        return CycleStats(kind=kind, attempted=len(todo), succeeded=succeeded)
