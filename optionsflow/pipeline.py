"""
FlowPipeline – pull API over the whole flow
============================================
raw prints → normalize → quote (once per trade) → classify → working set

The working set is rebuilt wholesale on every ingestion pass; it is never
mutated in place. Market state is refreshed by the poller for whatever the
working set currently references, and grades are computed on request.
"""
from datetime import datetime
from typing import Iterable, Optional
import logging

from optionsflow.classifier import classify_all
from optionsflow.grader import GradeResult, PositioningGrader
from optionsflow.market_state import Lookup
from optionsflow.models import ClassifiedTrade, NormalizedTrade, Quote, TradePrint
from optionsflow.normalizer import normalize, parse_prints
from optionsflow.poller import MarketStatePoller, fetch_batched

logger = logging.getLogger("optionsflow.pipeline")


class FlowPipeline:
    def __init__(self, client, poller: MarketStatePoller | None = None):
        """
        ``client`` supplies ``get_quote_before(option_symbol, timestamp)``;
        the poller (built on the same client by default) owns market state.
        """
        self._client = client
        self.poller = poller if poller is not None else MarketStatePoller(client)
        self.store = self.poller.store
        self.grader = PositioningGrader(self.store)

        self._raw: list[TradePrint] = []
        self._working_set: tuple[ClassifiedTrade, ...] = ()
        # quote per trade identity in the current set – fetched once, never re-polled
        self._quotes: dict[tuple, Optional[Quote]] = {}

    # ── ingestion ────────────────────────────────────────────

    @property
    def working_set(self) -> tuple[ClassifiedTrade, ...]:
        return self._working_set

    async def ingest(self, records: Iterable[dict], refresh: bool = True) -> int:
        """Replace the full set of interesting trades."""
        self._raw = parse_prints(records)
        return await self._rebuild(refresh)

    async def ingest_incremental(self, records: Iterable[dict], refresh: bool = True) -> int:
        """Add newly arrived prints, then rebuild the working set."""
        self._raw = self._raw + parse_prints(records)
        return await self._rebuild(refresh)

    async def _rebuild(self, refresh: bool) -> int:
        normalized = normalize(self._raw)
        await self._fetch_quotes(normalized)
        # drop quotes for trades that left the set
        live = {t.identity_key for t in normalized}
        self._quotes = {k: q for k, q in self._quotes.items() if k in live}
        self._working_set = tuple(self.classify(normalized))

        tickers = {t.trade.underlying for t in self._working_set}
        stale = self.poller.watched - tickers
        if stale:
            self.poller.unwatch(stale)
        self.poller.watch(tickers)

        logger.info(
            "Working set rebuilt: %d raw prints → %d trades, %d tickers",
            len(self._raw), len(self._working_set), len(tickers),
        )
        if refresh:
            await self.refresh_market_state()
        return len(self._working_set)

    async def refresh_market_state(self) -> None:
        """One full pass: underlying prices, option marks, missing volatility."""
        tickers = {t.trade.underlying for t in self._working_set}
        symbols = {t.trade.option_symbol for t in self._working_set}
        await self.poller.refresh_all(tickers, symbols)

    async def _fetch_quotes(self, trades: list[NormalizedTrade]) -> None:
        todo = [t for t in trades if t.identity_key not in self._quotes]
        if not todo:
            return

        def record(trade: NormalizedTrade, result) -> None:
            if isinstance(result, BaseException):
                logger.debug("Quote lookup failed for %s: %r", trade.option_symbol, result)
                result = None
            self._quotes[trade.identity_key] = result

        poller = self.poller
        await fetch_batched(
            todo,
            lambda t: self._client.get_quote_before(t.option_symbol, t.timestamp),
            record,
            batch_size=poller.price_batch_size,
            stagger=poller.stagger,
            pause=poller.batch_pause,
            timeout=poller.timeout,
        )
        unknown = sum(1 for t in todo if self._quotes.get(t.identity_key) is None)
        if unknown:
            logger.info("No quote for %d/%d new trades (left unclassified)", unknown, len(todo))

    # ── pull API ─────────────────────────────────────────────

    def classify(
        self,
        trades: Iterable[NormalizedTrade],
        quotes: Optional[dict] = None,
    ) -> list[ClassifiedTrade]:
        return classify_all(trades, self._quotes if quotes is None else quotes)

    def grade(
        self,
        trade: ClassifiedTrade,
        working_set: Optional[Iterable[ClassifiedTrade]] = None,
        now: Optional[datetime] = None,
    ) -> GradeResult:
        visible = self._working_set if working_set is None else tuple(working_set)
        return self.grader.grade(trade, visible, now=now)

    def graded_trades(
        self, now: Optional[datetime] = None
    ) -> list[tuple[ClassifiedTrade, GradeResult]]:
        """Every trade in the working set with its grade, from one snapshot."""
        snapshot = self.store.snapshot()
        visible = self._working_set
        return [
            (t, self.grader.grade(t, visible, now=now, snapshot=snapshot))
            for t in visible
        ]

    def current_market_state(self, ticker: str) -> dict[str, object]:
        symbol = ticker.upper()
        marks: dict[str, Lookup] = {
            t.trade.option_symbol: self.store.option_mark(t.trade.option_symbol)
            for t in self._working_set
            if t.trade.underlying == symbol
        }
        return {
            "ticker": symbol,
            "price": self.store.price(symbol),
            "volatility": self.store.volatility_of(symbol),
            "option_marks": marks,
        }

    @property
    def provider_outage(self) -> bool:
        return self.poller.provider_outage
