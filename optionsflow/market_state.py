"""
Market State store
==================
In-memory view of live market data for the tickers / contracts in the
working set:

* current underlying price   (keyed by ticker)
* current option mark (mid)  (keyed by OCC option symbol)
* 30-day daily-return stddev (keyed by ticker, percent)

The poller is the only writer. Readers take an immutable snapshot and get
tri-state lookups so "not fetched yet", "fetch failed" and a real value are
never confused with each other (and never with zero).

Injectable: the poller and the pipeline take a store instance, so tests can
pre-populate one directly.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


class LookupState(Enum):
    PENDING = "pending"          # never fetched (or first fetch in flight)
    UNAVAILABLE = "unavailable"  # last fetch failed, no earlier value
    VALUE = "value"


@dataclass(frozen=True)
class Lookup:
    state: LookupState
    value: Optional[float] = None

    @classmethod
    def of(cls, value: float) -> "Lookup":
        return cls(LookupState.VALUE, value)

    @property
    def has_value(self) -> bool:
        return self.state is LookupState.VALUE

    def to_dict(self) -> dict:
        return {"state": self.state.value, "value": self.value}


PENDING = Lookup(LookupState.PENDING)
UNAVAILABLE = Lookup(LookupState.UNAVAILABLE)


class _Series:
    """One keyed series of values plus the keys whose last fetch failed."""

    def __init__(self):
        self.values: dict[str, float] = {}
        self.failed: set[str] = set()

    def set(self, key: str, value: float) -> None:
        self.values[key] = value
        self.failed.discard(key)

    def mark_failed(self, key: str) -> None:
        # a failure never clobbers a known value
        if key not in self.values:
            self.failed.add(key)


def _lookup(values: Mapping[str, float], failed, key: str) -> Lookup:
    if key in values:
        return Lookup.of(values[key])
    if key in failed:
        return UNAVAILABLE
    return PENDING


@dataclass(frozen=True)
class MarketSnapshot:
    """Point-in-time, read-only copy of the store."""
    prices: Mapping[str, float] = field(default_factory=dict)
    option_marks: Mapping[str, float] = field(default_factory=dict)
    volatility: Mapping[str, float] = field(default_factory=dict)
    failed_prices: frozenset = frozenset()
    failed_option_marks: frozenset = frozenset()
    failed_volatility: frozenset = frozenset()
    taken_at: Optional[datetime] = None

    def price(self, ticker: str) -> Lookup:
        return _lookup(self.prices, self.failed_prices, ticker.upper())

    def option_mark(self, option_symbol: str) -> Lookup:
        return _lookup(self.option_marks, self.failed_option_marks, option_symbol)

    def volatility_of(self, ticker: str) -> Lookup:
        return _lookup(self.volatility, self.failed_volatility, ticker.upper())


class MarketStateStore:
    def __init__(self):
        self._prices = _Series()
        self._option_marks = _Series()
        self._volatility = _Series()

    # ── writes (poller only) ─────────────────────────────────

    def set_price(self, ticker: str, price: float) -> None:
        self._prices.set(ticker.upper(), price)

    def mark_price_failed(self, ticker: str) -> None:
        self._prices.mark_failed(ticker.upper())

    def set_option_mark(self, option_symbol: str, mark: float) -> None:
        self._option_marks.set(option_symbol, mark)

    def mark_option_failed(self, option_symbol: str) -> None:
        self._option_marks.mark_failed(option_symbol)

    def set_volatility(self, ticker: str, stddev_pct: float) -> None:
        self._volatility.set(ticker.upper(), stddev_pct)

    def mark_volatility_failed(self, ticker: str) -> None:
        self._volatility.mark_failed(ticker.upper())

    # ── reads ────────────────────────────────────────────────

    def price(self, ticker: str) -> Lookup:
        return _lookup(self._prices.values, self._prices.failed, ticker.upper())

    def option_mark(self, option_symbol: str) -> Lookup:
        return _lookup(
            self._option_marks.values, self._option_marks.failed, option_symbol
        )

    def volatility_of(self, ticker: str) -> Lookup:
        return _lookup(self._volatility.values, self._volatility.failed, ticker.upper())

    def has_volatility(self, ticker: str) -> bool:
        return ticker.upper() in self._volatility.values

    def snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            prices=MappingProxyType(dict(self._prices.values)),
            option_marks=MappingProxyType(dict(self._option_marks.values)),
            volatility=MappingProxyType(dict(self._volatility.values)),
            failed_prices=frozenset(self._prices.failed),
            failed_option_marks=frozenset(self._option_marks.failed),
            failed_volatility=frozenset(self._volatility.failed),
            taken_at=datetime.now(timezone.utc),
        )
