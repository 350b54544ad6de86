"""
Trade data model
================
Raw prints as they arrive from the flow feed, the normalized records the
rest of the pipeline works on, and the fill-style taxonomy.

All records are frozen: a print is never mutated once ingested, and a
classification is fixed once computed.
"""
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
import math


# ── Taxonomy ────────────────────────────────────────────────

class OptionRight(Enum):
    CALL = "call"
    PUT = "put"

    @property
    def code(self) -> str:
        return "C" if self is OptionRight.CALL else "P"

    @property
    def opposite(self) -> "OptionRight":
        return OptionRight.PUT if self is OptionRight.CALL else OptionRight.CALL


class FillStyle(Enum):
    ABOVE_ASK = "AA"
    AT_ASK = "A"
    AT_BID = "B"
    BELOW_BID = "BB"
    UNKNOWN = "?"

    @property
    def is_buy(self) -> bool:
        """Aggressive buyer lifted the offer."""
        return self in (FillStyle.ABOVE_ASK, FillStyle.AT_ASK)

    @property
    def is_sell(self) -> bool:
        """Aggressive seller hit the bid."""
        return self in (FillStyle.AT_BID, FillStyle.BELOW_BID)


class Direction(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class Moneyness(Enum):
    ATM = "ATM"
    ITM = "ITM"
    OTM = "OTM"


# ── Helpers ─────────────────────────────────────────────────

def format_option_symbol(
    underlying: str, expiry: date, strike: float, right: OptionRight
) -> str:
    """
    Format option ticker in OCC format.
    Example: O:QQQ250117C00525000
    """
    exp_str = expiry.strftime("%y%m%d")
    strike_str = f"{int(round(strike * 1000)):08d}"
    return f"O:{underlying.upper()}{exp_str}{right.code}{strike_str}"


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _parse_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip(), "%Y-%m-%d").date()


def _parse_number(value: Any, name: str) -> float:
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"{name} is not a finite number: {value!r}")
    return number


# ── Records ─────────────────────────────────────────────────

@dataclass(frozen=True)
class TradePrint:
    """One execution record for an option contract, exactly as the feed sent it."""
    underlying: str
    right: OptionRight
    strike: float
    expiry: date
    size: int                       # contracts
    premium_per_contract: float     # fill price
    total_premium: float            # dollars
    spot_price: float               # underlying at execution
    timestamp: datetime
    trade_type: Optional[str] = None
    exchange: str = ""

    @classmethod
    def from_dict(cls, raw: dict) -> "TradePrint":
        """
        Build a print from a feed record.

        Raises ValueError (or KeyError / TypeError) when the record is
        malformed; the normalizer turns those into logged skips.
        """
        right_raw = str(raw["type"]).strip().lower()
        try:
            right = OptionRight(right_raw)
        except ValueError:
            raise ValueError(f"unknown option right: {raw['type']!r}")

        trade_type = raw.get("trade_type")
        return cls(
            underlying=str(raw["underlying_ticker"]).strip().upper(),
            right=right,
            strike=_parse_number(raw["strike"], "strike"),
            expiry=_parse_date(raw["expiry"]),
            size=int(_parse_number(raw["trade_size"], "trade_size")),
            premium_per_contract=_parse_number(
                raw["premium_per_contract"], "premium_per_contract"
            ),
            total_premium=_parse_number(raw["total_premium"], "total_premium"),
            spot_price=_parse_number(raw.get("spot_price", 0.0), "spot_price"),
            timestamp=_parse_timestamp(raw["trade_timestamp"]),
            trade_type=str(trade_type).upper() if trade_type else None,
            exchange=str(raw.get("exchange_name") or ""),
        )

    @property
    def identity_key(self) -> tuple:
        return (
            self.underlying,
            self.strike,
            self.expiry,
            self.right,
            self.size,
            self.total_premium,
            self.spot_price,
            self.timestamp,
            self.exchange,
        )

    @property
    def bundle_key(self) -> tuple:
        minute = self.timestamp.replace(second=0, microsecond=0)
        return (self.underlying, self.strike, self.expiry, self.right, minute)

    @property
    def option_symbol(self) -> str:
        return format_option_symbol(self.underlying, self.expiry, self.strike, self.right)

    def days_to_expiry(self, today: date) -> int:
        return max(0, (self.expiry - today).days)

    @property
    def moneyness(self) -> Moneyness:
        if self.spot_price > 0:
            if abs(self.spot_price - self.strike) / self.spot_price < 0.01:
                return Moneyness.ATM
        if self.right is OptionRight.CALL:
            return Moneyness.ITM if self.spot_price > self.strike else Moneyness.OTM
        return Moneyness.ITM if self.spot_price < self.strike else Moneyness.OTM


@dataclass(frozen=True)
class NormalizedTrade(TradePrint):
    """A single print, or a synthetic aggregate of several small same-minute prints."""
    bundled_count: int = 1

    @classmethod
    def from_print(cls, tp: TradePrint) -> "NormalizedTrade":
        return cls(
            underlying=tp.underlying,
            right=tp.right,
            strike=tp.strike,
            expiry=tp.expiry,
            size=tp.size,
            premium_per_contract=tp.premium_per_contract,
            total_premium=tp.total_premium,
            spot_price=tp.spot_price,
            timestamp=tp.timestamp,
            trade_type=tp.trade_type,
            exchange=tp.exchange,
            bundled_count=tp.bundled_count if isinstance(tp, NormalizedTrade) else 1,
        )

    @property
    def is_bundle(self) -> bool:
        return self.bundled_count > 1


@dataclass(frozen=True)
class Quote:
    bid: Optional[float]
    ask: Optional[float]
    timestamp: Optional[datetime] = None

    @property
    def mid(self) -> Optional[float]:
        if self.bid is None or self.ask is None:
            return None
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class ClassifiedTrade:
    trade: NormalizedTrade
    fill_style: FillStyle
    quote: Optional[Quote] = None

    @property
    def direction(self) -> Direction:
        """Directional thesis implied by right × aggressor side."""
        is_call = self.trade.right is OptionRight.CALL
        if self.fill_style.is_buy:
            return Direction.BULLISH if is_call else Direction.BEARISH
        if self.fill_style.is_sell:
            return Direction.BEARISH if is_call else Direction.BULLISH
        return Direction.NEUTRAL

    def to_dict(self, today: Optional[date] = None) -> dict:
        t = self.trade
        today = today or date.today()
        return {
            "underlying_ticker": t.underlying,
            "type": t.right.value,
            "strike": t.strike,
            "expiry": t.expiry.isoformat(),
            "trade_size": t.size,
            "premium_per_contract": round(t.premium_per_contract, 4),
            "total_premium": round(t.total_premium, 2),
            "spot_price": t.spot_price,
            "trade_timestamp": t.timestamp.isoformat(),
            "trade_type": t.trade_type,
            "exchange_name": t.exchange,
            "bundled_count": t.bundled_count,
            "option_symbol": t.option_symbol,
            "days_to_expiry": t.days_to_expiry(today),
            "moneyness": t.moneyness.value,
            "fill_style": self.fill_style.value,
            "direction": self.direction.value,
        }
