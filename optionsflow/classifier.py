"""
Execution Classifier
====================
Labels where a print filled relative to the quote prevailing just before it.

Decision tree (first match wins), mid = (bid + ask) / 2:

    fill >= ask + 0.01   → AA  (above ask)
    fill <= bid - 0.01   → BB  (below bid)
    fill == ask          → A
    fill == bid          → B
    fill >= mid          → A   (buy-side pressure)
    otherwise            → B   (sell-side pressure)

Missing or non-positive bid / ask / fill → "?" (unknown).
Exact quote equality is checked before the midpoint so prints on the
quote are never miscategorised by float rounding.
"""
from typing import Iterable, Mapping, Optional

from optionsflow.models import ClassifiedTrade, FillStyle, NormalizedTrade, Quote

TICK = 0.01
_EPS = 1e-9  # float slack so decimal prices compare exactly


def _positive(value: Optional[float]) -> bool:
    return value is not None and value > 0


def classify_fill(
    fill: Optional[float], bid: Optional[float], ask: Optional[float]
) -> FillStyle:
    if not (_positive(fill) and _positive(bid) and _positive(ask)):
        return FillStyle.UNKNOWN

    mid = (bid + ask) / 2

    if fill >= ask + TICK - _EPS:
        return FillStyle.ABOVE_ASK
    if fill <= bid - TICK + _EPS:
        return FillStyle.BELOW_BID
    if abs(fill - ask) <= _EPS:
        return FillStyle.AT_ASK
    if abs(fill - bid) <= _EPS:
        return FillStyle.AT_BID
    if fill >= mid - _EPS:
        return FillStyle.AT_ASK
    return FillStyle.AT_BID


def classify(trade: NormalizedTrade, quote: Optional[Quote]) -> ClassifiedTrade:
    """Classify one trade; a missing quote leaves it unclassified."""
    if quote is None:
        return ClassifiedTrade(trade=trade, fill_style=FillStyle.UNKNOWN)
    style = classify_fill(trade.premium_per_contract, quote.bid, quote.ask)
    return ClassifiedTrade(trade=trade, fill_style=style, quote=quote)


def classify_all(
    trades: Iterable[NormalizedTrade],
    quotes: Mapping[tuple, Optional[Quote]],
) -> list[ClassifiedTrade]:
    """Classify a batch; ``quotes`` is keyed by each trade's identity key."""
    return [classify(t, quotes.get(t.identity_key)) for t in trades]
