"""
Combo Matcher
=============
Looks for an offsetting leg that corroborates a trade's directional view:
same underlying and expiry, strike within 5 %, opposite right, and an
aggressor pairing that expresses one bet.

    bullish:  calls bought (A/AA)  +  puts sold (B/BB)
    bearish:  calls sold   (B/BB)  +  puts bought (A/AA)

Recomputed against whatever set is visible at call time.
"""
from typing import Iterable

from optionsflow.models import ClassifiedTrade

STRIKE_TOLERANCE = 0.05


def is_combo_pair(a: ClassifiedTrade, b: ClassifiedTrade) -> bool:
    ta, tb = a.trade, b.trade
    if ta.underlying != tb.underlying or ta.expiry != tb.expiry:
        return False
    if tb.right is not ta.right.opposite:
        return False
    # tolerance taken from the larger strike so the relation stays symmetric
    if abs(ta.strike - tb.strike) > STRIKE_TOLERANCE * max(ta.strike, tb.strike):
        return False
    return (a.fill_style.is_buy and b.fill_style.is_sell) or (
        a.fill_style.is_sell and b.fill_style.is_buy
    )


def has_combo_match(trade: ClassifiedTrade, working_set: Iterable[ClassifiedTrade]) -> bool:
    return any(
        other is not trade and is_combo_pair(trade, other) for other in working_set
    )
