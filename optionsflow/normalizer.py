"""
Trade Normalizer
================
Turns the raw print feed into the working set:

* drops exact duplicate prints (first occurrence wins, input order kept)
* bundles small same-contract, same-minute prints into one synthetic record

Pure functions over the input collection – no I/O, no shared state.
"""
from collections import defaultdict
from typing import Iterable
import logging

from optionsflow.config import settings
from optionsflow.models import NormalizedTrade, TradePrint

logger = logging.getLogger("optionsflow.normalizer")


def parse_prints(records: Iterable[dict]) -> list[TradePrint]:
    """Parse feed records, skipping (and logging) any that are malformed."""
    prints: list[TradePrint] = []
    skipped = 0
    for raw in records:
        try:
            prints.append(TradePrint.from_dict(raw))
        except (KeyError, TypeError, ValueError) as e:
            skipped += 1
            logger.warning("Skipping malformed trade %r: %s", raw, e)
    if skipped:
        logger.info("Parsed %d prints, skipped %d malformed", len(prints), skipped)
    return prints


def dedupe(prints: Iterable[TradePrint]) -> list[TradePrint]:
    seen: set[tuple] = set()
    unique: list[TradePrint] = []
    for tp in prints:
        key = tp.identity_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(tp)
    return unique


def bundle(group: list[TradePrint]) -> NormalizedTrade:
    """Merge same-contract, same-minute prints into one aggregate record."""
    first = min(group, key=lambda tp: tp.timestamp)
    total_size = sum(tp.size for tp in group)
    total_premium = sum(tp.total_premium for tp in group)
    per_contract = total_premium / total_size if total_size else 0.0
    return NormalizedTrade(
        underlying=first.underlying,
        right=first.right,
        strike=first.strike,
        expiry=first.expiry,
        size=total_size,
        premium_per_contract=per_contract,
        total_premium=total_premium,
        spot_price=first.spot_price,
        timestamp=first.timestamp,
        trade_type=first.trade_type,
        exchange=f"AGGREGATE ({len(group)} prints)",
        bundled_count=len(group),
    )


def normalize(
    prints: Iterable[TradePrint],
    premium_threshold: float | None = None,
) -> list[NormalizedTrade]:
    """
    Deduplicate and bundle a batch of prints.

    Prints with total premium at or above ``premium_threshold`` pass through
    untouched. Smaller prints are grouped by (underlying, strike, expiry,
    right, minute); a group with more than one member becomes a single
    aggregate whose premium per contract is the size-weighted average.

    Output order follows the first appearance of each record.
    """
    threshold = settings.BUNDLE_PREMIUM_THRESHOLD if premium_threshold is None else premium_threshold
    unique = dedupe(prints)

    # slot per output record; small groups share the slot of their first member
    slots: list[TradePrint | tuple] = []
    groups: dict[tuple, list[TradePrint]] = defaultdict(list)
    for tp in unique:
        if tp.total_premium >= threshold:
            slots.append(tp)
            continue
        key = tp.bundle_key
        if key not in groups:
            slots.append(key)
        groups[key].append(tp)

    normalized: list[NormalizedTrade] = []
    for slot in slots:
        if isinstance(slot, TradePrint):
            normalized.append(NormalizedTrade.from_print(slot))
            continue
        group = groups[slot]
        if len(group) == 1:
            normalized.append(NormalizedTrade.from_print(group[0]))
        else:
            normalized.append(bundle(group))

    if len(normalized) != len(unique):
        logger.debug(
            "Normalized %d unique prints into %d records", len(unique), len(normalized)
        )
    return normalized
