"""
Positioning Grader
==================
Scores how convincing a trade's directional thesis looks given what the
market has done since the print.

Score Factors
─────────────
1. Expiration      0–25   shorter-dated = more conviction
2. Contract P&L    0–25   position under water from the trader's entry
                          scores higher (cheaper to add, thesis still held)
3. Combo           0/10   an offsetting leg corroborates the view
4. Price action    0–25   underlying stayed inside its 1σ daily range
5. Stock reaction  0–15   1h / 3h checkpoints; a reversal against the
                          trade scores best, continuation worst

Missing data
────────────
* no option mark            → partial grade (expiration only), ``degraded``
* no underlying price / σ   → ``InsufficientData`` (never a zero score)

Market state is snapshotted once per call so all five factors see the
same prices.
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Union
import math

from optionsflow.combo import has_combo_match
from optionsflow.market_state import MarketSnapshot, MarketStateStore
from optionsflow.models import ClassifiedTrade, Direction

TRADING_HOURS_PER_DAY = 6.5
REACTION_THRESHOLD_PCT = 1.0
CHECKPOINT_HOURS = (1.0, 3.0)


# ── Letter grades / display tiers ───────────────────────────

_LETTER_THRESHOLDS = (
    (85, "A+"),
    (80, "A"),
    (75, "A-"),
    (70, "B+"),
    (65, "B"),
    (60, "B-"),
    (55, "C+"),
    (50, "C"),
    (48, "C-"),
    (43, "D+"),
    (38, "D"),
    (33, "D-"),
)

LETTER_ORDER = [letter for _, letter in _LETTER_THRESHOLDS] + ["F"]

# presentation hints only
_TIERS = (
    (85, "strongest", "#00ff00"),
    (70, "strong", "#84cc16"),
    (50, "moderate", "#fbbf24"),
    (33, "weak", "#3b82f6"),
)
_WEAKEST = ("weakest", "#ff0000")


def letter_grade(score: float) -> str:
    for threshold, letter in _LETTER_THRESHOLDS:
        if score >= threshold:
            return letter
    return "F"


def grade_tier(score: float) -> tuple[str, str]:
    """(tier name, display colour) for a score."""
    for threshold, name, color in _TIERS:
        if score >= threshold:
            return name, color
    return _WEAKEST


# ── Sub-scores ──────────────────────────────────────────────

def expiration_score(days_to_expiry: int) -> int:
    if days_to_expiry <= 7:
        return 25
    if days_to_expiry <= 14:
        return 20
    if days_to_expiry <= 21:
        return 15
    if days_to_expiry <= 28:
        return 10
    if days_to_expiry <= 42:
        return 5
    return 0


def contract_pnl_score(entry_price: float, current_price: float) -> int:
    pct = round((current_price - entry_price) / entry_price * 100, 6)
    if pct <= -40:
        return 25
    if pct <= -20:
        return 20
    if -10 <= pct <= 10:
        return 15
    if pct >= 20:
        return 5
    return 10


def price_action_score(move_pct: float, stddev_pct: float, trading_days: int) -> int:
    if abs(move_pct) > stddev_pct:
        return 0
    if trading_days >= 3:
        return 25
    if trading_days >= 2:
        return 20
    if trading_days >= 1:
        return 15
    return 10


def _checkpoint_points(direction: Direction, move_pct: float) -> float:
    against = (direction is Direction.BULLISH and move_pct <= -REACTION_THRESHOLD_PCT) or (
        direction is Direction.BEARISH and move_pct >= REACTION_THRESHOLD_PCT
    )
    if against:
        return 7.5
    if abs(move_pct) < REACTION_THRESHOLD_PCT:
        return 5.0
    with_trade = (direction is Direction.BULLISH and move_pct >= REACTION_THRESHOLD_PCT) or (
        direction is Direction.BEARISH and move_pct <= -REACTION_THRESHOLD_PCT
    )
    return 2.5 if with_trade else 0.0


def stock_reaction_score(direction: Direction, move_pct: float, hours_elapsed: float) -> float:
    points = 0.0
    for checkpoint in CHECKPOINT_HOURS:
        if hours_elapsed >= checkpoint:
            points += _checkpoint_points(direction, move_pct)
    return points


# ── Results ─────────────────────────────────────────────────

@dataclass
class ScoreBreakdown:
    expiration: float = 0
    contract_pnl: float = 0
    combo: float = 0
    price_action: float = 0
    stock_reaction: float = 0

    @property
    def total(self) -> float:
        return (
            self.expiration
            + self.contract_pnl
            + self.combo
            + self.price_action
            + self.stock_reaction
        )


@dataclass
class PositioningGrade:
    score: float
    grade: str
    tier: str
    color: str
    scores: ScoreBreakdown
    degraded: bool = False   # option mark missing → only expiration scored

    @property
    def breakdown(self) -> str:
        s = self.scores
        return (
            f"Score: {self.score:g}/100\n"
            f"Expiration: {s.expiration:g}/25\n"
            f"Contract P&L: {s.contract_pnl:g}/25\n"
            f"Combo Trade: {s.combo:g}/10\n"
            f"Price Action: {s.price_action:g}/25\n"
            f"Stock Reaction: {s.stock_reaction:g}/15"
        )

    def to_dict(self) -> dict:
        return {
            "status": "partial" if self.degraded else "graded",
            "score": self.score,
            "grade": self.grade,
            "tier": self.tier,
            "color": self.color,
            "scores": asdict(self.scores),
            "breakdown": self.breakdown,
        }


@dataclass
class InsufficientData:
    """Grade can't be computed yet – show as pending, never as a low score."""
    missing: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return "missing " + ", ".join(self.missing)

    def to_dict(self) -> dict:
        return {"status": "pending", "missing": list(self.missing)}


GradeResult = Union[PositioningGrade, InsufficientData]


def _make_grade(scores: ScoreBreakdown, degraded: bool = False) -> PositioningGrade:
    total = scores.total
    tier, color = grade_tier(total)
    return PositioningGrade(
        score=total,
        grade=letter_grade(total),
        tier=tier,
        color=color,
        scores=scores,
        degraded=degraded,
    )


# ── Engine ──────────────────────────────────────────────────

class PositioningGrader:
    def __init__(self, store: MarketStateStore):
        self._store = store

    def grade(
        self,
        trade: ClassifiedTrade,
        working_set: Iterable[ClassifiedTrade],
        now: Optional[datetime] = None,
        snapshot: Optional[MarketSnapshot] = None,
    ) -> GradeResult:
        snap = snapshot if snapshot is not None else self._store.snapshot()
        now = now or datetime.now(timezone.utc)
        t = trade.trade
        scores = ScoreBreakdown()

        # 1. Expiration – an expired contract carries no conviction
        today = now.date()
        if t.expiry >= today:
            scores.expiration = expiration_score(t.days_to_expiry(today))

        # 2. Contract P&L
        mark = snap.option_mark(t.option_symbol)
        if not mark.has_value or t.premium_per_contract <= 0:
            return _make_grade(scores, degraded=True)
        scores.contract_pnl = contract_pnl_score(t.premium_per_contract, mark.value)

        # 3. Combo
        if has_combo_match(trade, working_set):
            scores.combo = 10

        # 4. Price action
        price = snap.price(t.underlying)
        stddev = snap.volatility_of(t.underlying)
        missing = []
        if not price.has_value:
            missing.append("underlying price")
        if not stddev.has_value:
            missing.append("historical volatility")
        if t.spot_price <= 0:
            missing.append("entry spot price")
        if missing:
            return InsufficientData(missing=missing)

        hours_elapsed = max(0.0, (now - t.timestamp).total_seconds() / 3600)
        trading_days = math.floor(hours_elapsed / TRADING_HOURS_PER_DAY)
        move_pct = round((price.value - t.spot_price) / t.spot_price * 100, 6)
        scores.price_action = price_action_score(move_pct, stddev.value, trading_days)

        # 5. Stock reaction
        scores.stock_reaction = stock_reaction_score(trade.direction, move_pct, hours_elapsed)

        return _make_grade(scores)
