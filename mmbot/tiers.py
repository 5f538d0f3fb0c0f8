"""
Tier budget allocation.

Markets are grouped into ranked tiers (S, A+, A, B+, B, C, D). The
deployable budget is split across tiers by budget_percent (summing to 100)
and, within a tier, across member markets by weight (summing to 1).

All functions here are pure: they take lists of dataclasses and return new
lists. Storage is the caller's concern.
"""
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .errors import InvalidInput, InvariantViolation
from .utils import clip, is_finite_number

TIER_ORDER = ("S", "A+", "A", "B+", "B", "C", "D")

TIER_TOLERANCE = 0.1
WEIGHT_TOLERANCE = 1e-3

# Budget split applied by initialize_from_scores before rescaling to the
# tiers that actually have members.
BASELINE_TIER_BUDGETS = {
    "S": 30.0,
    "A+": 22.0,
    "A": 18.0,
    "B+": 12.0,
    "B": 10.0,
    "C": 6.0,
    "D": 2.0,
}


@dataclass(frozen=True)
class MarketWeight:
    """A market's share of its tier's budget."""
    market_id: str
    weight: float
    locked: bool = False
    score: Optional[float] = None
    relative_odds: float = 1.0


@dataclass(frozen=True)
class TierDefinition:
    """A named bucket of markets with its share of the total budget."""
    name: str
    budget_percent: float
    markets: List[MarketWeight] = field(default_factory=list)


def score_to_tier(score: float) -> str:
    """Map a likelihood score to its tier.

    >=70 S, 60-69 A+, 50-59 A, 40-49 B+, 25-39 B, 0-24 C, <0 D
    """
    if not is_finite_number(score):
        raise InvalidInput(f"score must be a finite number, got {score!r}")
    if score >= 70:
        return "S"
    if score >= 60:
        return "A+"
    if score >= 50:
        return "A"
    if score >= 40:
        return "B+"
    if score >= 25:
        return "B"
    if score >= 0:
        return "C"
    return "D"


def tier_sort_key(name: str) -> int:
    return TIER_ORDER.index(name) if name in TIER_ORDER else len(TIER_ORDER)


# ==================== TIER BUDGETS ====================

def rebalance_tiers(tiers: Sequence[TierDefinition], edited_tier: str, new_value: float) -> List[TierDefinition]:
    """Set one tier's budget and rescale the others to keep the total at 100.

    The edited tier is pinned to exactly the clamped requested value; the
    remaining 100 - v is shared by the other tiers in proportion to their
    current budgets, or evenly when they are all zero.

    Args:
        tiers: Current tiers (not mutated)
        edited_tier: Name of the tier the operator changed
        new_value: Requested budget percent, clamped to [0, 100]

    Returns:
        New tier list in the input order

    Raises:
        InvalidInput: unknown tier or non-finite value
    """
    if not is_finite_number(new_value):
        raise InvalidInput(f"budget percent must be a finite number, got {new_value!r}")
    if not any(t.name == edited_tier for t in tiers):
        raise InvalidInput(f"unknown tier {edited_tier!r}")

    v = clip(float(new_value), 0.0, 100.0)
    others = [t for t in tiers if t.name != edited_tier]
    other_total = sum(t.budget_percent for t in others)
    remaining = 100.0 - v

    result = []
    for t in tiers:
        if t.name == edited_tier:
            result.append(replace(t, budget_percent=v))
        elif other_total > 0:
            result.append(replace(t, budget_percent=t.budget_percent * remaining / other_total))
        else:
            result.append(replace(t, budget_percent=remaining / len(others)))
    return result


# ==================== MARKET WEIGHTS WITHIN A TIER ====================

def normalize_weights(markets: Sequence[MarketWeight], extra_locked: Iterable[str] = ()) -> List[MarketWeight]:
    """Rescale unlocked weights so the tier sums to 1.

    Locked markets (and any ids in extra_locked) keep their weight. Unlocked
    markets share what is left, proportionally, or evenly if they are all
    zero.
    """
    held = set(extra_locked)
    is_fixed = [m.locked or m.market_id in held for m in markets]
    locked_sum = sum(m.weight for m, fixed in zip(markets, is_fixed) if fixed)
    unlocked = [m for m, fixed in zip(markets, is_fixed) if not fixed]
    if not unlocked:
        return list(markets)

    remaining = max(0.0, 1.0 - locked_sum)
    unlocked_sum = sum(m.weight for m in unlocked)

    result = []
    for m, fixed in zip(markets, is_fixed):
        if fixed:
            result.append(m)
        elif unlocked_sum > 0:
            result.append(replace(m, weight=m.weight * remaining / unlocked_sum))
        else:
            result.append(replace(m, weight=remaining / len(unlocked)))
    return result


def set_market_weight(
    markets: Sequence[MarketWeight],
    market_id: str,
    new_weight: float,
    lock: bool = False,
) -> List[MarketWeight]:
    """Change one market's weight and let the unlocked others absorb the difference.

    Locked markets never move. With lock=True the edited market is locked
    and the others are renormalized around it. The edited weight is capped
    at what the other locked markets leave, and takes exactly that when no
    unlocked market is left to absorb the difference.
    """
    if not is_finite_number(new_weight):
        raise InvalidInput(f"weight must be a finite number, got {new_weight!r}")
    w = clip(float(new_weight), 0.0, 1.0)
    others = [m for m in markets if m.market_id != market_id]
    free = max(0.0, 1.0 - sum(m.weight for m in others if m.locked))
    w = free if all(m.locked for m in others) else min(w, free)

    current = next((m for m in markets if m.market_id == market_id), None)
    if current is None:
        added = [*markets, MarketWeight(market_id=market_id, weight=w, locked=lock)]
        return normalize_weights(added, extra_locked=[market_id])

    diff = w - current.weight
    updated = [replace(m, weight=w, locked=lock) if m.market_id == market_id else m for m in markets]
    if lock:
        return normalize_weights(updated, extra_locked=[market_id])

    unlocked_others = [m for m in updated if m.market_id != market_id and not m.locked]
    if unlocked_others and diff != 0:
        total_unlocked = sum(m.weight for m in unlocked_others)
        adjusted = []
        for m in updated:
            if m.market_id == market_id or m.locked:
                adjusted.append(m)
                continue
            share = m.weight / total_unlocked if total_unlocked > 0 else 1.0 / len(unlocked_others)
            adjusted.append(replace(m, weight=max(0.0, m.weight - diff * share)))
        updated = adjusted

    # The edited market keeps its value; the rest absorb any residual
    return normalize_weights(updated, extra_locked=[market_id])


def set_weight_lock(markets: Sequence[MarketWeight], market_id: str, locked: bool) -> List[MarketWeight]:
    if not any(m.market_id == market_id for m in markets):
        raise InvalidInput(f"unknown market {market_id!r}")
    updated = [replace(m, locked=locked) if m.market_id == market_id else m for m in markets]
    return updated if locked else normalize_weights(updated)


def apply_relative_odds(markets: Sequence[MarketWeight]) -> List[MarketWeight]:
    """Reset unlocked weights in proportion to each market's relative_odds."""
    unlocked = [m for m in markets if not m.locked]
    total_odds = sum(m.relative_odds or 1.0 for m in unlocked)
    if total_odds <= 0:
        return normalize_weights(markets)
    updated = [
        m if m.locked else replace(m, weight=(m.relative_odds or 1.0) / total_odds)
        for m in markets
    ]
    return normalize_weights(updated)


# ==================== BULK INITIALIZATION ====================

def initialize_from_scores(
    market_ids: Iterable[str],
    get_score: Callable[[str], float],
) -> List[TierDefinition]:
    """Rebuild every tier from likelihood scores.

    Destructive: existing budgets, weights and locks are discarded. Callers
    must confirm with the operator before invoking it.

    Each market goes to score_to_tier(score). Tiers with members get the
    baseline budgets rescaled to 100; within a tier, weights are
    proportional to max(score, 0) + 1.

    Args:
        market_ids: Markets to assign
        get_score: Likelihood score source (collaborator)

    Returns:
        Tiers in canonical order, only those with members
    """
    buckets: Dict[str, List[MarketWeight]] = {}
    for market_id in market_ids:
        score = get_score(market_id)
        tier = score_to_tier(score)
        buckets.setdefault(tier, []).append(
            MarketWeight(market_id=market_id, weight=max(float(score), 0.0) + 1.0, score=float(score))
        )
    if not buckets:
        return []

    baseline_total = sum(BASELINE_TIER_BUDGETS[name] for name in buckets)
    tiers = []
    for name in sorted(buckets, key=tier_sort_key):
        members = buckets[name]
        raw_total = sum(m.weight for m in members)
        members = [replace(m, weight=m.weight / raw_total) for m in members]
        tiers.append(TierDefinition(
            name=name,
            budget_percent=100.0 * BASELINE_TIER_BUDGETS[name] / baseline_total,
            markets=members,
        ))
    return tiers


# ==================== QUERIES ====================

def market_weight_map(tiers: Sequence[TierDefinition]) -> Dict[str, float]:
    """Flatten tiers into each market's fraction of the total budget."""
    weights: Dict[str, float] = {}
    for t in tiers:
        for m in t.markets:
            weights[m.market_id] = weights.get(m.market_id, 0.0) + (t.budget_percent / 100.0) * m.weight
    return weights


def check_tiers(tiers: Sequence[TierDefinition], budgets: bool = True) -> None:
    """Raise InvariantViolation if budgets or in-tier weights are off target.

    With budgets=False only the in-tier weights are checked.
    """
    if not tiers:
        return
    total = sum(t.budget_percent for t in tiers)
    if budgets and abs(total - 100.0) > TIER_TOLERANCE:
        raise InvariantViolation(f"tier budgets sum to {total:.3f}%, expected 100%")
    for t in tiers:
        if not t.markets:
            continue
        wsum = sum(m.weight for m in t.markets)
        if abs(wsum - 1.0) > WEIGHT_TOLERANCE:
            raise InvariantViolation(f"tier {t.name} weights sum to {wsum:.6f}, expected 1")


def set_tier_markets(tiers: Sequence[TierDefinition], tier_name: str, markets: Sequence[MarketWeight]) -> List[TierDefinition]:
    """Replace one tier's market list."""
    if not any(t.name == tier_name for t in tiers):
        raise InvalidInput(f"unknown tier {tier_name!r}")
    return [replace(t, markets=list(markets)) if t.name == tier_name else t for t in tiers]


def tier_summary(tiers: Sequence[TierDefinition]) -> List[Dict[str, object]]:
    """Rows for display: tier, budget, market count, first few markets."""
    return [
        {
            "tier": t.name,
            "budget_percent": round(t.budget_percent, 3),
            "market_count": len(t.markets),
            "markets": [m.market_id for m in sorted(t.markets, key=lambda m: -m.weight)[:3]],
        }
        for t in sorted(tiers, key=lambda t: tier_sort_key(t.name))
    ]
