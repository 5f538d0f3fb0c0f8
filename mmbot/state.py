"""
Persisted bot state: tiers, pullback thresholds, market overrides, shapes.

The engine works on immutable snapshots; BotState is the single writer
that turns operator edits into new snapshots and saves them to disk.
"""
import json
import os
from typing import Dict, Iterable, List, Optional

from .adapters import ScoreSource
from .errors import InvalidInput
from .logging import JsonlLogger
from .planner import MarketOverride
from .pullback import PullbackSchedule, PullbackThreshold
from .shapes import Point, ShapeLibrary
from .tiers import (
    MarketWeight,
    TierDefinition,
    check_tiers,
    initialize_from_scores,
    market_weight_map,
    rebalance_tiers,
    set_market_weight,
    set_tier_markets,
    set_weight_lock,
)


def _tier_to_dict(t: TierDefinition) -> Dict:
    return {
        "name": t.name,
        "budget_percent": t.budget_percent,
        "markets": [
            {
                "market_id": m.market_id,
                "weight": m.weight,
                "locked": m.locked,
                "score": m.score,
                "relative_odds": m.relative_odds,
            }
            for m in t.markets
        ],
    }


def _tier_from_dict(d: Dict) -> TierDefinition:
    return TierDefinition(
        name=d["name"],
        budget_percent=float(d["budget_percent"]),
        markets=[MarketWeight(**m) for m in d.get("markets", [])],
    )


class BotState:
    """Tier, threshold and override state for one bot instance.

    Args:
        path: JSON state file; None keeps everything in memory
        shapes: Shape library providing the default curve
        logger: Optional event logger for operator edits
    """

    def __init__(self, path: Optional[str] = None, shapes: Optional[ShapeLibrary] = None,
                 logger: Optional[JsonlLogger] = None):
        self.path = path
        self.shapes = shapes or ShapeLibrary()
        self.logger = logger
        self.tiers: List[TierDefinition] = []
        self.schedule = PullbackSchedule()
        self.overrides: Dict[str, MarketOverride] = {}
        if path and os.path.exists(path):
            self._load()

    def _load(self) -> None:
        with open(self.path, "r") as fp:
            d = json.load(fp)
        self.tiers = [_tier_from_dict(t) for t in d.get("tiers", [])]
        self.schedule = PullbackSchedule.from_dicts(d.get("thresholds", []))
        self.overrides = {k: MarketOverride.from_dict(v) for k, v in d.get("overrides", {}).items()}

    def save(self) -> None:
        if not self.path:
            return
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        data = {
            "tiers": [_tier_to_dict(t) for t in self.tiers],
            "thresholds": self.schedule.to_dicts(),
            "overrides": {k: v.to_dict() for k, v in self.overrides.items()},
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w") as fp:
            json.dump(data, fp, indent=2)
        os.replace(tmp, self.path)

    def _event(self, event: str, payload: Dict) -> None:
        if self.logger is not None:
            self.logger.write(event, payload)

    # ---- snapshot accessors used by the planner ----

    def default_curve(self) -> List[Point]:
        return list(self.shapes.get_default_shape().points)

    def market_weights(self) -> Dict[str, float]:
        return market_weight_map(self.tiers)

    def thresholds(self) -> List[PullbackThreshold]:
        return list(self.schedule.thresholds)

    # ---- tiers ----

    def tier(self, name: str) -> TierDefinition:
        for t in self.tiers:
            if t.name == name:
                return t
        raise InvalidInput(f"unknown tier {name!r}")

    def _commit_tiers(self, tiers: List[TierDefinition]) -> None:
        """Check the new tier set, then make it current and save it."""
        # a single tier cannot absorb the budget remainder
        check_tiers(tiers, budgets=len(tiers) > 1)
        self.tiers = tiers
        self.save()

    def set_tier_budget(self, name: str, budget_percent: float) -> List[TierDefinition]:
        tiers = rebalance_tiers(self.tiers, name, budget_percent)
        self._commit_tiers(tiers)
        if len(self.tiers) == 1:
            self._event("tier_budget_unbalanced", {"tier": name, "budget_percent": self.tiers[0].budget_percent})
        self._event("tier_budget_set", {"tier": name, "budget_percent": self.tier(name).budget_percent})
        return self.tiers

    def set_market_weight(self, tier_name: str, market_id: str, weight: float, lock: bool = False) -> TierDefinition:
        markets = set_market_weight(self.tier(tier_name).markets, market_id, weight, lock)
        self._commit_tiers(set_tier_markets(self.tiers, tier_name, markets))
        return self.tier(tier_name)

    def set_weight_lock(self, tier_name: str, market_id: str, locked: bool) -> TierDefinition:
        markets = set_weight_lock(self.tier(tier_name).markets, market_id, locked)
        self._commit_tiers(set_tier_markets(self.tiers, tier_name, markets))
        return self.tier(tier_name)

    def initialize_from_scores(self, market_ids: Iterable[str], scores: ScoreSource) -> List[TierDefinition]:
        """Destructive reset of all tiers. The caller must have confirmed it."""
        self._commit_tiers(initialize_from_scores(market_ids, scores.get_score))
        self._event("tiers_initialized", {
            "tiers": {t.name: len(t.markets) for t in self.tiers},
        })
        return self.tiers

    # ---- pullback thresholds ----

    def add_threshold(self, exposure_percent: float, pullback_percent: float) -> PullbackSchedule:
        self.schedule = self.schedule.add(PullbackThreshold(exposure_percent, pullback_percent))
        self.save()
        return self.schedule

    def remove_threshold(self, exposure_percent: float) -> PullbackSchedule:
        self.schedule = self.schedule.remove(exposure_percent)
        self.save()
        return self.schedule

    # ---- overrides ----

    def set_override(self, market_id: str, override: Optional[MarketOverride]) -> None:
        """Set or (with None) clear a market override."""
        if override is None:
            self.overrides.pop(market_id, None)
        else:
            self.overrides[market_id] = override
        self._event("override_set", {"market_id": market_id, "override": override.to_dict() if override else None})
        self.save()
