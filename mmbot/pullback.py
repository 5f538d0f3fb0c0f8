"""
Risk pullback: shrink offered liquidity as exposure grows.

Exposure is the worst-case loss of everything the bot currently holds, in
sats. Expressed as a percent of max_acceptable_loss it selects a liquidity
multiplier in [0, 1] that is applied to every order before placement.

Without configured thresholds the multiplier is linear,
``max(0, 1 - exposure_percent / 100)``, so offers reach zero exactly when
exposure reaches the loss cap. With thresholds it is a step function that
holds the lowest pullback among the thresholds reached so far.
"""
import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .errors import InvalidInput
from .types import RestingOrder
from .utils import is_finite_number, order_cost, require_finite


@dataclass(frozen=True)
class PullbackThreshold:
    """At exposure_percent or more, offer pullback_percent of full liquidity."""
    exposure_percent: float
    pullback_percent: float

    def __post_init__(self):
        for name in ("exposure_percent", "pullback_percent"):
            value = getattr(self, name)
            if not is_finite_number(value) or not 0.0 <= value <= 100.0:
                raise InvalidInput(f"{name} must be in [0, 100], got {value!r}")

    def to_dict(self) -> Dict[str, float]:
        return {"exposure_percent": self.exposure_percent, "pullback_percent": self.pullback_percent}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PullbackThreshold":
        return cls(exposure_percent=d["exposure_percent"], pullback_percent=d["pullback_percent"])


def exposure_percent(exposure: float, max_acceptable_loss: float) -> float:
    """Exposure as a percent of the loss cap.

    Floored at 0. Values above 100 are kept: exposure can drift past the
    cap through fills that happened outside the engine.
    """
    require_finite("exposure", exposure)
    require_finite("max_acceptable_loss", max_acceptable_loss)
    if max_acceptable_loss <= 0:
        raise InvalidInput("max_acceptable_loss must be > 0")
    return max(0.0, 100.0 * exposure / max_acceptable_loss)


def pullback_multiplier(thresholds: Sequence[PullbackThreshold], exposure_pct: float) -> float:
    """Liquidity multiplier for the given exposure percent.

    Below every threshold the multiplier is 1.0. Otherwise it is the lowest
    pullback_percent among the thresholds already reached, which is the
    highest reached threshold's value on a non-increasing schedule. On a
    schedule that rises with exposure the multiplier never goes back up.
    At 100% exposure or more it is 0.

    Args:
        thresholds: Configured schedule (any order); empty means linear
        exposure_pct: Current exposure as percent of max loss

    Returns:
        Multiplier in [0, 1]

    Example:
        thresholds 25->75 and 50->50 at 30% exposure gives 0.75;
        at 10% it gives 1.0.
    """
    require_finite("exposure_percent", exposure_pct)
    if exposure_pct >= 100.0:
        return 0.0
    if not thresholds:
        return max(0.0, 1.0 - exposure_pct / 100.0)

    # running minimum over reached thresholds
    multiplier = 1.0
    for t in sorted(thresholds, key=lambda t: t.exposure_percent):
        if t.exposure_percent > exposure_pct:
            break
        multiplier = min(multiplier, t.pullback_percent / 100.0)
    return multiplier


@dataclass(frozen=True)
class PullbackSchedule:
    """A bot instance's threshold set, kept sorted by exposure_percent."""
    thresholds: List[PullbackThreshold] = field(default_factory=list)

    def __post_init__(self):
        ordered = sorted(self.thresholds, key=lambda t: t.exposure_percent)
        object.__setattr__(self, "thresholds", ordered)

    @classmethod
    def from_dicts(cls, rows: Iterable[Dict[str, Any]]) -> "PullbackSchedule":
        return cls([PullbackThreshold.from_dict(r) for r in rows])

    @property
    def is_linear(self) -> bool:
        return not self.thresholds

    def multiplier(self, exposure: float, max_acceptable_loss: float) -> float:
        """Recomputed on every call; never cache the result across deployments."""
        return pullback_multiplier(self.thresholds, exposure_percent(exposure, max_acceptable_loss))

    def is_monotonic(self) -> bool:
        """True if liquidity never increases as exposure rises."""
        pcts = [t.pullback_percent for t in self.thresholds]
        return all(a >= b for a, b in zip(pcts, pcts[1:]))

    def add(self, threshold: PullbackThreshold) -> "PullbackSchedule":
        """New schedule with threshold added, replacing any at the same exposure."""
        kept = [t for t in self.thresholds if t.exposure_percent != threshold.exposure_percent]
        return PullbackSchedule([*kept, threshold])

    def remove(self, exposure_pct: float) -> "PullbackSchedule":
        return PullbackSchedule([t for t in self.thresholds if t.exposure_percent != exposure_pct])

    def to_dicts(self) -> List[Dict[str, float]]:
        return [t.to_dict() for t in self.thresholds]


# ==================== EXPOSURE TRACKING ====================

@dataclass(frozen=True)
class ExposureUpdate:
    old_exposure: float
    new_exposure: float
    old_percent: int
    new_percent: int
    band_changed: bool


def exposure_band(pct: float, band: int = 10) -> int:
    return int(math.floor(pct / band))


def exposure_update(old_exposure: float, new_exposure: float, max_acceptable_loss: float, band: int = 10) -> ExposureUpdate:
    """Compare two exposure readings; band_changed marks a pullback trigger."""
    old_pct = int(math.floor(exposure_percent(old_exposure, max_acceptable_loss)))
    new_pct = int(math.floor(exposure_percent(new_exposure, max_acceptable_loss)))
    return ExposureUpdate(
        old_exposure=old_exposure,
        new_exposure=new_exposure,
        old_percent=old_pct,
        new_percent=new_pct,
        band_changed=exposure_band(old_pct, band) != exposure_band(new_pct, band),
    )


@dataclass
class PullbackAdjustment:
    """Result of shrinking the bot's resting orders after a band change."""
    multiplier: float
    orders_modified: int = 0
    total_reduction: int = 0
    total_refund: int = 0
    resized: List[RestingOrder] = field(default_factory=list)
    cancelled: List[RestingOrder] = field(default_factory=list)
    unchanged: List[RestingOrder] = field(default_factory=list)


def scale_resting_orders(
    orders: Sequence[RestingOrder],
    multiplier: float,
    min_amount: int = 100,
) -> PullbackAdjustment:
    """Shrink each resting order to floor(remaining * multiplier).

    Orders left below min_amount are cancelled outright. The refund for the
    removed part uses the same cost formula as placement.
    """
    require_finite("multiplier", multiplier)
    if multiplier > 1.0:
        raise InvalidInput(f"pullback multiplier must be <= 1, got {multiplier}")

    adj = PullbackAdjustment(multiplier=multiplier)
    for o in orders:
        new_remaining = int(math.floor(o.remaining_amount * multiplier))
        reduction = o.remaining_amount - new_remaining
        if reduction <= 0:
            adj.unchanged.append(o)
            continue
        if new_remaining < min_amount:
            # whole remainder comes back
            reduction = o.remaining_amount
            adj.cancelled.append(o)
        else:
            adj.resized.append(replace(o, remaining_amount=new_remaining))
        adj.total_reduction += reduction
        adj.total_refund += order_cost(o.side, o.price, reduction)
        adj.orders_modified += 1
    return adj


def worst_case(exposure: float, max_acceptable_loss: float) -> Dict[str, Optional[float]]:
    """Current exposure against the guaranteed worst case.

    With pullback applied before every deployment the worst case is the loss
    cap itself.
    """
    pct = exposure_percent(exposure, max_acceptable_loss)
    return {
        "current_exposure": exposure,
        "max_loss": max_acceptable_loss,
        "worst_case": max_acceptable_loss,
        "exposure_percent": round(pct, 1),
        "remaining": max_acceptable_loss - exposure,
    }
