"""
Deployment planning: turn curve, weights and pullback into concrete orders.

The planner is a pure computation over one snapshot of inputs. It performs
no I/O and keeps no state between calls, so a preview and a deploy can run
side by side as long as each receives its own snapshot.

Budget derivation, in order:

    effective_balance   = balance + existing_orders_refund
    max_budget          = min(effective_balance, max_acceptable_loss)
    displayed_liquidity = max_budget * global_multiplier
    deployable_budget   = displayed_liquidity * pullback_multiplier
    market_budget       = deployable_budget * market_weight * override_multiplier
    order_amount        = floor(market_budget * point_weight)
    order_cost          = ceil(order_amount * (100 - price) / 100)   # NO side

Auto-match detection is advisory: it reports which planned orders would
cross resting orders in the supplied book snapshot, but never changes the
plan.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .errors import InvalidInput
from .logging import DebugLogger, JsonlLogger, performance_trace
from .pullback import PullbackSchedule, PullbackThreshold, exposure_percent
from .shapes import Point, check_curve
from .tiers import WEIGHT_TOLERANCE
from .types import BalanceInputs, BotConfig, PlannerConfig, RestingOrder
from .utils import now_ms, order_cost, paid_price, require_finite, require_price

STATUS_OK = "ok"
STATUS_BOT_INACTIVE = "bot_inactive"
STATUS_NO_MARKETS_WEIGHTED = "no_markets_weighted"

OVERRIDE_KINDS = ("disable", "multiply", "replace")


@dataclass(frozen=True)
class MarketOverride:
    """Per-market operator override."""
    kind: str  # "disable" | "multiply" | "replace"
    multiplier: float = 1.0
    custom_curve: Optional[List[Point]] = None

    def __post_init__(self):
        if self.kind not in OVERRIDE_KINDS:
            raise InvalidInput(f"override kind must be one of {OVERRIDE_KINDS}, got {self.kind!r}")
        require_finite("override multiplier", self.multiplier)
        if self.kind == "replace" and not self.custom_curve:
            raise InvalidInput("replace override needs a custom curve")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "multiplier": self.multiplier,
            "custom_curve": [p.to_dict() for p in self.custom_curve] if self.custom_curve else None,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "MarketOverride":
        curve = d.get("custom_curve")
        return cls(
            kind=d["kind"],
            multiplier=d.get("multiplier", 1.0),
            custom_curve=[Point.from_dict(p) for p in curve] if curve else None,
        )


@dataclass(frozen=True)
class PlannedOrder:
    market_id: str
    side: str
    price: int
    amount: int
    cost: int

    def to_dict(self) -> Dict[str, Any]:
        return {"side": self.side, "price": self.price, "amount": self.amount, "cost": self.cost}


@dataclass
class MarketPlan:
    market_id: str
    weight: float
    budget: float
    orders: List[PlannedOrder] = field(default_factory=list)
    disabled: bool = False
    custom_curve: bool = False

    @property
    def total_amount(self) -> int:
        return sum(o.amount for o in self.orders)

    @property
    def total_cost(self) -> int:
        return sum(o.cost for o in self.orders)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "weight": self.weight,
            "budget": self.budget,
            "disabled": self.disabled,
            "custom_curve": self.custom_curve,
            "orders": [o.to_dict() for o in self.orders],
            "total_amount": self.total_amount,
            "total_cost": self.total_cost,
        }


@dataclass(frozen=True)
class RestingFill:
    """Part of one resting order consumed by a planned order."""
    side: str
    price: int
    amount: int
    order_id: Optional[str] = None


@dataclass
class OrderMatch:
    """A planned order that would cross resting liquidity."""
    order: PlannedOrder
    fills: List[RestingFill] = field(default_factory=list)

    @property
    def match_amount(self) -> int:
        return sum(f.amount for f in self.fills)

    @property
    def match_cost(self) -> int:
        return order_cost(self.order.side, self.order.price, self.match_amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_side": self.order.side,
            "order_price": self.order.price,
            "matching_orders": [
                {"side": f.side, "price": f.price, "amount": f.amount, "order_id": f.order_id}
                for f in self.fills
            ],
            "match_amount": self.match_amount,
            "match_cost": self.match_cost,
        }


@dataclass
class MarketMatches:
    market_id: str
    matches: List[OrderMatch] = field(default_factory=list)

    @property
    def total_match_amount(self) -> int:
        return sum(m.match_amount for m in self.matches)

    @property
    def total_match_cost(self) -> int:
        return sum(m.match_cost for m in self.matches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "market_id": self.market_id,
            "matches": [m.to_dict() for m in self.matches],
            "total_match_amount": self.total_match_amount,
            "total_match_cost": self.total_match_cost,
        }


@dataclass
class AutoMatchReport:
    """Point-in-time estimate of instant executions; not a guarantee."""
    markets: List[MarketMatches] = field(default_factory=list)
    snapshot_ts_ms: Optional[int] = None
    is_estimate: bool = True

    @property
    def has_auto_matches(self) -> bool:
        return bool(self.markets)

    @property
    def markets_with_matches(self) -> int:
        return len(self.markets)

    @property
    def total_match_amount(self) -> int:
        return sum(m.total_match_amount for m in self.markets)

    @property
    def total_match_cost(self) -> int:
        return sum(m.total_match_cost for m in self.markets)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_auto_matches": self.has_auto_matches,
            "markets_with_matches": self.markets_with_matches,
            "total_match_amount": self.total_match_amount,
            "total_match_cost": self.total_match_cost,
            "matches_by_market": [m.to_dict() for m in self.markets],
            "snapshot_ts_ms": self.snapshot_ts_ms,
            "is_estimate": self.is_estimate,
        }


@dataclass
class DeploymentPlan:
    """Everything a deployment would do. Computed fresh for every call."""
    status: str
    markets: List[MarketPlan] = field(default_factory=list)
    balance: int = 0
    existing_orders_refund: int = 0
    effective_balance: int = 0
    max_budget: float = 0.0
    displayed_liquidity: float = 0.0
    exposure: float = 0.0
    exposure_percent: float = 0.0
    pullback_multiplier: float = 1.0
    deployable_budget: float = 0.0
    auto_matches: AutoMatchReport = field(default_factory=AutoMatchReport)
    warnings: List[str] = field(default_factory=list)
    computed_at_ms: int = 0

    @property
    def orders(self) -> List[PlannedOrder]:
        return [o for m in self.markets for o in m.orders]

    @property
    def total_cost(self) -> int:
        return sum(o.cost for o in self.orders)

    @property
    def total_amount(self) -> int:
        return sum(o.amount for o in self.orders)

    @property
    def total_orders(self) -> int:
        return len(self.orders)

    @property
    def total_markets(self) -> int:
        return sum(1 for m in self.markets if m.orders)

    @property
    def has_sufficient_balance(self) -> bool:
        return self.total_cost <= self.effective_balance

    @property
    def shortfall(self) -> int:
        return max(0, self.total_cost - self.effective_balance)

    @property
    def is_empty(self) -> bool:
        return self.total_orders == 0

    def market(self, market_id: str) -> Optional[MarketPlan]:
        return next((m for m in self.markets if m.market_id == market_id), None)

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "effective_balance": self.effective_balance,
            "deployable_budget": self.deployable_budget,
            "pullback_multiplier": self.pullback_multiplier,
            "total_cost": self.total_cost,
            "total_orders": self.total_orders,
            "total_markets": self.total_markets,
            "has_sufficient_balance": self.has_sufficient_balance,
            "shortfall": self.shortfall,
            "auto_match_cost": self.auto_matches.total_match_cost,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.summary(),
            "balance": self.balance,
            "existing_orders_refund": self.existing_orders_refund,
            "max_budget": self.max_budget,
            "displayed_liquidity": self.displayed_liquidity,
            "exposure": self.exposure,
            "exposure_percent": self.exposure_percent,
            "total_amount": self.total_amount,
            "markets": [m.to_dict() for m in self.markets],
            "auto_matches": self.auto_matches.to_dict(),
            "warnings": list(self.warnings),
            "computed_at_ms": self.computed_at_ms,
        }


def existing_orders_refund(orders: Sequence[RestingOrder]) -> int:
    """Sats returned if the given open orders were cancelled now."""
    return sum(order_cost(o.side, o.price, o.remaining_amount) for o in orders)


def crosses(new_side: str, new_price: int, resting: RestingOrder, inclusive: bool = True) -> bool:
    """Would a new order instantly match the resting order?

    Orders on opposite sides cross when the prices each side pays sum to
    100 or more: YES@y (pays y) and NO@p (pays 100 - p) cross when y >= p.
    With inclusive=False the sum must exceed 100.
    """
    if resting.side == new_side:
        return False
    total = paid_price(new_side, new_price) + paid_price(resting.side, resting.price)
    return total >= 100 if inclusive else total > 100


class DeploymentPlanner:
    """Builds DeploymentPlans for one bot instance.

    The planner holds only its configuration and logger; every input that
    can change between cycles is passed to ``compute``.
    """

    def __init__(self, cfg: Optional[PlannerConfig] = None, logger: Optional[JsonlLogger] = None):
        self.cfg = cfg or PlannerConfig()
        self.logger = logger
        if self.cfg.crossover_price is not None:
            require_price(self.cfg.crossover_price)

    def _log(self, level: str, event: str, payload: Dict[str, Any]) -> None:
        if self.logger is None:
            return
        if isinstance(self.logger, DebugLogger):
            getattr(self.logger, level)(event, payload)
        else:
            self.logger.write(event, payload)

    def _side_for(self, price: int) -> str:
        crossover = self.cfg.crossover_price
        if crossover is not None and price < crossover:
            return "yes"
        return "no"

    def _validate(
        self,
        config: BotConfig,
        curve: Sequence[Point],
        weights: Mapping[str, float],
        exposure: float,
        balances: BalanceInputs,
        overrides: Mapping[str, MarketOverride],
    ) -> None:
        require_finite("max_acceptable_loss", config.max_acceptable_loss)
        if config.max_acceptable_loss <= 0:
            raise InvalidInput("max_acceptable_loss must be > 0")
        require_finite("total_liquidity", config.total_liquidity)
        require_finite("global_multiplier", config.global_multiplier)
        require_finite("balance", balances.balance)
        require_finite("existing_orders_refund", balances.existing_orders_refund)
        require_finite("exposure", exposure)
        for market_id, w in weights.items():
            require_finite(f"weight[{market_id}]", w)
            if w > 1.0:
                raise InvalidInput(f"weight[{market_id}] must be <= 1, got {w}")
        weight_sum = sum(weights.values())
        if weight_sum > 1.0 + WEIGHT_TOLERANCE:
            raise InvalidInput(f"market weights sum to {weight_sum:.6f}, must be <= 1")
        check_curve(curve)
        for market_id, ov in overrides.items():
            if ov.kind == "replace":
                check_curve(ov.custom_curve)

    def _plan_market(
        self,
        market_id: str,
        weight: float,
        deployable_budget: float,
        curve: Sequence[Point],
        override: Optional[MarketOverride],
    ) -> MarketPlan:
        if override is not None and override.kind == "disable":
            return MarketPlan(market_id=market_id, weight=weight, budget=0.0, disabled=True)

        multiplier = override.multiplier if override is not None and override.kind == "multiply" else 1.0
        use_custom = override is not None and override.kind == "replace"
        points = override.custom_curve if use_custom else curve
        budget = deployable_budget * weight * multiplier

        plan = MarketPlan(market_id=market_id, weight=weight, budget=budget, custom_curve=use_custom)
        for point in sorted(points, key=lambda p: p.price):
            if point.weight <= 0:
                continue
            amount = int(math.floor(budget * point.weight))
            if amount < self.cfg.min_order_amount:
                continue
            side = self._side_for(point.price)
            plan.orders.append(PlannedOrder(
                market_id=market_id,
                side=side,
                price=point.price,
                amount=amount,
                cost=order_cost(side, point.price, amount),
            ))
        return plan

    def detect_auto_matches(
        self,
        markets: Sequence[MarketPlan],
        resting_orders: Mapping[str, Sequence[RestingOrder]],
        snapshot_ts_ms: Optional[int] = None,
    ) -> AutoMatchReport:
        """Find planned orders that would execute against resting orders.

        Resting liquidity is consumed best paid price first and carries
        across the planned orders of a market in plan order, so a resting
        order is never counted twice. The snapshot must exclude the bot's own
        orders, which are cancelled before placement.
        """
        report = AutoMatchReport(snapshot_ts_ms=snapshot_ts_ms)
        for mp in markets:
            book = list(resting_orders.get(mp.market_id, ()))
            if not book or not mp.orders:
                continue
            left = [max(0, int(o.remaining_amount)) for o in book]
            found = MarketMatches(market_id=mp.market_id)

            for order in mp.orders:
                candidates = [
                    i for i, r in enumerate(book)
                    if left[i] > 0 and crosses(order.side, order.price, r, self.cfg.crossing_inclusive)
                ]
                candidates.sort(key=lambda i: (-paid_price(book[i].side, book[i].price), i))

                order_left = order.amount
                match = OrderMatch(order=order)
                for i in candidates:
                    if order_left <= 0:
                        break
                    take = min(order_left, left[i])
                    left[i] -= take
                    order_left -= take
                    r = book[i]
                    match.fills.append(RestingFill(side=r.side, price=r.price, amount=take, order_id=r.order_id))
                if match.fills:
                    found.matches.append(match)

            if found.matches:
                report.markets.append(found)
        return report

    @performance_trace()
    def compute(
        self,
        config: BotConfig,
        curve: Sequence[Point],
        weights: Mapping[str, float],
        thresholds: Sequence[PullbackThreshold],
        exposure: float,
        balances: BalanceInputs,
        overrides: Optional[Mapping[str, MarketOverride]] = None,
        resting_orders: Optional[Mapping[str, Sequence[RestingOrder]]] = None,
        snapshot_ts_ms: Optional[int] = None,
    ) -> DeploymentPlan:
        """Compute the full deployment plan for one snapshot.

        Args:
            config: Bot settings (loss cap, multiplier, active flag)
            curve: Default shape curve
            weights: Per-market fraction of the total budget
            thresholds: Pullback schedule (empty means linear)
            exposure: Current worst-case loss in sats
            balances: Balance and refund of the bot's existing orders
            overrides: Per-market overrides
            resting_orders: Book snapshot per market for auto-match detection
            snapshot_ts_ms: When the book snapshot was taken

        Returns:
            DeploymentPlan. Inactive bots and unweighted markets give an
            empty plan with the matching status, not an error.

        Raises:
            InvalidInput: negative or non-finite inputs, malformed curves
            InvariantViolation: a curve that does not sum to 1
        """
        overrides = overrides or {}
        ts = now_ms()

        if not config.is_active:
            self._log("info", "plan_skipped", {"reason": STATUS_BOT_INACTIVE})
            return DeploymentPlan(status=STATUS_BOT_INACTIVE, computed_at_ms=ts)

        self._validate(config, curve, weights, exposure, balances, overrides)

        effective_balance = balances.balance + balances.existing_orders_refund
        base = dict(
            balance=balances.balance,
            existing_orders_refund=balances.existing_orders_refund,
            effective_balance=effective_balance,
            exposure=exposure,
            computed_at_ms=ts,
        )

        weighted = {m: w for m, w in weights.items() if w > 0}
        if not weighted:
            self._log("warning", "no_markets_weighted", {"markets": len(weights)})
            return DeploymentPlan(
                status=STATUS_NO_MARKETS_WEIGHTED,
                warnings=["no markets weighted: assign tier weights before deploying"],
                **base,
            )

        schedule = PullbackSchedule(list(thresholds))
        exp_pct = exposure_percent(exposure, config.max_acceptable_loss)
        pullback = schedule.multiplier(exposure, config.max_acceptable_loss)

        max_budget = min(effective_balance, config.max_acceptable_loss)
        displayed = max_budget * config.global_multiplier
        deployable = displayed * pullback

        markets = [
            self._plan_market(market_id, weighted[market_id], deployable, curve, overrides.get(market_id))
            for market_id in sorted(weighted)
        ]

        plan = DeploymentPlan(
            status=STATUS_OK,
            markets=markets,
            max_budget=max_budget,
            displayed_liquidity=displayed,
            exposure_percent=exp_pct,
            pullback_multiplier=pullback,
            deployable_budget=deployable,
            **base,
        )

        if resting_orders:
            plan.auto_matches = self.detect_auto_matches(markets, resting_orders, snapshot_ts_ms)

        if not plan.has_sufficient_balance:
            plan.warnings.append(
                f"insufficient balance: total cost {plan.total_cost} exceeds "
                f"effective balance {effective_balance} by {plan.shortfall} sats"
            )
        if pullback < 1.0:
            plan.warnings.append(
                f"pullback active: offering {pullback * 100:.1f}% of full liquidity "
                f"at {exp_pct:.1f}% exposure"
            )
        if not schedule.is_monotonic():
            plan.warnings.append("pullback schedule increases liquidity at higher exposure")
        if plan.auto_matches.has_auto_matches:
            plan.warnings.append(
                f"auto-match: {plan.auto_matches.total_match_cost} sats would execute instantly "
                f"in {plan.auto_matches.markets_with_matches} markets (estimate)"
            )

        for mp in markets:
            self._log("debug", "market_plan", {
                "market_id": mp.market_id,
                "weight": mp.weight,
                "budget": round(mp.budget, 3),
                "orders": len(mp.orders),
                "cost": mp.total_cost,
            })
        self._log("info", "plan_computed", plan.summary())
        return plan


def compute_deployment_plan(
    config: BotConfig,
    curve: Sequence[Point],
    weights: Mapping[str, float],
    thresholds: Sequence[PullbackThreshold],
    exposure: float,
    balances: BalanceInputs,
    overrides: Optional[Mapping[str, MarketOverride]] = None,
    resting_orders: Optional[Mapping[str, Sequence[RestingOrder]]] = None,
    planner_cfg: Optional[PlannerConfig] = None,
) -> DeploymentPlan:
    """Stateless entry point; see DeploymentPlanner.compute."""
    return DeploymentPlanner(planner_cfg).compute(
        config, curve, weights, thresholds, exposure, balances,
        overrides=overrides, resting_orders=resting_orders,
    )
