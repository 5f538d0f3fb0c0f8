"""
Deployment orchestration: snapshot the venue, plan, and place.

BotDeployer is the only component that talks to the venue on the bot's
behalf. It gathers one snapshot (balance, exposure, book), hands it to the
planner and then, market by market, cancels the bot's existing orders and
places the new ones. Every deploy computes a fresh plan right before
placement so the pullback multiplier reflects current exposure.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .adapters import CancelResult, PlaceResult, VenueAdapter
from .config import update_bot_config
from .logging import ActivityLog, DebugLogger, ErrorContext, JsonlLogger, performance_trace
from .planner import STATUS_OK, DeploymentPlan, DeploymentPlanner
from .pullback import PullbackAdjustment, exposure_update, scale_resting_orders
from .state import BotState
from .types import AppConfig, BalanceInputs
from .utils import now_ms


@dataclass
class DeployResult:
    """What a deploy or withdraw actually did on the venue."""
    plan: Optional[DeploymentPlan] = None
    refused: Optional[str] = None
    placed: List[PlaceResult] = field(default_factory=list)
    cancelled: List[CancelResult] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.refused is None and not self.errors and all(p.ok for p in self.placed)

    @property
    def total_placed_cost(self) -> int:
        return sum(p.total_cost for p in self.placed)

    @property
    def total_refund(self) -> int:
        return sum(c.refund for c in self.cancelled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "refused": self.refused,
            "markets_placed": len(self.placed),
            "orders_placed": sum(len(p.order_ids) for p in self.placed),
            "total_placed_cost": self.total_placed_cost,
            "orders_cancelled": sum(c.cancelled_count for c in self.cancelled),
            "total_refund": self.total_refund,
            "errors": dict(self.errors),
        }


class BotDeployer:
    """Runs preview, deploy, withdraw and pullback for one bot instance.

    Args:
        cfg: Application configuration (bot settings are replaced on update)
        venue: Venue adapter for balances, books and orders
        state: Tiers, thresholds, overrides and shapes
        logger: Event logger
        activity: Optional operator activity log
    """

    def __init__(
        self,
        cfg: AppConfig,
        venue: VenueAdapter,
        state: BotState,
        logger: JsonlLogger,
        activity: Optional[ActivityLog] = None,
    ):
        self.cfg = cfg
        self.venue = venue
        self.state = state
        self.logger = logger
        self.activity = activity
        self.planner = DeploymentPlanner(cfg.planner, logger)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._last_exposure: Optional[int] = None

    def _lock(self, market_id: str) -> asyncio.Lock:
        if market_id not in self._locks:
            self._locks[market_id] = asyncio.Lock()
        return self._locks[market_id]

    def _known_markets(self) -> List[str]:
        return sorted(set(self.cfg.markets) | set(self.state.market_weights()))

    def _record(self, action: str, details: Dict[str, Any], before=None, after=None) -> None:
        if self.activity is not None:
            self.activity.record(action, details, exposure_before=before, exposure_after=after)

    def _error(self, operation: str, e: Exception, context: Dict[str, Any]) -> None:
        if isinstance(self.logger, DebugLogger):
            ErrorContext.log_operation_error(self.logger, operation, e, context)
        else:
            self.logger.write(f"{operation}_error", {"err": str(e), **context})

    @performance_trace()
    async def preview(self) -> DeploymentPlan:
        """Plan against a fresh venue snapshot without touching any order."""
        weights = self.state.market_weights()
        if not self.cfg.bot.is_active:
            # Nothing to fetch; the planner reports the inactive state
            return self.planner.compute(
                self.cfg.bot, self.state.default_curve(), weights,
                self.state.thresholds(), 0, BalanceInputs(balance=0),
            )

        balances, exposure = await asyncio.gather(
            self.venue.get_effective_balance(),
            self.venue.get_exposure(),
        )
        self._last_exposure = exposure

        markets = sorted(m for m, w in weights.items() if w > 0)
        books = await asyncio.gather(*(self.venue.get_resting_orders(m) for m in markets))
        snapshot_ts = now_ms()

        return self.planner.compute(
            self.cfg.bot,
            self.state.default_curve(),
            weights,
            self.state.thresholds(),
            exposure,
            balances,
            overrides=self.state.overrides,
            resting_orders=dict(zip(markets, books)),
            snapshot_ts_ms=snapshot_ts,
        )

    async def _stale_markets(self, plan: DeploymentPlan) -> List[str]:
        """Markets holding bot orders (or configured) that the plan leaves out."""
        open_markets = {o.market_id for o in await self.venue.list_open_orders() if o.market_id}
        planned = {mp.market_id for mp in plan.markets}
        return sorted((set(self._known_markets()) | open_markets) - planned)

    async def deploy(self) -> DeployResult:
        """Replace the bot's orders in every planned market.

        Refuses (places nothing) when the bot is inactive, no market is
        weighted or the effective balance does not cover the plan. The
        effective balance counts the refund of every open bot order, so bot
        orders in markets the plan leaves out are cancelled first. A failure
        in one market is logged and reported; the other markets still deploy.
        """
        plan = await self.preview()
        result = DeployResult(plan=plan)

        if plan.status != STATUS_OK:
            result.refused = plan.status
        elif not plan.has_sufficient_balance:
            result.refused = f"insufficient_balance: short {plan.shortfall} sats"
        if result.refused is not None:
            self.logger.write("deploy_refused", {"reason": result.refused, **plan.summary()})
            return result

        for market_id in await self._stale_markets(plan):
            async with self._lock(market_id):
                try:
                    cancelled = await self.venue.cancel_all_orders(market_id)
                except Exception as e:
                    self._error("deploy_market", e, {"market_id": market_id, "orders": 0})
                    result.errors[market_id] = str(e)
                    continue
            result.cancelled.append(cancelled)
            if cancelled.cancelled_count:
                self.logger.write("order_cancel", {"market_id": market_id, "orders": cancelled.cancelled_count,
                                                   "refund": cancelled.refund, "reason": "not_in_plan"})

        for mp in plan.markets:
            async with self._lock(mp.market_id):
                try:
                    cancelled = await self.venue.cancel_all_orders(mp.market_id)
                    result.cancelled.append(cancelled)
                    if not mp.orders:
                        continue
                    placed = await self.venue.place_orders(mp.market_id, mp.orders)
                except Exception as e:
                    self._error("deploy_market", e, {"market_id": mp.market_id, "orders": len(mp.orders)})
                    result.errors[mp.market_id] = str(e)
                    continue

            result.placed.append(placed)
            if not placed.ok:
                result.errors[mp.market_id] = "; ".join(placed.errors)
                self.logger.write("order_error", {"market_id": mp.market_id, "errors": placed.errors})
            self.logger.write("order_place", {
                "market_id": mp.market_id,
                "orders": len(placed.order_ids),
                "cost": placed.total_cost,
                "refund": cancelled.refund,
            })
            self._record("deploy_market", {
                "market_id": mp.market_id,
                "orders": [o.to_dict() for o in mp.orders],
                "total_cost": placed.total_cost,
                "refund": cancelled.refund,
            }, plan.exposure, plan.exposure)

        summary = {**plan.summary(), **result.to_dict()}
        self.logger.write("deploy_done", summary)
        self._record("deploy_all", summary, plan.exposure, plan.exposure)
        return result

    async def withdraw_all(self) -> DeployResult:
        """Cancel the bot's orders in every configured or weighted market."""
        result = DeployResult()
        for market_id in self._known_markets():
            async with self._lock(market_id):
                try:
                    result.cancelled.append(await self.venue.cancel_all_orders(market_id))
                except Exception as e:
                    self._error("withdraw_market", e, {"market_id": market_id})
                    result.errors[market_id] = str(e)

        details = result.to_dict()
        self.logger.write("withdraw_done", details)
        self._record("withdraw_all", details)
        return result

    async def apply_pullback(self, new_exposure: int) -> Optional[PullbackAdjustment]:
        """Shrink resting orders after a fill moved exposure into a new band.

        Each order keeps floor(remaining * multiplier); orders left under the
        venue minimum are cancelled. Returns None when no band was crossed or
        the bot is inactive.
        """
        if not self.cfg.bot.is_active:
            return None
        bot = self.cfg.bot
        old = self._last_exposure if self._last_exposure is not None else await self.venue.get_exposure()
        update = exposure_update(old, new_exposure, bot.max_acceptable_loss, self.cfg.planner.pullback_band_percent)
        self._last_exposure = new_exposure
        if not update.band_changed:
            return None

        multiplier = self.state.schedule.multiplier(new_exposure, bot.max_acceptable_loss)
        by_market: Dict[str, List] = {}
        for market_id in self._known_markets():
            by_market[market_id] = await self.venue.list_open_orders(market_id)

        total = PullbackAdjustment(multiplier=multiplier)
        for market_id, orders in by_market.items():
            adj = scale_resting_orders(orders, multiplier, self.cfg.planner.min_order_amount)
            async with self._lock(market_id):
                for o in adj.resized:
                    await self.venue.resize_order(market_id, o, o.remaining_amount)
                for o in adj.cancelled:
                    await self.venue.resize_order(market_id, o, 0)
            total.orders_modified += adj.orders_modified
            total.total_reduction += adj.total_reduction
            total.total_refund += adj.total_refund
            total.resized.extend(adj.resized)
            total.cancelled.extend(adj.cancelled)
            total.unchanged.extend(adj.unchanged)

        details = {
            "trigger": f"band {update.old_percent}% -> {update.new_percent}%",
            "exposure": new_exposure,
            "pullback_multiplier": multiplier,
            "orders_modified": total.orders_modified,
            "total_reduction": total.total_reduction,
            "total_refund": total.total_refund,
        }
        self.logger.write("pullback", details)
        self._record("pullback", details, update.old_exposure, new_exposure)
        return total

    def update_config(self, **changes: Any) -> AppConfig:
        """Apply validated bot setting changes; the next plan uses them."""
        before = self.cfg.bot
        self.cfg.bot = update_bot_config(before, **changes)
        applied = {k: v for k, v in changes.items() if v is not None}
        self.logger.write("config_updated", applied)
        self._record("config_updated", applied)
        return self.cfg
