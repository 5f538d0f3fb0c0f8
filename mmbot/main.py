"""
mmbot command line.

Usage:
    python -m mmbot.main config.json preview
    python -m mmbot.main config.json deploy --dry-run
    python -m mmbot.main config.json withdraw
    python -m mmbot.main config.json worst-case
    python -m mmbot.main config.json pullback 2500000
    python -m mmbot.main config.json tiers init scores.json --yes
    python -m mmbot.main config.json tiers budget S 40
    python -m mmbot.main config.json tiers weight S market-1 0.5 --lock
    python -m mmbot.main config.json thresholds add 25 75
    python -m mmbot.main config.json shapes list
    python -m mmbot.main config.json set --max-loss 5000000 --active true

Orders go to the venue configured by VENUE_API_URL / VENUE_API_TOKEN.
--dry-run reads the live venue but only prints the orders it would place;
--paper runs against an in-memory venue with a starting balance.
"""
import argparse
import asyncio
import json
import sys
from typing import Sequence

from .adapters import CancelResult, HttpVenueAdapter, PaperVenueAdapter, PlaceResult, StaticScoreSource, VenueAdapter
from .config import load_config, save_config
from .deployer import BotDeployer
from .errors import EngineError
from .logging import ActivityLog, DebugLogger, JsonlLogger
from .planner import STATUS_OK, DeploymentPlan, PlannedOrder
from .pullback import worst_case
from .shapes import SHAPE_TYPES, ShapeLibrary
from .state import BotState
from .tiers import tier_summary
from .types import AppConfig, RestingOrder
from .utils import fmt, fmt_sats, timestamp_to_date


class DryRunAdapter(HttpVenueAdapter):
    """Venue adapter that reads the live venue but never changes it.

    Balance, exposure and book snapshots come from the real API so the plan
    is realistic; placement, cancellation and resizing only print.
    """

    async def place_orders(self, market_id: str, orders: Sequence[PlannedOrder]) -> PlaceResult:
        result = PlaceResult(market_id=market_id)
        for o in orders:
            order_id = f"dry_run_{market_id[:8]}_{o.side}_{o.price}"
            print(f"[DRY] WOULD PLACE {o.side.upper()} {fmt_sats(o.amount)} @ {o.price}% cost {fmt_sats(o.cost)} ({order_id})")
            result.order_ids.append(order_id)
            result.total_cost += o.cost
        return result

    async def cancel_all_orders(self, market_id: str) -> CancelResult:
        own = await self.list_open_orders(market_id)
        for o in own:
            print(f"[DRY] WOULD CANCEL {o.order_id}")
        return CancelResult(market_id=market_id, cancelled_count=len(own))

    async def resize_order(self, market_id: str, order: RestingOrder, new_amount: int) -> None:
        print(f"[DRY] WOULD RESIZE {order.order_id}: {fmt_sats(order.remaining_amount)} -> {fmt_sats(new_amount)}")


def _make_logger(cfg: AppConfig) -> JsonlLogger:
    if cfg.logging.level != "INFO" or cfg.logging.enable_performance:
        return DebugLogger(cfg.log_path, level=cfg.logging.level)
    return JsonlLogger(cfg.log_path)


def _make_venue(args) -> VenueAdapter:
    if args.paper:
        print(f"📝 PAPER MODE: in-memory venue with {fmt_sats(args.paper_balance)} sats")
        return PaperVenueAdapter(balance=args.paper_balance)
    if args.dry_run:
        print("⚠️  DRY RUN MODE ACTIVE ⚠️")
        print("No orders will be placed or cancelled.")
        print("=" * 60)
        return DryRunAdapter()
    return HttpVenueAdapter()


def _parse_bool(s: str) -> bool:
    if s.lower() in ("1", "true", "yes", "on"):
        return True
    if s.lower() in ("0", "false", "no", "off"):
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {s!r}")


def print_plan(plan: DeploymentPlan) -> None:
    print(f"Status:              {plan.status}")
    if plan.status != STATUS_OK:
        for w in plan.warnings:
            print(f"⚠️  {w}")
        return
    print(f"Effective balance:   {fmt_sats(plan.effective_balance)} "
          f"(balance {fmt_sats(plan.balance)} + refund {fmt_sats(plan.existing_orders_refund)})")
    print(f"Max budget:          {fmt_sats(plan.max_budget)}")
    print(f"Exposure:            {fmt_sats(plan.exposure)} ({fmt(plan.exposure_percent, 1)}%)")
    print(f"Pullback multiplier: {fmt(plan.pullback_multiplier, 4)}")
    print(f"Deployable budget:   {fmt_sats(plan.deployable_budget)}")
    print("-" * 60)
    for mp in plan.markets:
        flag = " [disabled]" if mp.disabled else (" [custom curve]" if mp.custom_curve else "")
        print(f"{mp.market_id}: weight {fmt(mp.weight, 4)} budget {fmt_sats(mp.budget)}{flag}")
        for o in mp.orders:
            print(f"    {o.side.upper():3} {o.price:>2}%  amount {fmt_sats(o.amount):>14}  cost {fmt_sats(o.cost):>12}")
    print("-" * 60)
    print(f"Total: {plan.total_orders} orders in {plan.total_markets} markets, "
          f"amount {fmt_sats(plan.total_amount)}, cost {fmt_sats(plan.total_cost)}")
    for w in plan.warnings:
        print(f"⚠️  {w}")


def format_activity(entry: dict) -> str:
    """One activity record as a readable line."""
    line = f"{timestamp_to_date(entry['timestamp'])}  {entry['action']:<16}"
    if entry.get("exposure_before") is not None:
        line += f" exposure {fmt_sats(entry['exposure_before'])} -> {fmt_sats(entry['exposure_after'] or 0)}"
    return f"{line}  {json.dumps(entry['details'])}"


async def _run(args) -> int:
    try:
        cfg = load_config(args.config)
    except EngineError as e:
        print(f"❌ Error: {e}")
        return 2
    logger = _make_logger(cfg)

    try:
        activity = ActivityLog(cfg.activity_log_path)
        state = BotState(cfg.state_path, ShapeLibrary(cfg.shapes_path), logger)
        if args.command == "tiers":
            return _tiers(args, cfg, state)
        if args.command == "thresholds":
            return _thresholds(args, state)
        if args.command == "shapes":
            return _shapes(args, state.shapes)

        deployer = BotDeployer(cfg, _make_venue(args), state, logger, activity)

        if args.command == "set":
            deployer.update_config(
                max_acceptable_loss=args.max_loss,
                total_liquidity=args.total_liquidity,
                global_multiplier=args.multiplier,
                is_active=args.active,
            )
            save_config(cfg, args.config)
            print(json.dumps(cfg.bot.__dict__, indent=2))
        elif args.command == "preview":
            plan = await deployer.preview()
            if args.json:
                print(json.dumps(plan.to_dict(), indent=2))
            else:
                print_plan(plan)
        elif args.command == "deploy":
            result = await deployer.deploy()
            if result.plan is not None:
                print_plan(result.plan)
            if result.refused:
                print(f"❌ Deploy refused: {result.refused}")
                return 1
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.ok else 1
        elif args.command == "withdraw":
            result = await deployer.withdraw_all()
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.ok else 1
        elif args.command == "worst-case":
            exposure = await deployer.venue.get_exposure()
            print(json.dumps(worst_case(exposure, cfg.bot.max_acceptable_loss), indent=2))
        elif args.command == "pullback":
            adj = await deployer.apply_pullback(args.exposure)
            if adj is None:
                print("No pullback: exposure stayed in the same band (or bot inactive).")
            else:
                print(f"Pullback x{fmt(adj.multiplier, 4)}: {adj.orders_modified} orders modified, "
                      f"reduction {fmt_sats(adj.total_reduction)}, refund {fmt_sats(adj.total_refund)}")
        elif args.command == "activity":
            for entry in activity.recent(args.limit):
                print(format_activity(entry))
        return 0
    except EngineError as e:
        print(f"❌ Error: {e}")
        return 2
    finally:
        logger.close()


def _tiers(args, cfg: AppConfig, state: BotState) -> int:
    if args.tiers_command == "init":
        if not args.yes:
            print("❌ Initializing tiers replaces every tier budget, weight and lock. Re-run with --yes.")
            return 1
        markets = args.markets or cfg.markets
        state.initialize_from_scores(markets, StaticScoreSource(path=args.scores))
    elif args.tiers_command == "budget":
        state.set_tier_budget(args.tier, args.percent)
    elif args.tiers_command == "weight":
        state.set_market_weight(args.tier, args.market, args.weight, lock=args.lock)
    elif args.tiers_command == "unlock":
        state.set_weight_lock(args.tier, args.market, False)
    print(json.dumps(tier_summary(state.tiers), indent=2))
    return 0


def _thresholds(args, state: BotState) -> int:
    if args.thresholds_command == "add":
        state.add_threshold(args.exposure_percent, args.pullback_percent)
    elif args.thresholds_command == "remove":
        state.remove_threshold(args.exposure_percent)
    schedule = state.schedule
    print("linear (no thresholds)" if schedule.is_linear else json.dumps(schedule.to_dicts(), indent=2))
    if not schedule.is_monotonic():
        print("⚠️  schedule offers more liquidity at a higher exposure threshold")
    return 0


def _shapes(args, shapes: ShapeLibrary) -> int:
    if args.shapes_command == "create":
        params = json.loads(args.params) if args.params else {}
        shape = shapes.save_shape(args.name, args.shape_type, params)
        print(f"Created shape {shape.id}")
    elif args.shapes_command == "default":
        shapes.set_default_shape(args.shape_id)
    elif args.shapes_command == "delete":
        shapes.delete_shape(args.shape_id)
    default = shapes.get_default_shape()
    for s in shapes.list_shapes():
        mark = "*" if s.id == default.id else " "
        curve = " ".join(f"{p.price}:{fmt(p.weight, 3)}" for p in s.points)
        print(f"{mark} {s.id}  {s.name} ({s.shape_type})  {curve}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Liquidity allocation and risk pullback for the mmbot market maker")
    parser.add_argument("config", help="Path to configuration JSON file")
    parser.add_argument("--dry-run", action="store_true", help="Read the live venue but only print order actions")
    parser.add_argument("--paper", action="store_true", help="Use an in-memory paper venue")
    parser.add_argument("--paper-balance", type=int, default=10_000_000, help="Starting balance for --paper (sats)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("preview", help="Compute the deployment plan without placing orders")
    p.add_argument("--json", action="store_true", help="Print the full plan as JSON")
    sub.add_parser("deploy", help="Cancel and re-place orders in every planned market")
    sub.add_parser("withdraw", help="Cancel all bot orders")
    sub.add_parser("worst-case", help="Show current exposure against the loss cap")
    p = sub.add_parser("pullback", help="Apply pullback for a new exposure reading")
    p.add_argument("exposure", type=int, help="Current exposure in sats")
    p = sub.add_parser("activity", help="Show recent activity")
    p.add_argument("--limit", type=int, default=20)

    p = sub.add_parser("set", help="Update bot settings")
    p.add_argument("--max-loss", type=int, help="max_acceptable_loss (sats)")
    p.add_argument("--total-liquidity", type=int, help="total_liquidity (sats)")
    p.add_argument("--multiplier", type=float, help="global_multiplier")
    p.add_argument("--active", type=_parse_bool, help="is_active (true/false)")

    tiers = sub.add_parser("tiers", help="Tier budgets and market weights")
    tsub = tiers.add_subparsers(dest="tiers_command", required=True)
    tsub.add_parser("show")
    p = tsub.add_parser("init", help="Rebuild all tiers from likelihood scores")
    p.add_argument("scores", help="JSON file mapping market id to score")
    p.add_argument("markets", nargs="*", help="Markets to assign (default: config markets)")
    p.add_argument("--yes", action="store_true", help="Confirm the destructive reset")
    p = tsub.add_parser("budget", help="Set one tier's budget percent")
    p.add_argument("tier")
    p.add_argument("percent", type=float)
    p = tsub.add_parser("weight", help="Set a market's weight within its tier")
    p.add_argument("tier")
    p.add_argument("market")
    p.add_argument("weight", type=float)
    p.add_argument("--lock", action="store_true", help="Lock the weight against normalization")
    p = tsub.add_parser("unlock", help="Unlock a market's weight")
    p.add_argument("tier")
    p.add_argument("market")

    thresholds = sub.add_parser("thresholds", help="Pullback thresholds")
    hsub = thresholds.add_subparsers(dest="thresholds_command", required=True)
    hsub.add_parser("show")
    p = hsub.add_parser("add")
    p.add_argument("exposure_percent", type=float)
    p.add_argument("pullback_percent", type=float)
    p = hsub.add_parser("remove")
    p.add_argument("exposure_percent", type=float)

    shapes = sub.add_parser("shapes", help="Shape library")
    ssub = shapes.add_subparsers(dest="shapes_command", required=True)
    ssub.add_parser("list")
    p = ssub.add_parser("create")
    p.add_argument("name")
    p.add_argument("shape_type", choices=SHAPE_TYPES)
    p.add_argument("--params", help='JSON params, e.g. \'{"mu": 25, "sigma": 10}\'')
    p = ssub.add_parser("default")
    p.add_argument("shape_id")
    p = ssub.add_parser("delete")
    p.add_argument("shape_id")
    return parser


async def _amain(argv=None) -> int:
    """Main async entry point."""
    args = build_parser().parse_args(argv)
    return await _run(args)


def main(argv=None) -> None:
    sys.exit(asyncio.run(_amain(argv)))


if __name__ == "__main__":
    main()
