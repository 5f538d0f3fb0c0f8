"""
Tests for deployment orchestration in mmbot/deployer.py.

Tests cover:
- Preview snapshots and plan computation
- Deploy refusal states and cancel-then-place ordering
- Per-market failure isolation
- Withdraw and pullback against the paper venue
- Validated config updates with activity records
"""
from unittest.mock import AsyncMock, call

import pytest

from mmbot.adapters import CancelResult, PaperVenueAdapter
from mmbot.deployer import BotDeployer
from mmbot.errors import InvalidInput
from mmbot.logging import ActivityLog, DebugLogger
from mmbot.planner import STATUS_BOT_INACTIVE, STATUS_OK, PlannedOrder
from mmbot.shapes import Point, ShapeLibrary
from mmbot.state import BotState
from mmbot.tiers import MarketWeight, TierDefinition
from mmbot.types import BalanceInputs, RestingOrder


@pytest.fixture
def state(sample_tiers):
    library = ShapeLibrary()
    shape = library.save_shape("Two", "custom", points=[Point(10, 0.5), Point(20, 0.5)])
    library.set_default_shape(shape.id)
    st = BotState(shapes=library)
    st.tiers = list(sample_tiers)
    return st


@pytest.fixture
def activity(temp_dir):
    return ActivityLog(str(temp_dir / "activity.jsonl"))


class TestPreviewAndDeploy:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_preview_uses_venue_snapshot(self, sample_app_config, mock_venue, state, mock_logger):
        mock_venue.get_exposure.return_value = 250_000
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        plan = await deployer.preview()

        assert plan.status == STATUS_OK
        assert plan.pullback_multiplier == pytest.approx(0.75)
        assert mock_venue.get_resting_orders.await_count == 3
        mock_venue.place_orders.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_inactive_preview_skips_venue(self, sample_app_config, mock_venue, state, mock_logger):
        sample_app_config.bot.is_active = False
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        plan = await deployer.preview()

        assert plan.status == STATUS_BOT_INACTIVE
        mock_venue.get_effective_balance.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_deploy_cancels_then_places_each_market(self, sample_app_config, mock_venue, state, mock_logger, activity):
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger, activity)

        result = await deployer.deploy()

        assert result.ok
        assert [c.args[0] for c in mock_venue.cancel_all_orders.await_args_list] == ["m1", "m2", "m3"]
        assert [c.args[0] for c in mock_venue.place_orders.await_args_list] == ["m1", "m2", "m3"]
        assert result.total_placed_cost == result.plan.total_cost
        actions = [e["action"] for e in activity.recent()]
        assert actions[0] == "deploy_all"
        assert actions.count("deploy_market") == 3

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_deploy_refused_when_inactive(self, sample_app_config, mock_venue, state, mock_logger):
        sample_app_config.bot.is_active = False
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        result = await deployer.deploy()

        assert result.refused == STATUS_BOT_INACTIVE
        mock_venue.cancel_all_orders.assert_not_called()
        mock_venue.place_orders.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_deploy_refused_on_shortfall(self, sample_app_config, mock_venue, state, mock_logger):
        sample_app_config.bot.global_multiplier = 5.0
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        result = await deployer.deploy()

        assert result.refused.startswith("insufficient_balance")
        assert not result.ok
        mock_venue.place_orders.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_deploy_refused_without_weights(self, sample_app_config, mock_venue, mock_logger):
        deployer = BotDeployer(sample_app_config, mock_venue, BotState(), mock_logger)
        result = await deployer.deploy()
        assert result.refused == "no_markets_weighted"

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_market_failure_does_not_stop_others(self, temp_dir, sample_app_config, mock_venue, state):
        logger = DebugLogger(str(temp_dir / "events.jsonl"), level="INFO")
        mock_venue.cancel_all_orders = AsyncMock(
            side_effect=[CancelResult("m1"), RuntimeError("venue down"), CancelResult("m3")]
        )
        deployer = BotDeployer(sample_app_config, mock_venue, state, logger)

        result = await deployer.deploy()
        logger.close()

        assert not result.ok
        assert result.errors == {"m2": "venue down"}
        assert [c.args[0] for c in mock_venue.place_orders.await_args_list] == ["m1", "m3"]
        assert "error_detailed_error" in (temp_dir / "events.jsonl").read_text()

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_deploy_on_paper_venue_replaces_orders(self, sample_app_config, state, mock_logger):
        venue = PaperVenueAdapter(balance=1_000_000)
        deployer = BotDeployer(sample_app_config, venue, state, mock_logger)

        first = await deployer.deploy()
        assert first.ok
        spent = first.total_placed_cost
        assert venue.balance == 1_000_000 - spent

        # Second deploy sees the refund of the first and re-places the same book
        second = await deployer.deploy()
        assert second.ok
        assert second.plan.existing_orders_refund == spent
        assert second.total_refund == spent
        assert venue.balance == 1_000_000 - spent
        assert len(await venue.list_open_orders()) == len(first.plan.orders)

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_unweighted_market_orders_cancelled(self, sample_app_config, state, mock_logger):
        sample_app_config.markets = ["m1"]
        state.tiers = [TierDefinition("S", 100.0, [MarketWeight("m1", 0.5), MarketWeight("m2", 0.5)])]
        venue = PaperVenueAdapter(balance=1_000_000)
        deployer = BotDeployer(sample_app_config, venue, state, mock_logger)

        first = await deployer.deploy()
        assert first.ok
        assert len(venue.own["m2"]) == 2

        state.tiers = [TierDefinition("S", 100.0, [MarketWeight("m1", 1.0)])]
        second = await deployer.deploy()

        assert second.ok
        assert "m2" not in venue.own
        assert second.total_refund == first.total_placed_cost
        assert venue.balance == 1_000_000 - second.total_placed_cost
        assert {o.market_id for o in await venue.list_open_orders()} == {"m1"}

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_markets_with_open_orders_cancelled_before_placing(self, sample_app_config, mock_venue, state, mock_logger):
        mock_venue.list_open_orders.return_value = [RestingOrder("no", 10, 1000, "o9", "m9")]
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        result = await deployer.deploy()

        assert result.ok
        assert [c.args[0] for c in mock_venue.cancel_all_orders.await_args_list] == ["m9", "m1", "m2", "m3"]
        assert [c.args[0] for c in mock_venue.place_orders.await_args_list] == ["m1", "m2", "m3"]


class TestWithdrawAndPullback:

    @pytest.mark.asyncio
    @pytest.mark.integration
    async def test_withdraw_all(self, sample_app_config, state, mock_logger, activity):
        venue = PaperVenueAdapter(balance=1_000_000)
        deployer = BotDeployer(sample_app_config, venue, state, mock_logger, activity)
        await deployer.deploy()

        result = await deployer.withdraw_all()

        assert result.ok
        assert venue.balance == 1_000_000
        assert await venue.list_open_orders() == []
        assert activity.recent(1)[0]["action"] == "withdraw_all"

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_pullback_on_band_change(self, sample_app_config, state, mock_logger, activity):
        venue = PaperVenueAdapter(balance=1_000_000, exposure=50_000)
        venue.own["m1"] = [RestingOrder("no", 10, 1000, "o1"), RestingOrder("no", 20, 150, "o2")]
        deployer = BotDeployer(sample_app_config, venue, state, mock_logger, activity)

        adj = await deployer.apply_pullback(500_000)

        assert adj is not None
        assert adj.multiplier == pytest.approx(0.5)
        assert venue.own["m1"] == [RestingOrder("no", 10, 500, "o1")]
        assert venue.balance == 1_000_000 + 450 + 120
        entry = activity.recent(1)[0]
        assert entry["action"] == "pullback"
        assert entry["exposure_before"] == 50_000
        assert entry["exposure_after"] == 500_000

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_no_pullback_within_band(self, sample_app_config, state, mock_venue, mock_logger):
        mock_venue.get_exposure.return_value = 110_000
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        assert await deployer.apply_pullback(150_000) is None
        mock_venue.resize_order.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.unit
    async def test_pullback_uses_thresholds(self, sample_app_config, state, mock_venue, mock_logger):
        state.add_threshold(25, 75)
        order = RestingOrder("no", 10, 1000, "o1")
        mock_venue.list_open_orders = AsyncMock(side_effect=lambda m=None: [order] if m == "m1" else [])
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)

        adj = await deployer.apply_pullback(300_000)

        assert adj.multiplier == pytest.approx(0.75)
        mock_venue.resize_order.assert_has_awaits([call("m1", RestingOrder("no", 10, 750, "o1"), 750)])


class TestUpdateConfig:

    @pytest.mark.unit
    def test_update_config(self, sample_app_config, mock_venue, state, mock_logger, activity):
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger, activity)

        cfg = deployer.update_config(max_acceptable_loss=2_000_000, global_multiplier=None)

        assert cfg.bot.max_acceptable_loss == 2_000_000
        assert cfg.bot.global_multiplier == 1.0
        assert activity.recent(1)[0]["details"] == {"max_acceptable_loss": 2_000_000}

    @pytest.mark.unit
    def test_invalid_update_keeps_old_config(self, sample_app_config, mock_venue, state, mock_logger):
        deployer = BotDeployer(sample_app_config, mock_venue, state, mock_logger)
        with pytest.raises(InvalidInput):
            deployer.update_config(max_acceptable_loss=-1)
        with pytest.raises(InvalidInput):
            deployer.update_config(leverage=3)
        assert sample_app_config.bot.max_acceptable_loss == 1_000_000
