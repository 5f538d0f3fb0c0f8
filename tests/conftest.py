"""
Pytest configuration and shared fixtures for mmbot tests.

This module provides:
- Temporary directories for file-backed components
- Sample configuration and curves
- A paper venue and mocked venue adapters
"""
import json
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from mmbot.adapters import CancelResult, PaperVenueAdapter, PlaceResult, VenueAdapter
from mmbot.logging import JsonlLogger
from mmbot.shapes import Point
from mmbot.tiers import MarketWeight, TierDefinition
from mmbot.types import AppConfig, BalanceInputs, BotConfig, LoggingConfig, PlannerConfig


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests that need file I/O."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def active_bot():
    """Active bot with a 1,000,000 sat loss cap."""
    return BotConfig(max_acceptable_loss=1_000_000, total_liquidity=5_000_000, global_multiplier=1.0, is_active=True)


@pytest.fixture
def two_point_curve():
    return [Point(10, 0.5), Point(20, 0.5)]


@pytest.fixture
def sample_tiers():
    """Two tiers, three markets; flattened weights are m1 0.3, m2 0.3, m3 0.4."""
    return [
        TierDefinition("S", 60.0, [MarketWeight("m1", 0.5), MarketWeight("m2", 0.5)]),
        TierDefinition("A", 40.0, [MarketWeight("m3", 1.0)]),
    ]


@pytest.fixture
def sample_app_config(temp_dir):
    return AppConfig(
        bot=BotConfig(max_acceptable_loss=1_000_000, is_active=True),
        planner=PlannerConfig(),
        logging=LoggingConfig(),
        markets=["m1", "m2", "m3"],
        log_path=str(temp_dir / "events.jsonl"),
        activity_log_path=str(temp_dir / "activity.jsonl"),
        state_path=str(temp_dir / "state.json"),
        shapes_path=str(temp_dir / "shapes.json"),
    )


@pytest.fixture
def sample_config_file(temp_dir):
    """Create a temporary config file for testing config loading."""
    config_path = temp_dir / "test_config.json"
    config_data = {
        "bot": {"max_acceptable_loss": 2_000_000, "global_multiplier": 0.5, "is_active": True},
        "planner": {"min_order_amount": 200, "crossover_price": 30},
        "logging": {"level": "DEBUG"},
        "markets": ["m1", "m2"],
        "log_path": str(temp_dir / "events.jsonl"),
        "state_path": str(temp_dir / "state.json"),
    }
    with open(config_path, "w") as f:
        json.dump(config_data, f, indent=2)
    return config_path


@pytest.fixture
def mock_logger():
    """Mock logger that records events without touching disk."""
    return MagicMock(spec=JsonlLogger)


@pytest.fixture
def paper_venue():
    return PaperVenueAdapter(balance=1_000_000)


@pytest.fixture
def mock_venue():
    """Mocked VenueAdapter for orchestration tests without a real venue."""
    venue = MagicMock(spec=VenueAdapter)
    venue.get_effective_balance = AsyncMock(return_value=BalanceInputs(balance=1_000_000))
    venue.get_exposure = AsyncMock(return_value=0)
    venue.get_resting_orders = AsyncMock(return_value=[])
    venue.list_open_orders = AsyncMock(return_value=[])
    venue.cancel_all_orders = AsyncMock(side_effect=lambda m: CancelResult(market_id=m))
    venue.place_orders = AsyncMock(
        side_effect=lambda m, orders: PlaceResult(
            market_id=m,
            order_ids=[f"{m}-{i}" for i in range(len(orders))],
            total_cost=sum(o.cost for o in orders),
        )
    )
    venue.resize_order = AsyncMock(return_value=None)
    return venue
