"""
Configuration types and shared dataclasses for mmbot.
"""
from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class BotConfig:
    """Per-instance bot settings. Amounts are in sats."""
    max_acceptable_loss: int = 10_000_000
    total_liquidity: int = 100_000_000
    global_multiplier: float = 1.0
    is_active: bool = False


@dataclass
class PlannerConfig:
    """Deployment planning knobs."""
    min_order_amount: int = 100  # venue minimum, smaller orders are dropped
    # Curve points priced below the crossover are quoted on the YES side.
    # None keeps every order on the NO side.
    crossover_price: Optional[int] = None
    # YES@y and NO@n cross when paid prices sum to >= 100 (> 100 if False)
    crossing_inclusive: bool = True
    pullback_band_percent: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration for debugging and monitoring."""
    level: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    enable_performance: bool = False


@dataclass
class AppConfig:
    """Complete application configuration."""
    bot: BotConfig = field(default_factory=BotConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    markets: List[str] = field(default_factory=list)
    log_path: str = "./data/logs/mm_events.jsonl"
    activity_log_path: str = "./data/logs/activity.jsonl"
    state_path: str = "./data/state/bot_state.json"
    shapes_path: str = "./data/state/shapes.json"


@dataclass(frozen=True)
class BalanceInputs:
    """Balance figures supplied by the balance provider."""
    balance: int
    existing_orders_refund: int = 0

    @property
    def effective_balance(self) -> int:
        return self.balance + self.existing_orders_refund


@dataclass(frozen=True)
class RestingOrder:
    """An order currently resting on the venue book."""
    side: str  # "yes" or "no"
    price: int  # YES-implied percent
    remaining_amount: int
    order_id: Optional[str] = None
    market_id: Optional[str] = None  # set on the bot's own orders
