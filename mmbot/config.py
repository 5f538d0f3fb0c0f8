"""
Configuration loading and validated updates for mmbot.
"""
import json
import os
from dataclasses import asdict, fields, replace
from typing import Any

from .errors import InvalidInput
from .types import AppConfig, BotConfig, LoggingConfig, PlannerConfig
from .utils import is_finite_number, require_price


def validate_bot_config(cfg: BotConfig) -> BotConfig:
    """Reject settings the engine cannot plan with.

    Raises:
        InvalidInput: non-positive loss cap or liquidity, negative multiplier
    """
    if not is_finite_number(cfg.max_acceptable_loss) or cfg.max_acceptable_loss <= 0:
        raise InvalidInput(f"max_acceptable_loss must be > 0, got {cfg.max_acceptable_loss!r}")
    if not is_finite_number(cfg.total_liquidity) or cfg.total_liquidity <= 0:
        raise InvalidInput(f"total_liquidity must be > 0, got {cfg.total_liquidity!r}")
    if not is_finite_number(cfg.global_multiplier) or cfg.global_multiplier < 0:
        raise InvalidInput(f"global_multiplier must be >= 0, got {cfg.global_multiplier!r}")
    if not isinstance(cfg.is_active, bool):
        raise InvalidInput(f"is_active must be a bool, got {cfg.is_active!r}")
    return cfg


def update_bot_config(cfg: BotConfig, **changes: Any) -> BotConfig:
    """Return a new BotConfig with changes applied and validated.

    Only the named fields change; None values are ignored.
    """
    known = {f.name for f in fields(BotConfig)}
    unknown = set(changes) - known
    if unknown:
        raise InvalidInput(f"unknown config fields: {sorted(unknown)}")
    return validate_bot_config(replace(cfg, **{k: v for k, v in changes.items() if v is not None}))


def load_config(path: str) -> AppConfig:
    """Load configuration from JSON file."""
    with open(path, "r") as fp:
        d = json.load(fp)
    bot = validate_bot_config(BotConfig(**d.get("bot", {})))
    planner = PlannerConfig(**d.get("planner", {}))
    if planner.crossover_price is not None:
        require_price(planner.crossover_price)
    logging = LoggingConfig(**d.get("logging", {}))
    return AppConfig(
        bot=bot,
        planner=planner,
        logging=logging,
        markets=list(d.get("markets", [])),
        log_path=d.get("log_path", "./data/logs/mm_events.jsonl"),
        activity_log_path=d.get("activity_log_path", "./data/logs/activity.jsonl"),
        state_path=d.get("state_path", "./data/state/bot_state.json"),
        shapes_path=d.get("shapes_path", "./data/state/shapes.json"),
    )


def save_config(cfg: AppConfig, path: str) -> None:
    """Write configuration back to JSON (used after operator updates)."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    with open(path, "w") as fp:
        json.dump(asdict(cfg), fp, indent=2)
