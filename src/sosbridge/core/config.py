"""Configuration loading utilities."""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_COSMOS_DATABASE = "sos-bridge"


def get_telegram_bot_token() -> str:
    """Get the Telegram Bot API token from environment.

    Returns:
        Bot token string

    Raises:
        ValueError: If TELEGRAM_BOT_TOKEN is not set
    """
    load_dotenv()

    token = os.getenv("TELEGRAM_BOT_TOKEN")
    if not token:
        raise ValueError("Telegram credentials not set. Required: TELEGRAM_BOT_TOKEN")

    return token


def get_cosmos_database() -> str:
    """Get Cosmos DB database name.

    Reads from ``COSMOS_DATABASE`` env var, falls back to ``sos-bridge``.
    """
    return os.getenv("COSMOS_DATABASE") or DEFAULT_COSMOS_DATABASE


@dataclass(frozen=True)
class ScoringWeights:
    """Weights for ranking rescuers against a ticket.

    No logic here -- just parameters so ranking can be tuned without
    touching the selection algorithm.
    """

    distance_max: float = 100.0
    distance_per_km: float = 20.0  # distance score reaches 0 at 5 km
    vehicle_scores: dict[str, float] = field(default_factory=lambda: {"cano": 30.0, "boat": 20.0})
    capacity_bonus: float = 20.0  # vehicle fits everyone on the ticket
    rating_multiplier: float = 5.0  # rating is 0-5, so max 25
    experience_cap: int = 20


@dataclass(frozen=True)
class DispatchConfig:
    """Configuration for deduplication, rescuer selection, and fan-out.

    ``dedup_radius_km`` and the dispatch radii serve different purposes
    and are never derived from each other.
    """

    dedup_radius_km: float = 0.05
    match_radius_km: float = 5.0
    broadcast_radius_km: float = 10.0
    max_rescuers_to_notify: int = 5
    base_reward: float = 20.0
    priority_reward_step: float = 5.0
    reward_currency: str = "USDC"
    scoring: ScoringWeights = field(default_factory=ScoringWeights)

    def validate(self) -> None:
        """Basic sanity checks.

        Raises:
            ValueError: If a radius or limit is not positive
        """
        for name in ("dedup_radius_km", "match_radius_km", "broadcast_radius_km"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.max_rescuers_to_notify <= 0:
            raise ValueError("max_rescuers_to_notify must be > 0")
        if self.base_reward < 0 or self.priority_reward_step < 0:
            raise ValueError("reward amounts must be >= 0")


def get_project_root() -> Path:
    """Get the project root directory."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    raise RuntimeError("Could not find project root (no pyproject.toml found)")


def _read_config_file(config_path: Path | None) -> dict:
    """Read the dispatch JSON config, or return an empty dict if absent."""
    if config_path is None:
        try:
            config_path = get_project_root() / "config" / "dispatch.json"
        except RuntimeError:
            logger.debug("No project root found, using default dispatch config")
            return {}

    if not config_path.exists():
        logger.debug("Dispatch config %s not found, using defaults", config_path)
        return {}

    with config_path.open() as f:
        return json.load(f)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError as e:
        raise ValueError(f"{name} must be a number, got {value!r}") from e


def load_dispatch_config(config_path: Path | None = None) -> DispatchConfig:
    """Load dispatch configuration from config file and environment.

    Values come from ``config/dispatch.json`` (optional) and can be
    overridden with environment variables:

        SOS_DEDUP_RADIUS_KM: Duplicate-detection radius (default 0.05)
        SOS_MATCH_RADIUS_KM: Best-match search radius (default 5)
        SOS_BROADCAST_RADIUS_KM: Fan-out search radius (default 10)
        SOS_MAX_NOTIFY: Maximum rescuers notified per ticket (default 5)

    Args:
        config_path: Explicit JSON path (defaults to the project config dir)

    Returns:
        Validated DispatchConfig

    Raises:
        ValueError: If a value is malformed or out of range
    """
    load_dotenv()

    data = _read_config_file(config_path)
    defaults = DispatchConfig()
    weights_data = data.get("scoring", {})
    default_weights = ScoringWeights()

    weights = ScoringWeights(
        distance_max=weights_data.get("distance_max", default_weights.distance_max),
        distance_per_km=weights_data.get("distance_per_km", default_weights.distance_per_km),
        vehicle_scores=weights_data.get("vehicle_scores", default_weights.vehicle_scores),
        capacity_bonus=weights_data.get("capacity_bonus", default_weights.capacity_bonus),
        rating_multiplier=weights_data.get("rating_multiplier", default_weights.rating_multiplier),
        experience_cap=weights_data.get("experience_cap", default_weights.experience_cap),
    )

    config = DispatchConfig(
        dedup_radius_km=_env_float(
            "SOS_DEDUP_RADIUS_KM", data.get("dedup_radius_km", defaults.dedup_radius_km)
        ),
        match_radius_km=_env_float(
            "SOS_MATCH_RADIUS_KM", data.get("match_radius_km", defaults.match_radius_km)
        ),
        broadcast_radius_km=_env_float(
            "SOS_BROADCAST_RADIUS_KM",
            data.get("broadcast_radius_km", defaults.broadcast_radius_km),
        ),
        max_rescuers_to_notify=int(
            _env_float(
                "SOS_MAX_NOTIFY",
                data.get("max_rescuers_to_notify", defaults.max_rescuers_to_notify),
            )
        ),
        base_reward=data.get("base_reward", defaults.base_reward),
        priority_reward_step=data.get("priority_reward_step", defaults.priority_reward_step),
        reward_currency=data.get("reward_currency", defaults.reward_currency),
        scoring=weights,
    )
    config.validate()
    return config


# Cached config instance
_dispatch_config: DispatchConfig | None = None


def get_dispatch_config() -> DispatchConfig:
    """Get cached dispatch config.

    Loads config once and caches it for subsequent calls.
    """
    global _dispatch_config
    if _dispatch_config is None:
        _dispatch_config = load_dispatch_config()
    return _dispatch_config
