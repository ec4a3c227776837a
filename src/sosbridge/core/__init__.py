"""Core utilities for the SOS Bridge dispatch engine."""

from sosbridge.core.config import (
    DispatchConfig,
    ScoringWeights,
    get_dispatch_config,
    load_dispatch_config,
)
from sosbridge.core.geo import haversine_km
from sosbridge.core.normalize import format_phone, normalize_phone

__all__ = [
    "DispatchConfig",
    "ScoringWeights",
    "format_phone",
    "get_dispatch_config",
    "haversine_km",
    "load_dispatch_config",
    "normalize_phone",
]
