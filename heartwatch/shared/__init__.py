"""Shared utilities for Heartwatch components."""

from heartwatch.shared.bus import RedisBus
from heartwatch.shared.config import build_settings, load_config
from heartwatch.shared.errors import (
    ChannelDeliveryError,
    ConfigurationError,
    HeartwatchError,
    InvalidTransition,
    TransientSourceError,
)
from heartwatch.shared.logger import configure_logging, get_logger

__all__ = [
    "RedisBus",
    "build_settings",
    "load_config",
    "configure_logging",
    "get_logger",
    "HeartwatchError",
    "TransientSourceError",
    "InvalidTransition",
    "ChannelDeliveryError",
    "ConfigurationError",
]
