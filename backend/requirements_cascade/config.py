"""
Requirements Cascade - Settings
===============================

Runtime settings for the requirements cascade subsystem.

Configuration via environment variables (a local .env is honoured):
    MRP_DATABASE_URL=sqlite:///requirements_cascade.db
    MRP_CACHE_STALENESS_SECONDS=3600
    MRP_ALLOCATOR_MAX_ATTEMPTS=10
    MRP_REFRESH_DEMAND=true
    MRP_TRUST_MERCHANT_HEADER=false
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class CascadeSettings:
    """
    Settings for the cascade, cache, allocator and lineage tracker.

    Defaults mirror the behaviour of the production deployment.
    """
    database_url: str = "sqlite:///requirements_cascade.db"

    # Change-detection fallback: recalculate at least this often
    cache_staleness_seconds: float = 3600.0

    # Optimistic order-number allocation
    allocator_max_attempts: int = 10
    allocator_base_delay: float = 0.05
    allocator_max_delay: float = 2.0

    # Order number shape
    order_prefix: str = "MO"
    order_number_width: int = 6
    rework_separator: str = "-R"

    # Re-derive finished good demand from live order items before each cascade
    refresh_demand: bool = False

    # Accept X-Merchant-Id as-is; only behind a proxy that sets it itself
    trust_merchant_header: bool = False

    @property
    def cache_staleness(self) -> timedelta:
        return timedelta(seconds=self.cache_staleness_seconds)


class Settings:
    """
    Lazily-loaded settings singleton.

    Usage:
        settings = Settings.get()
        settings.allocator_max_attempts
    """

    _instance: Optional[CascadeSettings] = None

    @classmethod
    def _load_from_env(cls) -> CascadeSettings:
        config = CascadeSettings()

        str_mapping = {
            "MRP_DATABASE_URL": "database_url",
            "MRP_ORDER_PREFIX": "order_prefix",
            "MRP_REWORK_SEPARATOR": "rework_separator",
        }
        for env_var, attr_name in str_mapping.items():
            value = os.environ.get(env_var)
            if value:
                setattr(config, attr_name, value)
                logger.info(f"Setting {attr_name} = {value}")

        numeric_mapping = {
            "MRP_CACHE_STALENESS_SECONDS": ("cache_staleness_seconds", float),
            "MRP_ALLOCATOR_MAX_ATTEMPTS": ("allocator_max_attempts", int),
            "MRP_ALLOCATOR_BASE_DELAY": ("allocator_base_delay", float),
            "MRP_ALLOCATOR_MAX_DELAY": ("allocator_max_delay", float),
            "MRP_ORDER_NUMBER_WIDTH": ("order_number_width", int),
        }
        for env_var, (attr_name, cast) in numeric_mapping.items():
            value = os.environ.get(env_var)
            if not value:
                continue
            try:
                parsed = cast(value)
            except ValueError:
                logger.warning(f"Invalid value for {env_var}: {value}")
                continue
            if parsed <= 0:
                logger.warning(f"Ignoring non-positive {env_var}: {value}")
                continue
            setattr(config, attr_name, parsed)
            logger.info(f"Setting {attr_name} = {parsed}")

        value = os.environ.get("MRP_REFRESH_DEMAND")
        if value:
            config.refresh_demand = value.lower() in ("true", "1", "yes")

        value = os.environ.get("MRP_TRUST_MERCHANT_HEADER")
        if value:
            config.trust_merchant_header = value.lower() in ("true", "1", "yes")
            logger.info(f"Setting trust_merchant_header = {config.trust_merchant_header}")

        return config

    @classmethod
    def get(cls) -> CascadeSettings:
        if cls._instance is None:
            cls._instance = cls._load_from_env()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the cached settings so the next get() re-reads the environment."""
        cls._instance = None

    @classmethod
    def to_dict(cls) -> Dict[str, Any]:
        config = cls.get()
        return {
            "cache_staleness_seconds": config.cache_staleness_seconds,
            "allocator": {
                "max_attempts": config.allocator_max_attempts,
                "base_delay": config.allocator_base_delay,
                "max_delay": config.allocator_max_delay,
            },
            "order_numbers": {
                "prefix": config.order_prefix,
                "width": config.order_number_width,
                "rework_separator": config.rework_separator,
            },
            "refresh_demand": config.refresh_demand,
            "trust_merchant_header": config.trust_merchant_header,
        }
