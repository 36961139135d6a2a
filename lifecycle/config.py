"""Runtime configuration loaded from the environment (.env supported)."""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict

from dotenv import load_dotenv

from .roi_table import DEFAULT_ROI_TABLE, parse_roi_table

load_dotenv()

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"{name}={value!r} is not a number, using {default}")
        return default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"{name}={value!r} is not an integer, using {default}")
        return default


@dataclass
class OrderReplacementConfig:
    """Settings for repricing stale limit/stop orders."""
    enabled: bool = True
    replace_after_seconds: int = 60
    price_deviation_pct: float = 0.005  # 0.5% drift before repricing
    max_replacements: int = 3

    def __post_init__(self):
        """Clamp to sane ranges."""
        if self.replace_after_seconds < 1:
            logger.warning(f"replace_after_seconds={self.replace_after_seconds} < 1, setting to 1")
            self.replace_after_seconds = 1
        if self.replace_after_seconds > 600:
            logger.warning(f"replace_after_seconds={self.replace_after_seconds} > 600, capping at 600")
            self.replace_after_seconds = 600

        if self.price_deviation_pct < 0.0001:
            logger.warning(f"price_deviation_pct={self.price_deviation_pct} < 0.0001, setting to 0.0001")
            self.price_deviation_pct = 0.0001
        if self.price_deviation_pct > 0.1:
            logger.warning(f"price_deviation_pct={self.price_deviation_pct} > 0.1, capping at 0.1")
            self.price_deviation_pct = 0.1

        if self.max_replacements < 1:
            logger.warning(f"max_replacements={self.max_replacements} < 1, setting to 1")
            self.max_replacements = 1
        if self.max_replacements > 20:
            logger.warning(f"max_replacements={self.max_replacements} > 20, capping at 20")
            self.max_replacements = 20


@dataclass
class ConditionalOrderConfig:
    enabled: bool = True
    max_active: int = 20

    def __post_init__(self):
        if self.max_active < 1:
            logger.warning(f"max_active={self.max_active} < 1, setting to 1")
            self.max_active = 1
        if self.max_active > 500:
            logger.warning(f"max_active={self.max_active} > 500, capping at 500")
            self.max_active = 500


@dataclass
class ExitConfig:
    roi_enabled: bool = False
    roi_table: Dict[int, float] = field(default_factory=lambda: dict(DEFAULT_ROI_TABLE))


@dataclass
class BrokerConfig:
    api_key: str = ""
    environment: str = "demo"  # "demo" or "live"
    account_type: str = "INVEST"  # "INVEST" or "ISA"

    def __post_init__(self):
        if self.environment not in ("demo", "live"):
            logger.warning(f"environment={self.environment!r} is not demo/live, using demo")
            self.environment = "demo"
        if self.account_type not in ("INVEST", "ISA"):
            logger.warning(f"account_type={self.account_type!r} is not INVEST/ISA, using INVEST")
            self.account_type = "INVEST"


@dataclass
class LifecycleConfig:
    """Everything the lifecycle engines need, in one place."""
    dry_run: bool = True
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    order_replacement: OrderReplacementConfig = field(default_factory=OrderReplacementConfig)
    conditional_orders: ConditionalOrderConfig = field(default_factory=ConditionalOrderConfig)
    exits: ExitConfig = field(default_factory=ExitConfig)

    @classmethod
    def from_env(cls) -> "LifecycleConfig":
        """Build config from environment variables."""
        roi_raw = os.getenv("EXIT_ROI_TABLE")
        roi_table = parse_roi_table(roi_raw) if roi_raw else dict(DEFAULT_ROI_TABLE)

        return cls(
            dry_run=_env_bool("DRY_RUN", True),
            broker=BrokerConfig(
                api_key=os.getenv("T212_API_KEY", ""),
                environment=os.getenv("T212_ENVIRONMENT", "demo"),
                account_type=os.getenv("T212_ACCOUNT_TYPE", "INVEST"),
            ),
            order_replacement=OrderReplacementConfig(
                enabled=_env_bool("ORDER_REPLACEMENT_ENABLED", True),
                replace_after_seconds=_env_int("ORDER_REPLACE_AFTER_SECONDS", 60),
                price_deviation_pct=_env_float("ORDER_PRICE_DEVIATION_PCT", 0.005),
                max_replacements=_env_int("ORDER_MAX_REPLACEMENTS", 3),
            ),
            conditional_orders=ConditionalOrderConfig(
                enabled=_env_bool("CONDITIONAL_ORDERS_ENABLED", True),
                max_active=_env_int("CONDITIONAL_ORDERS_MAX_ACTIVE", 20),
            ),
            exits=ExitConfig(
                roi_enabled=_env_bool("EXIT_ROI_ENABLED", False),
                roi_table=roi_table,
            ),
        )
