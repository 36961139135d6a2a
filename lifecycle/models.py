from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional


# Order statuses that are still resting at the broker
OPEN_ORDER_STATUSES = ("pending", "open", "partially_filled")

# Protective orders are never repriced
PROTECTED_ORDER_TAGS = frozenset({"stoploss", "take_profit"})

TRIGGER_TYPES = ("price_above", "price_below", "time", "indicator")


def utcnow() -> datetime:
    """Current time as naive UTC (the form stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(timestamp: datetime) -> datetime:
    """Convert a timestamp to naive UTC. Naive input is assumed to be UTC already."""
    if timestamp.tzinfo is None:
        return timestamp
    return timestamp.astimezone(timezone.utc).replace(tzinfo=None)


@dataclass
class Order:
    """A locally tracked order."""
    id: int
    symbol: str
    side: str  # "buy" or "sell"
    order_type: str  # "market", "limit", "stop"
    status: str
    requested_quantity: float
    created_at: datetime
    requested_price: Optional[float] = None
    stop_price: Optional[float] = None
    filled_quantity: float = 0.0
    filled_price: Optional[float] = None
    filled_at: Optional[datetime] = None
    order_tag: Optional[str] = None
    broker_order_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    replaced_by_order_id: Optional[int] = None
    account_type: str = "INVEST"
    position_id: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def is_protected(self) -> bool:
        return self.order_tag in PROTECTED_ORDER_TAGS

    @property
    def is_simulated(self) -> bool:
        """Broker ids minted in dry-run mode never existed at the broker."""
        return bool(self.broker_order_id) and self.broker_order_id.startswith("dry_run_")


@dataclass
class Position:
    """An open position."""
    id: int
    symbol: str
    broker_ticker: str
    shares: float
    entry_price: float
    entry_time: datetime
    current_price: Optional[float] = None
    pnl: Optional[float] = None
    pnl_pct: Optional[float] = None
    stop_loss: Optional[float] = None
    trailing_stop: Optional[float] = None
    take_profit: Optional[float] = None
    ai_exit_conditions: Optional[str] = None  # raw JSON, decoded by payloads.decode_exit_conditions
    account_type: str = "INVEST"
    updated_at: Optional[datetime] = None

    @property
    def effective_stop(self) -> Optional[float]:
        """Trailing stop when one is set, otherwise the fixed stop-loss."""
        return self.trailing_stop if self.trailing_stop is not None else self.stop_loss

    def profit_ratio(self, price: Optional[float] = None) -> float:
        """Profit as a ratio of entry price (0.05 = +5%)."""
        price = self.current_price if price is None else price
        return (price - self.entry_price) / self.entry_price


@dataclass
class ConditionalOrder:
    """A conditional order as stored (payloads still encoded)."""
    id: int
    symbol: str
    trigger_type: str
    trigger_condition: str  # raw JSON
    action: str  # raw JSON
    status: str
    created_at: datetime
    linked_order_id: Optional[int] = None
    oco_group_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    triggered_at: Optional[datetime] = None


@dataclass
class CompletedTrade:
    """Represents a completed trade."""
    id: Optional[int]
    symbol: str
    broker_ticker: str
    side: str
    shares: float
    entry_price: float
    entry_time: datetime
    exit_price: Optional[float]
    exit_time: Optional[datetime]
    exit_reason: Optional[str]
    pnl: Optional[float]
    pnl_pct: Optional[float]
    account_type: str = "INVEST"
    created_at: Optional[datetime] = None
