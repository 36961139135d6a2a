"""Conditional orders: price/time triggers and one-cancels-other pairs."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .config import ConditionalOrderConfig
from .conditional_order_store import ConditionalOrderStore
from .exceptions import ConditionalOrderError, PayloadError
from .models import TRIGGER_TYPES, ConditionalOrder, to_naive_utc, utcnow
from .payloads import (
    OrderAction,
    TriggerCondition,
    decode_action,
    decode_trigger_condition,
    encode_action,
    encode_trigger_condition,
)
from .trade_logger import log_conditional_trigger

logger = logging.getLogger(__name__)


@dataclass
class CreateOrderParams:
    symbol: str
    trigger_type: str  # price_above, price_below, time, indicator
    trigger_condition: TriggerCondition
    action: OrderAction
    expires_at: Optional[datetime] = None


@dataclass
class TriggeredAction:
    """An action released by a fired conditional order, for the executor to carry out."""
    order_id: int
    symbol: str
    action: OrderAction


@dataclass
class ConditionalOrderStatus:
    active_count: int
    triggered_today: int
    by_type: Dict[str, int] = field(default_factory=dict)


class ConditionalOrderManager:
    """Creates conditional orders and fires them when their trigger is met."""

    def __init__(
        self,
        store: ConditionalOrderStore,
        config: ConditionalOrderConfig,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def create_order(self, params: CreateOrderParams) -> int:
        """Create a single conditional order. Raises ConditionalOrderError if rejected."""
        self._require_enabled()

        active = self.store.count_active()
        if active >= self.config.max_active:
            logger.warning(f"Max active conditional orders reached ({active}/{self.config.max_active})")
            raise ConditionalOrderError(f"Max active orders limit ({self.config.max_active}) reached")

        expires_at = self._check_expiry(params.expires_at, "Order")
        trigger_condition, action = self._encode(params)

        order_id = self.store.create(
            symbol=params.symbol,
            trigger_type=params.trigger_type,
            trigger_condition=trigger_condition,
            action=action,
            expires_at=expires_at,
        )
        logger.info(f"[{params.symbol}] Conditional order {order_id} created ({params.trigger_type})")
        return order_id

    def create_oco_pair(self, order1: CreateOrderParams, order2: CreateOrderParams) -> Tuple[int, int]:
        """
        Create two orders where the first to trigger cancels the other.

        Returns:
            (id1, id2)
        """
        self._require_enabled()

        if order1.symbol != order2.symbol:
            logger.warning(f"OCO orders must have same symbol ({order1.symbol} vs {order2.symbol})")
            raise ConditionalOrderError("OCO orders must have the same symbol")

        active = self.store.count_active()
        if active + 2 > self.config.max_active:
            logger.warning(f"Max active conditional orders reached ({active}/{self.config.max_active})")
            raise ConditionalOrderError(f"Max active orders limit ({self.config.max_active}) reached")

        expires1 = self._check_expiry(order1.expires_at, "Order 1")
        expires2 = self._check_expiry(order2.expires_at, "Order 2")
        condition1, action1 = self._encode(order1)
        condition2, action2 = self._encode(order2)

        group_id = str(uuid.uuid4())

        id1 = self.store.create(
            symbol=order1.symbol,
            trigger_type=order1.trigger_type,
            trigger_condition=condition1,
            action=action1,
            expires_at=expires1,
            oco_group_id=group_id,
        )
        id2 = self.store.create(
            symbol=order2.symbol,
            trigger_type=order2.trigger_type,
            trigger_condition=condition2,
            action=action2,
            expires_at=expires2,
            oco_group_id=group_id,
            linked_order_id=id1,
        )
        self.store.set_linked_order_id(id1, id2)

        logger.info(f"[{order1.symbol}] OCO pair created: {id1} <-> {id2} (group {group_id})")
        return id1, id2

    def check_triggers(self, prices: Mapping[str, float]) -> List[TriggeredAction]:
        """Fire every pending order whose condition is met by the given prices or the clock."""
        if not self.config.enabled:
            return []

        now = self.clock()
        triggered = []
        cancelled_in_batch = set()

        for order in self.store.get_active_orders():
            if order.id in cancelled_in_batch:
                continue

            try:
                fired = self._is_triggered(order, prices, now)
            except PayloadError as e:
                logger.warning(f"[{order.symbol}] Skipping conditional order {order.id}: {e}")
                continue
            if not fired:
                continue

            try:
                cancelled = self.store.mark_triggered(order.id, now)
            except ValueError as e:
                logger.info(f"[{order.symbol}] {e}, skipping")
                continue
            cancelled_in_batch.update(cancelled)

            try:
                action = decode_action(order.action)
            except PayloadError as e:
                logger.error(f"[{order.symbol}] Failed to parse action of conditional order {order.id}: {e}")
                continue

            triggered.append(TriggeredAction(order_id=order.id, symbol=order.symbol, action=action))
            logger.info(f"[{order.symbol}] Conditional order {order.id} triggered ({order.trigger_type})")
            log_conditional_trigger(order.symbol, order.id, order.trigger_type, action.type)

        return triggered

    def _is_triggered(self, order: ConditionalOrder, prices: Mapping[str, float], now: datetime) -> bool:
        if order.trigger_type in ("price_above", "price_below"):
            price = prices.get(order.symbol)
            if price is None:
                return False
            condition = decode_trigger_condition(order.trigger_type, order.trigger_condition)
            if order.trigger_type == "price_above":
                return price >= condition.price
            return price <= condition.price

        if order.trigger_type == "time":
            condition = decode_trigger_condition(order.trigger_type, order.trigger_condition)
            return now >= condition.trigger_at

        if order.trigger_type == "indicator":
            logger.debug(f"[{order.symbol}] Indicator triggers are not evaluated (order {order.id})")
            return False

        raise PayloadError(f"Unknown trigger type '{order.trigger_type}'")

    def expire_old_orders(self) -> int:
        """Expire pending orders past their expiry. Returns how many were expired."""
        if not self.config.enabled:
            return 0

        expired = self.store.get_expired_orders(self.clock())
        for order in expired:
            self.store.update_status(order.id, "expired")
            logger.info(f"[{order.symbol}] Conditional order {order.id} expired")
        return len(expired)

    def cancel_order(self, order_id: int):
        self._require_enabled()

        order = self.store.get_order(order_id)
        if order is None:
            raise ConditionalOrderError(f"Order {order_id} not found")
        if order.status != "pending":
            raise ConditionalOrderError(f"Order {order_id} is not pending (status: {order.status})")

        self.store.update_status(order_id, "cancelled")
        logger.info(f"[{order.symbol}] Conditional order {order_id} cancelled")

    def cancel_all_for_symbol(self, symbol: str) -> int:
        if not self.config.enabled:
            return 0

        orders = self.store.get_active_orders(symbol)
        for order in orders:
            self.store.update_status(order.id, "cancelled")
        logger.info(f"[{symbol}] Cancelled {len(orders)} conditional orders")
        return len(orders)

    def get_status(self) -> ConditionalOrderStatus:
        active = self.store.get_active_orders()
        by_type = {trigger_type: 0 for trigger_type in TRIGGER_TYPES}
        for order in active:
            by_type[order.trigger_type] = by_type.get(order.trigger_type, 0) + 1

        start_of_day = datetime.combine(self.clock().date(), time.min)
        return ConditionalOrderStatus(
            active_count=len(active),
            triggered_today=self.store.count_triggered_since(start_of_day),
            by_type=by_type,
        )

    def _require_enabled(self):
        if not self.config.enabled:
            logger.warning("Conditional orders feature is disabled")
            raise ConditionalOrderError("Conditional orders feature is disabled")

    def _check_expiry(self, expires_at: Optional[datetime], label: str) -> Optional[datetime]:
        if expires_at is None:
            return None
        expires_at = to_naive_utc(expires_at)
        if expires_at < self.clock():
            logger.warning(f"{label} expiration {expires_at} is in the past")
            raise ConditionalOrderError(f"{label} expiration time is in the past")
        return expires_at

    def _encode(self, params: CreateOrderParams) -> Tuple[str, str]:
        try:
            return (
                encode_trigger_condition(params.trigger_type, params.trigger_condition),
                encode_action(params.action),
            )
        except PayloadError as e:
            raise ConditionalOrderError(str(e)) from e
