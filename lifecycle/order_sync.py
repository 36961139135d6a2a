"""
Order status sync with the broker.

Pulls the broker's view of every open local order and moves the local record
along pending -> open -> partially_filled -> filled, or to cancelled/failed
when the broker dropped it. Orders that never got a broker id are failed once
they have been pending for STALE_PENDING_SECONDS.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .models import Order, utcnow
from .order_store import OrderStore
from .trade_logger import log_order_fill
from .trading.base import TradingClient

logger = logging.getLogger(__name__)

STALE_PENDING_SECONDS = 5 * 60

# Broker statuses for an order still resting on the book
WORKING_STATUSES = ("NEW", "WORKING", "PARTIALLY_FILLED")


@dataclass
class OrderSyncResult:
    synced: int = 0
    filled: int = 0
    cancelled: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class OrderSynchronizer:
    """Keeps local order records in line with the broker's order status."""

    def __init__(
        self,
        broker: TradingClient,
        order_store: OrderStore,
        clock: Callable[[], datetime] = utcnow,
        account_type: str = "INVEST",
    ):
        self.broker = broker
        self.order_store = order_store
        self.clock = clock
        self.account_type = account_type  # the broker account this client trades

    def sync_open_orders(self) -> OrderSyncResult:
        result = OrderSyncResult()

        open_orders = [o for o in self.order_store.get_open_orders() if o.account_type == self.account_type]
        if not open_orders:
            logger.debug("No open orders to sync")
            return result

        logger.info(f"Syncing {len(open_orders)} open orders with broker")

        for order in open_orders:
            try:
                status = self.sync_order(order)
            except Exception as e:
                msg = f"Failed to sync order {order.id} ({order.symbol}): {e}"
                logger.error(f"[{order.symbol}] {msg}")
                result.errors.append(msg)
                continue

            if status is None:
                continue
            result.synced += 1
            if status == "filled":
                result.filled += 1
            elif status == "cancelled":
                result.cancelled += 1
            elif status == "failed":
                result.failed += 1

        logger.info(
            f"Order sync complete: synced={result.synced} filled={result.filled} "
            f"cancelled={result.cancelled} failed={result.failed} errors={len(result.errors)}"
        )
        return result

    def sync_order(self, order: Order) -> Optional[str]:
        """
        Bring one order in line with the broker.

        Returns:
            The new local status, or None when nothing changed.
        """
        if not order.broker_order_id:
            if order.status == "pending":
                age_seconds = (self.clock() - order.created_at).total_seconds()
                if age_seconds > STALE_PENDING_SECONDS:
                    logger.warning(
                        f"[{order.symbol}] Order {order.id} pending for {age_seconds:.0f}s without broker ID, "
                        f"marking failed"
                    )
                    self._check(
                        self.order_store.mark_failed(order.id, "Stale pending order: no broker ID after 5 minutes"),
                        order,
                    )
                    return "failed"
            return None

        if order.is_simulated:
            return None

        remote = self.broker.get_order(order.broker_order_id)

        if remote.status == "FILLED":
            if order.status == "filled":
                return None
            quantity = remote.fill_quantity or 0.0
            price = remote.fill_price
            self._check(
                self.order_store.mark_filled(order.id, filled_quantity=quantity, filled_price=price,
                                             filled_at=self.clock()),
                order,
            )
            logger.info(f"[{order.symbol}] Order {order.id} filled at broker: {quantity} @ {price}")
            log_order_fill(order.symbol, order.side, quantity, price, order.id)
            return "filled"

        if remote.status in ("CANCELLED", "REJECTED"):
            reason = f"Broker status: {remote.status}"
            if remote.status == "CANCELLED":
                self._check(self.order_store.cancel_order(order.id, reason), order)
                status = "cancelled"
            else:
                self._check(self.order_store.mark_failed(order.id, reason), order)
                status = "failed"
            logger.info(f"[{order.symbol}] Order {order.id} {remote.status.lower()} at broker")
            return status

        if remote.status in WORKING_STATUSES:
            filled = abs(remote.filled_quantity or 0.0)
            if 0 < filled < order.requested_quantity and (
                order.status != "partially_filled" or filled > order.filled_quantity
            ):
                price = remote.fill_price
                self._check(
                    self.order_store.update_order_status(
                        order.id, "partially_filled", filled_quantity=filled, filled_price=price
                    ),
                    order,
                )
                logger.info(f"[{order.symbol}] Partial fill on order {order.id}: {filled}/{order.requested_quantity}")
                log_order_fill(order.symbol, order.side, filled, price, order.id, partial=True)
                return "partially_filled"

            if order.status == "pending":
                self._check(self.order_store.update_order_status(order.id, "open"), order)
                return "open"
            return None

        logger.debug(f"[{order.symbol}] Order {order.id} has unhandled broker status {remote.status}")
        return None

    @staticmethod
    def _check(written: bool, order: Order):
        if not written:
            raise RuntimeError(f"Could not persist status change for order {order.id}")
