"""
Stale order repricing.

Resting limit and stop orders that have drifted too far from the market are
cancelled and re-created at the current price. The cancel step races the
exchange: an order may fill between our decision and the cancel landing, so
every failed or ambiguous cancel is followed by a status check, and a fill
discovered that way is recorded instead of placing a duplicate order.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import OrderReplacementConfig
from .exceptions import ReplacementChainError
from .models import Order, utcnow
from .order_store import OrderStore
from .position_store import PositionStore
from .quote_provider import QuoteProvider
from .retry import RetryPolicy
from .trade_logger import log_fill_during_cancel, log_replacement
from .trading.base import BrokerOrder, TradingClient

logger = logging.getLogger(__name__)

CANCELLED_STATUSES = ("CANCELLED", "REJECTED")


@dataclass
class ReplaceResult:
    """Summary of one process_open_orders() batch."""
    checked: int = 0
    replaced: int = 0
    skipped: int = 0
    filled_during_cancel: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class ReplaceOrderResult:
    success: bool
    new_order_id: Optional[int] = None
    filled_during_cancel: bool = False
    error: Optional[str] = None


class OrderReplacer:
    """Cancels and re-creates stale limit/stop orders at the current price."""

    def __init__(
        self,
        order_store: OrderStore,
        position_store: PositionStore,
        quote_provider: QuoteProvider,
        config: OrderReplacementConfig,
        broker: Optional[TradingClient] = None,
        dry_run: bool = True,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.order_store = order_store
        self.position_store = position_store
        self.quote_provider = quote_provider
        self.config = config
        self.broker = broker
        self.dry_run = dry_run
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3, delay_seconds=0.5)
        self.clock = clock

    def process_open_orders(self) -> ReplaceResult:
        """Check all open orders and replace the ones that have drifted from market."""
        result = ReplaceResult()

        if not self.config.enabled:
            logger.debug("Order replacement disabled, skipping")
            return result

        open_orders = self.order_store.get_open_orders()
        if not open_orders:
            logger.debug("No open orders to check for replacement")
            return result

        logger.info(f"Checking {len(open_orders)} open orders for replacement")

        for order in open_orders:
            result.checked += 1
            try:
                self._process_order(order, result)
            except Exception as e:
                msg = f"Error replacing order {order.id} ({order.symbol}): {e}"
                logger.error(f"[{order.symbol}] {msg}")
                result.errors.append(msg)

        logger.info(
            f"Order replacement check complete: checked={result.checked} replaced={result.replaced} "
            f"skipped={result.skipped} filled_during_cancel={result.filled_during_cancel} "
            f"errors={len(result.errors)}"
        )
        return result

    def _process_order(self, order: Order, result: ReplaceResult):
        if order.is_protected:
            result.skipped += 1
            return

        # Market orders fill immediately, nothing to reprice
        if order.order_type == "market":
            result.skipped += 1
            return

        age_seconds = (self.clock() - order.created_at).total_seconds()
        if age_seconds < self.config.replace_after_seconds:
            result.skipped += 1
            return

        depth = self.get_replacement_chain_depth(order)
        if depth >= self.config.max_replacements:
            logger.info(
                f"[{order.symbol}] Order {order.id} reached max replacements "
                f"({depth}/{self.config.max_replacements}), skipping"
            )
            result.skipped += 1
            return

        quote = self.quote_provider.get_quote(order.symbol)
        if quote is None:
            logger.warning(f"[{order.symbol}] Could not get current price for replacement check")
            result.skipped += 1
            return

        if not self.should_replace(order, quote.price):
            result.skipped += 1
            return

        outcome = self.replace_order(order.id, quote.price)
        if outcome.success:
            result.replaced += 1
            logger.info(
                f"[{order.symbol}] Order {order.id} replaced by {outcome.new_order_id}: "
                f"{order.requested_price} -> {quote.price}"
            )
        elif outcome.filled_during_cancel:
            result.filled_during_cancel += 1
            logger.info(f"[{order.symbol}] Order {order.id} filled during cancel, no replacement needed")
        else:
            result.errors.append(f"Failed to replace order {order.id} ({order.symbol}): {outcome.error}")

    def should_replace(self, order: Order, current_price: float) -> bool:
        """True when the market has moved more than price_deviation_pct away from the order price."""
        if order.requested_price is None or order.requested_price <= 0:
            return False
        if current_price is None or current_price <= 0:
            return False

        deviation = abs(current_price - order.requested_price) / order.requested_price
        return deviation > self.config.price_deviation_pct

    def replace_order(self, order_id: int, new_price: float) -> ReplaceOrderResult:
        """Replace a single order with a new price."""
        order = self.order_store.get_order(order_id)
        if order is None:
            return ReplaceOrderResult(success=False, error=f"Order {order_id} not found")

        if order.is_protected:
            return ReplaceOrderResult(success=False, error=f"Cannot replace {order.order_tag} order")

        if self.dry_run:
            return self._replace_dry_run(order, new_price)
        return self._replace_live(order, new_price)

    def get_replacement_chain_depth(self, order: Order) -> int:
        """Count how many times the original order has been replaced to reach this one."""
        depth = 0
        seen = {order.id}
        parent = self.order_store.find_order_replaced_by(order.id)

        while parent is not None:
            depth += 1
            if parent.id in seen:
                logger.warning(f"[{order.symbol}] Replacement chain loops at order {parent.id}")
                break
            seen.add(parent.id)
            parent = self.order_store.find_order_replaced_by(parent.id)

        return depth

    # ── Dry run ──────────────────────────────────────────────────────

    def _replace_dry_run(self, order: Order, new_price: float) -> ReplaceOrderResult:
        now = self.clock()

        self.order_store.cancel_order(order.id, "replaced")

        new_order_id = self._create_replacement_record(order, new_price)
        if new_order_id is None:
            return ReplaceOrderResult(success=False, error="Failed to persist replacement order")

        error = self._link(order, new_order_id)
        if error:
            return ReplaceOrderResult(success=False, new_order_id=new_order_id, error=error)

        millis = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
        self.order_store.mark_filled(
            new_order_id,
            filled_quantity=order.requested_quantity,
            filled_price=new_price,
            broker_order_id=f"dry_run_replace_{order.side}_{order.symbol}_{millis}",
            filled_at=now,
        )

        logger.info(
            f"[{order.symbol}] Simulated replacement: order {order.id} -> {new_order_id} "
            f"({order.requested_price} -> {new_price})"
        )
        log_replacement(order.symbol, order.side, order.requested_quantity, order.requested_price,
                        new_price, order.id, new_order_id, dry_run=True)
        return ReplaceOrderResult(success=True, new_order_id=new_order_id)

    # ── Live ─────────────────────────────────────────────────────────

    def _replace_live(self, order: Order, new_price: float) -> ReplaceOrderResult:
        if self.broker is None:
            return ReplaceOrderResult(success=False, error="Broker client not initialized")
        if not order.broker_order_id:
            return ReplaceOrderResult(success=False, error="Order has no broker ID, cannot cancel on exchange")
        if order.is_simulated:
            return ReplaceOrderResult(success=False, error="Cannot replace dry-run order in live mode")

        broker_id = order.broker_order_id

        # Step 1: cancel, checking for a fill after every failure
        cancelled = False
        remote: Optional[BrokerOrder] = None
        for attempt in self.retry_policy.attempts():
            try:
                self.broker.cancel_order(broker_id)
                cancelled = True
                break
            except Exception as e:
                logger.warning(
                    f"[{order.symbol}] Cancel attempt {attempt}/{self.retry_policy.max_attempts} "
                    f"failed for order {order.id} ({broker_id}): {e}"
                )

            try:
                remote = self.broker.get_order(broker_id)
            except Exception as e:
                logger.error(f"[{order.symbol}] Failed to check order {broker_id} status after cancel failure: {e}")
                self.retry_policy.wait(attempt)
                continue

            if remote.status == "FILLED":
                return self._record_fill_during_cancel(order, remote)
            if remote.status in CANCELLED_STATUSES:
                cancelled = True
                break
            self.retry_policy.wait(attempt)

        if not cancelled:
            return ReplaceOrderResult(
                success=False,
                error=f"Failed to cancel order {order.id} after {self.retry_policy.max_attempts} attempts",
            )

        # Step 2: verify, the order may have filled while the cancel was in flight
        try:
            remote = self.broker.get_order(broker_id)
            if remote.status == "FILLED":
                return self._record_fill_during_cancel(order, remote)
            if remote.status not in CANCELLED_STATUSES:
                return ReplaceOrderResult(
                    success=False,
                    error=f"Order status after cancel is '{remote.status}', expected CANCELLED",
                )
        except Exception as e:
            logger.warning(f"[{order.symbol}] Could not verify cancel of {broker_id}, proceeding with replacement: {e}")

        # Step 3: old order is gone at the broker
        self.order_store.cancel_order(order.id, "replaced")

        # Step 4: broker instrument ticker
        ticker = self._resolve_broker_ticker(order, remote)
        if not ticker:
            return ReplaceOrderResult(success=False, error=f"Could not resolve broker ticker for {order.symbol}")

        # Step 5: place the new order. The old one stays cancelled if this fails.
        try:
            if order.order_type == "limit":
                placed = self.broker.place_limit_order(ticker, order.requested_quantity, new_price, order.side)
            elif order.order_type == "stop":
                placed = self.broker.place_stop_order(ticker, order.requested_quantity, new_price, order.side)
            else:
                placed = self.broker.place_market_order(ticker, order.requested_quantity, order.side)

            new_order_id = self._create_replacement_record(order, new_price)
            if new_order_id is None:
                return ReplaceOrderResult(
                    success=False,
                    error=f"Replacement placed at broker ({placed.order_id}) but not persisted locally",
                )
            self.order_store.update_order_status(new_order_id, "open", broker_order_id=placed.order_id)

            error = self._link(order, new_order_id)
            if error:
                return ReplaceOrderResult(success=False, new_order_id=new_order_id, error=error)
        except Exception as e:
            logger.error(f"[{order.symbol}] Failed to place replacement for order {order.id}: {e}")
            return ReplaceOrderResult(success=False, error=f"Failed to place replacement: {e}")

        logger.info(
            f"[{order.symbol}] Order {order.id} replaced on exchange by {new_order_id} "
            f"(broker id {placed.order_id}): {order.requested_price} -> {new_price}"
        )
        log_replacement(order.symbol, order.side, order.requested_quantity, order.requested_price,
                        new_price, order.id, new_order_id, dry_run=False)
        return ReplaceOrderResult(success=True, new_order_id=new_order_id)

    # ── Helpers ──────────────────────────────────────────────────────

    def _create_replacement_record(self, order: Order, new_price: float) -> Optional[int]:
        return self.order_store.create_order(
            symbol=order.symbol,
            side=order.side,
            order_type=order.order_type,
            requested_quantity=order.requested_quantity,
            requested_price=new_price,
            stop_price=new_price if order.order_type == "stop" else order.stop_price,
            order_tag=order.order_tag or "entry",
            account_type=order.account_type,
            position_id=order.position_id,
            created_at=self.clock(),
        )

    def _link(self, order: Order, new_order_id: int) -> Optional[str]:
        """Link old -> new. Returns an error message on failure."""
        try:
            if not self.order_store.set_replaced_by_order_id(order.id, new_order_id):
                return f"Failed to link order {order.id} to replacement {new_order_id}"
        except ReplacementChainError as e:
            logger.error(f"[{order.symbol}] {e}")
            return str(e)
        return None

    def _record_fill_during_cancel(self, order: Order, remote: BrokerOrder) -> ReplaceOrderResult:
        fill_qty = remote.fill_quantity or 0.0
        fill_price = remote.fill_price
        self.order_store.mark_filled(order.id, filled_quantity=fill_qty, filled_price=fill_price,
                                     filled_at=self.clock())
        logger.info(f"[{order.symbol}] Order {order.id} filled during cancel @ {fill_price}")
        log_fill_during_cancel(order.symbol, order.side, fill_qty, fill_price, order.id)
        return ReplaceOrderResult(success=False, filled_during_cancel=True)

    def _resolve_broker_ticker(self, order: Order, remote: Optional[BrokerOrder]) -> Optional[str]:
        """Ticker from the cancelled broker order, else from the local position."""
        if remote is None or not remote.resolved_ticker:
            try:
                remote = self.broker.get_order(order.broker_order_id)
            except Exception as e:
                logger.debug(f"[{order.symbol}] Could not fetch order {order.broker_order_id} for ticker: {e}")
                remote = None

        if remote is not None and remote.resolved_ticker:
            return remote.resolved_ticker

        position = self.position_store.get_position(order.symbol)
        if position and position.broker_ticker:
            return position.broker_ticker
        return None
