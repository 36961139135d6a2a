"""Order persistence and replacement-chain bookkeeping."""

import logging
from datetime import datetime
from typing import List, Optional

from .base_store import BaseStore
from .database import OrderDB
from .exceptions import ReplacementChainError
from .models import OPEN_ORDER_STATUSES, Order, utcnow

logger = logging.getLogger(__name__)


class OrderStore(BaseStore):
    """CRUD operations for orders."""

    def create_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        requested_quantity: float,
        requested_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        order_tag: Optional[str] = None,
        account_type: str = "INVEST",
        position_id: Optional[int] = None,
        broker_order_id: Optional[str] = None,
        status: str = "pending",
        created_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Create a new order record.

        Returns:
            Order ID if successful, None otherwise.
        """
        try:
            with self._db_session() as session:
                order = OrderDB(
                    symbol=symbol,
                    side=side,
                    order_type=order_type,
                    requested_quantity=requested_quantity,
                    requested_price=requested_price,
                    stop_price=stop_price,
                    order_tag=order_tag,
                    account_type=account_type,
                    position_id=position_id,
                    broker_order_id=broker_order_id,
                    status=status,
                    created_at=created_at or utcnow(),
                )
                session.add(order)
                session.flush()  # Get the ID before commit
                order_id = order.id
                price_str = f"@ {requested_price}" if requested_price is not None else "@ market"
                logger.info(f"[{symbol}] Created order {order_id}: {side} {requested_quantity} {price_str} ({order_type})")
                return order_id
        except Exception as e:
            logger.error(f"[{symbol}] Failed to create order: {e}")
            return None

    def update_order_status(
        self,
        order_id: int,
        status: str,
        broker_order_id: Optional[str] = None,
        filled_quantity: Optional[float] = None,
        filled_price: Optional[float] = None,
        filled_at: Optional[datetime] = None,
    ) -> bool:
        """Update order status and, optionally, fill info and broker id."""
        try:
            with self._db_session() as session:
                order = session.query(OrderDB).filter(OrderDB.id == order_id).first()
                if not order:
                    return False

                order.status = status
                if broker_order_id is not None:
                    order.broker_order_id = broker_order_id
                if filled_quantity is not None:
                    order.filled_quantity = filled_quantity
                if filled_price is not None:
                    order.filled_price = filled_price
                if filled_at is not None:
                    order.filled_at = filled_at
                order.updated_at = utcnow()

                logger.info(f"[{order.symbol}] Updated order {order.id}: status={status}, filled={filled_quantity}")
                return True
        except Exception as e:
            logger.error(f"Failed to update order {order_id} status: {e}")
            return False

    def mark_filled(
        self,
        order_id: int,
        filled_quantity: float,
        filled_price: Optional[float],
        broker_order_id: Optional[str] = None,
        filled_at: Optional[datetime] = None,
    ) -> bool:
        """Record a complete fill."""
        return self.update_order_status(
            order_id,
            "filled",
            broker_order_id=broker_order_id,
            filled_quantity=filled_quantity,
            filled_price=filled_price,
            filled_at=filled_at or utcnow(),
        )

    def cancel_order(self, order_id: int, reason: str) -> bool:
        """Mark an order cancelled with a reason."""
        return self._close_order(order_id, "cancelled", reason)

    def mark_failed(self, order_id: int, reason: str) -> bool:
        """Mark an order failed (rejected or never reached the broker)."""
        return self._close_order(order_id, "failed", reason)

    def _close_order(self, order_id: int, status: str, reason: str) -> bool:
        try:
            with self._db_session() as session:
                order = session.query(OrderDB).filter(OrderDB.id == order_id).first()
                if not order:
                    return False

                order.status = status
                order.cancel_reason = reason
                order.updated_at = utcnow()
                logger.info(f"[{order.symbol}] Order {order.id} {status} (reason={reason})")
                return True
        except Exception as e:
            logger.error(f"Failed to set order {order_id} to {status}: {e}")
            return False

    def set_replaced_by_order_id(self, order_id: int, new_order_id: int) -> bool:
        """
        Link an order to the order that superseded it.

        The link is write-once and the chain must stay acyclic, so self-links,
        re-links and links whose target already leads back to order_id are
        rejected with ReplacementChainError.

        Returns:
            True if the link was written, False on a database error.
        """
        if order_id == new_order_id:
            raise ReplacementChainError(f"Order {order_id} cannot replace itself")

        try:
            with self._db_session() as session:
                order = session.query(OrderDB).filter(OrderDB.id == order_id).first()
                if not order:
                    raise ReplacementChainError(f"Order {order_id} not found")
                if order.replaced_by_order_id is not None:
                    raise ReplacementChainError(
                        f"Order {order_id} already replaced by {order.replaced_by_order_id}"
                    )

                # Walk forward from the new order; reaching order_id would close a loop
                seen = set()
                current_id = new_order_id
                while current_id is not None and current_id not in seen:
                    if current_id == order_id:
                        raise ReplacementChainError(
                            f"Linking order {order_id} -> {new_order_id} would create a cycle"
                        )
                    seen.add(current_id)
                    current = session.query(OrderDB).filter(OrderDB.id == current_id).first()
                    if current is None:
                        if current_id == new_order_id:
                            raise ReplacementChainError(f"Replacement order {new_order_id} not found")
                        break
                    current_id = current.replaced_by_order_id

                order.replaced_by_order_id = new_order_id
                order.updated_at = utcnow()
                logger.info(f"[{order.symbol}] Order {order_id} replaced by {new_order_id}")
                return True
        except ReplacementChainError:
            raise
        except Exception as e:
            logger.error(f"Failed to link order {order_id} -> {new_order_id}: {e}")
            return False

    def get_order(self, order_id: int) -> Optional[Order]:
        """Get an order by ID."""
        with self._db_session() as session:
            row = session.query(OrderDB).filter(OrderDB.id == order_id).first()
            return self._db_to_order(row) if row else None

    def get_open_orders(self) -> List[Order]:
        """Get every order still resting at the broker, oldest first."""
        with self._db_session() as session:
            rows = session.query(OrderDB).filter(
                OrderDB.status.in_(OPEN_ORDER_STATUSES)
            ).order_by(OrderDB.created_at.asc(), OrderDB.id.asc()).all()
            return [self._db_to_order(row) for row in rows]

    def get_orders_by_symbol(self, symbol: str, limit: int = 100) -> List[Order]:
        """Get recent orders for a symbol, newest first."""
        with self._db_session() as session:
            rows = session.query(OrderDB).filter(
                OrderDB.symbol == symbol
            ).order_by(OrderDB.created_at.desc(), OrderDB.id.desc()).limit(limit).all()
            return [self._db_to_order(row) for row in rows]

    def find_order_replaced_by(self, order_id: int) -> Optional[Order]:
        """Get the order that order_id superseded (its predecessor in the chain)."""
        with self._db_session() as session:
            row = session.query(OrderDB).filter(
                OrderDB.replaced_by_order_id == order_id
            ).first()
            return self._db_to_order(row) if row else None

    def _db_to_order(self, row: OrderDB) -> Order:
        """Convert database row to Order."""
        return Order(
            id=row.id,
            symbol=row.symbol,
            side=row.side,
            order_type=row.order_type,
            status=row.status,
            requested_quantity=row.requested_quantity,
            created_at=row.created_at,
            requested_price=row.requested_price,
            stop_price=row.stop_price,
            filled_quantity=row.filled_quantity or 0.0,
            filled_price=row.filled_price,
            filled_at=row.filled_at,
            order_tag=row.order_tag,
            broker_order_id=row.broker_order_id,
            cancel_reason=row.cancel_reason,
            replaced_by_order_id=row.replaced_by_order_id,
            account_type=row.account_type,
            position_id=row.position_id,
            updated_at=row.updated_at,
        )
