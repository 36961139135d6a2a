"""Store for conditional (trigger-based) orders and OCO groups."""

import logging
from datetime import datetime
from typing import List, Optional

from .base_store import BaseStore
from .database import ConditionalOrderDB
from .models import ConditionalOrder, utcnow

logger = logging.getLogger(__name__)


class ConditionalOrderStore(BaseStore):
    """CRUD operations for conditional orders."""

    def create(
        self,
        symbol: str,
        trigger_type: str,
        trigger_condition: str,
        action: str,
        expires_at: Optional[datetime] = None,
        oco_group_id: Optional[str] = None,
        linked_order_id: Optional[int] = None,
    ) -> int:
        """
        Create a pending conditional order from already-encoded payloads.

        Returns:
            The new order ID. Database errors propagate to the caller.
        """
        with self._db_session() as session:
            order = ConditionalOrderDB(
                symbol=symbol,
                trigger_type=trigger_type,
                trigger_condition=trigger_condition,
                action=action,
                status="pending",
                expires_at=expires_at,
                oco_group_id=oco_group_id,
                linked_order_id=linked_order_id,
                created_at=utcnow(),
            )
            session.add(order)
            session.flush()
            order_id = order.id
        logger.info(f"[{symbol}] Created conditional order {order_id} ({trigger_type})")
        return order_id

    def set_linked_order_id(self, order_id: int, linked_order_id: int) -> bool:
        with self._db_session() as session:
            order = session.query(ConditionalOrderDB).filter(ConditionalOrderDB.id == order_id).first()
            if not order:
                return False
            order.linked_order_id = linked_order_id
            return True

    def get_order(self, order_id: int) -> Optional[ConditionalOrder]:
        with self._db_session() as session:
            row = session.query(ConditionalOrderDB).filter(ConditionalOrderDB.id == order_id).first()
            return self._db_to_order(row) if row else None

    def get_active_orders(self, symbol: Optional[str] = None) -> List[ConditionalOrder]:
        """Get pending conditional orders, oldest first."""
        with self._db_session() as session:
            query = session.query(ConditionalOrderDB).filter(ConditionalOrderDB.status == "pending")
            if symbol:
                query = query.filter(ConditionalOrderDB.symbol == symbol)
            rows = query.order_by(ConditionalOrderDB.created_at.asc(), ConditionalOrderDB.id.asc()).all()
            return [self._db_to_order(row) for row in rows]

    def count_active(self) -> int:
        with self._db_session() as session:
            return session.query(ConditionalOrderDB).filter(ConditionalOrderDB.status == "pending").count()

    def get_expired_orders(self, now: datetime) -> List[ConditionalOrder]:
        """Get pending orders whose expiry has passed."""
        with self._db_session() as session:
            rows = session.query(ConditionalOrderDB).filter(
                ConditionalOrderDB.status == "pending",
                ConditionalOrderDB.expires_at.isnot(None),
                ConditionalOrderDB.expires_at < now,
            ).all()
            return [self._db_to_order(row) for row in rows]

    def get_oco_group(self, oco_group_id: str) -> List[ConditionalOrder]:
        with self._db_session() as session:
            rows = session.query(ConditionalOrderDB).filter(
                ConditionalOrderDB.oco_group_id == oco_group_id
            ).order_by(ConditionalOrderDB.id.asc()).all()
            return [self._db_to_order(row) for row in rows]

    def count_triggered_since(self, since: datetime) -> int:
        with self._db_session() as session:
            return session.query(ConditionalOrderDB).filter(
                ConditionalOrderDB.triggered_at.isnot(None),
                ConditionalOrderDB.triggered_at >= since,
            ).count()

    def update_status(self, order_id: int, status: str) -> bool:
        """Set the status of an order. Returns False if it does not exist."""
        with self._db_session() as session:
            order = session.query(ConditionalOrderDB).filter(ConditionalOrderDB.id == order_id).first()
            if not order:
                return False
            order.status = status
            logger.info(f"[{order.symbol}] Conditional order {order_id} -> {status}")
            return True

    def mark_triggered(self, order_id: int, triggered_at: datetime) -> List[int]:
        """
        Mark an order triggered and cancel its pending OCO siblings.

        Both writes happen in one transaction, so a group can never end up
        with two triggered members. Returns the IDs of the cancelled
        siblings. Raises ValueError if the order is no longer pending.
        """
        with self._db_session() as session:
            order = session.query(ConditionalOrderDB).filter(ConditionalOrderDB.id == order_id).first()
            if not order or order.status != "pending":
                raise ValueError(f"Conditional order {order_id} is not pending")

            order.status = "triggered"
            order.triggered_at = triggered_at

            cancelled = []
            if order.oco_group_id:
                siblings = session.query(ConditionalOrderDB).filter(
                    ConditionalOrderDB.oco_group_id == order.oco_group_id,
                    ConditionalOrderDB.id != order_id,
                    ConditionalOrderDB.status == "pending",
                ).all()
                for sibling in siblings:
                    sibling.status = "cancelled"
                    cancelled.append(sibling.id)

            symbol = order.symbol

        logger.info(f"[{symbol}] Conditional order {order_id} triggered")
        if cancelled:
            logger.info(f"[{symbol}] OCO: cancelled sibling orders {cancelled}")
        return cancelled

    def _db_to_order(self, row: ConditionalOrderDB) -> ConditionalOrder:
        return ConditionalOrder(
            id=row.id,
            symbol=row.symbol,
            trigger_type=row.trigger_type,
            trigger_condition=row.trigger_condition,
            action=row.action,
            status=row.status,
            created_at=row.created_at,
            linked_order_id=row.linked_order_id,
            oco_group_id=row.oco_group_id,
            expires_at=row.expires_at,
            triggered_at=row.triggered_at,
        )
