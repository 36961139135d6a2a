"""Store for open positions."""

import logging
from datetime import datetime
from typing import List, Optional

from .base_store import BaseStore
from .database import PositionDB
from .models import Position, utcnow
from .payloads import AiExitConditions, encode_exit_conditions

logger = logging.getLogger(__name__)


class PositionStore(BaseStore):
    """CRUD operations for open positions."""

    def create_position(
        self,
        symbol: str,
        broker_ticker: str,
        shares: float,
        entry_price: float,
        entry_time: Optional[datetime] = None,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
        ai_exit_conditions: Optional[AiExitConditions] = None,
        account_type: str = "INVEST",
    ) -> Optional[int]:
        """Create a position record. Returns its ID, or None on failure."""
        try:
            with self._db_session() as session:
                position = PositionDB(
                    symbol=symbol,
                    broker_ticker=broker_ticker,
                    shares=shares,
                    entry_price=entry_price,
                    entry_time=entry_time or utcnow(),
                    current_price=entry_price,
                    pnl=0.0,
                    pnl_pct=0.0,
                    stop_loss=stop_loss,
                    take_profit=take_profit,
                    ai_exit_conditions=(
                        encode_exit_conditions(ai_exit_conditions) if ai_exit_conditions else None
                    ),
                    account_type=account_type,
                )
                session.add(position)
                session.flush()
                position_id = position.id
            logger.info(f"[{symbol}] Opened position: {shares} @ {entry_price} ({broker_ticker})")
            return position_id
        except Exception as e:
            logger.error(f"[{symbol}] Failed to create position: {e}")
            return None

    def update_price(self, symbol: str, current_price: float, pnl: float, pnl_pct: float) -> bool:
        """Update price tracking for a position."""
        try:
            with self._db_session() as session:
                position = session.query(PositionDB).filter(PositionDB.symbol == symbol).first()
                if position:
                    position.current_price = current_price
                    position.pnl = pnl
                    position.pnl_pct = pnl_pct
                    position.updated_at = utcnow()
                    return True
                return False
        except Exception as e:
            logger.error(f"[{symbol}] Failed to update position price: {e}")
            return False

    def update_trailing_stop(self, symbol: str, trailing_stop: float) -> bool:
        try:
            with self._db_session() as session:
                position = session.query(PositionDB).filter(PositionDB.symbol == symbol).first()
                if position:
                    position.trailing_stop = trailing_stop
                    position.updated_at = utcnow()
                    return True
                return False
        except Exception as e:
            logger.error(f"[{symbol}] Failed to update trailing stop: {e}")
            return False

    def delete_position(self, symbol: str) -> bool:
        """Delete a position (when it is closed)."""
        try:
            with self._db_session() as session:
                position = session.query(PositionDB).filter(PositionDB.symbol == symbol).first()
                if position:
                    session.delete(position)
                    logger.info(f"[{symbol}] Deleted position from database")
                    return True
                return False
        except Exception as e:
            logger.error(f"[{symbol}] Failed to delete position: {e}")
            return False

    def get_position(self, symbol: str) -> Optional[Position]:
        with self._db_session() as session:
            row = session.query(PositionDB).filter(PositionDB.symbol == symbol).first()
            return self._db_to_position(row) if row else None

    def get_all_positions(self) -> List[Position]:
        """Get all open positions."""
        with self._db_session() as session:
            rows = session.query(PositionDB).order_by(PositionDB.symbol).all()
            return [self._db_to_position(row) for row in rows]

    def _db_to_position(self, row: PositionDB) -> Position:
        return Position(
            id=row.id,
            symbol=row.symbol,
            broker_ticker=row.broker_ticker,
            shares=row.shares,
            entry_price=row.entry_price,
            entry_time=row.entry_time,
            current_price=row.current_price,
            pnl=row.pnl,
            pnl_pct=row.pnl_pct,
            stop_loss=row.stop_loss,
            trailing_stop=row.trailing_stop,
            take_profit=row.take_profit,
            ai_exit_conditions=row.ai_exit_conditions,
            account_type=row.account_type,
            updated_at=row.updated_at,
        )
