"""Persistence for closed trades."""

import logging
from datetime import datetime
from typing import List, Optional

from .base_store import BaseStore
from .database import TradeDB
from .models import CompletedTrade

logger = logging.getLogger(__name__)


class TradeStore(BaseStore):
    """Store for saving/loading completed trades."""

    def save_trade(self, trade: CompletedTrade) -> Optional[int]:
        """
        Save a completed trade to the database.

        Returns:
            ID of the saved trade, or None on failure.
        """
        try:
            with self._db_session() as session:
                row = TradeDB(
                    symbol=trade.symbol,
                    broker_ticker=trade.broker_ticker,
                    side=trade.side,
                    shares=trade.shares,
                    entry_price=trade.entry_price,
                    exit_price=trade.exit_price,
                    pnl=trade.pnl,
                    pnl_pct=trade.pnl_pct,
                    entry_time=trade.entry_time,
                    exit_time=trade.exit_time,
                    exit_reason=trade.exit_reason,
                    account_type=trade.account_type,
                )
                session.add(row)
                session.flush()
                trade_id = row.id
            pnl_str = f"{trade.pnl_pct * 100:+.2f}%" if trade.pnl_pct is not None else "n/a"
            logger.info(f"[{trade.symbol}] Saved trade {trade_id}: {pnl_str} ({trade.exit_reason})")
            return trade_id
        except Exception as e:
            logger.error(f"[{trade.symbol}] Failed to save trade: {e}")
            return None

    def get_trades(
        self,
        symbol: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[CompletedTrade]:
        """
        Load trades with optional filters.

        Args:
            symbol: Filter by symbol
            start: Filter by exit time >= start
            end: Filter by exit time <= end
            limit: Max number of trades to return
        """
        with self._db_session() as session:
            query = session.query(TradeDB)

            if symbol:
                query = query.filter(TradeDB.symbol == symbol)
            if start:
                query = query.filter(TradeDB.exit_time >= start)
            if end:
                query = query.filter(TradeDB.exit_time <= end)

            rows = query.order_by(TradeDB.exit_time.desc(), TradeDB.id.desc()).limit(limit).all()
            return [self._db_to_trade(row) for row in rows]

    def _db_to_trade(self, row: TradeDB) -> CompletedTrade:
        """Convert database row to CompletedTrade."""
        return CompletedTrade(
            id=row.id,
            symbol=row.symbol,
            broker_ticker=row.broker_ticker,
            side=row.side,
            shares=row.shares,
            entry_price=row.entry_price,
            entry_time=row.entry_time,
            exit_price=row.exit_price,
            exit_time=row.exit_time,
            exit_reason=row.exit_reason,
            pnl=row.pnl,
            pnl_pct=row.pnl_pct,
            account_type=row.account_type,
            created_at=row.created_at,
        )
