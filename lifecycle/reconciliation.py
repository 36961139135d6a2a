"""
Position reconciliation against the broker.

The broker's portfolio is the source of truth. Positions we track that the
broker no longer holds were closed outside this system (manually, by a broker
stop, or by a corporate action) and are booked as closed trades. Positions the
broker holds that we do not track, and share-count drift, are only reported.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from .models import CompletedTrade, Position, utcnow
from .position_store import PositionStore
from .trade_logger import log_external_close
from .trade_store import TradeStore
from .trading.base import TradingClient

logger = logging.getLogger(__name__)

EXTERNAL_CLOSE_REASON = "External close (broker sync)"
QUANTITY_TOLERANCE = 0.001


@dataclass
class SyncResult:
    closed_externally: List[str] = field(default_factory=list)  # symbols
    unmanaged: List[str] = field(default_factory=list)  # broker tickers
    mismatched: List[str] = field(default_factory=list)  # symbols
    error: Optional[str] = None


class PositionReconciler:
    """Aligns local positions with the broker's portfolio snapshot."""

    def __init__(
        self,
        broker: TradingClient,
        position_store: PositionStore,
        trade_store: TradeStore,
        clock: Callable[[], datetime] = utcnow,
        account_type: str = "INVEST",
    ):
        self.broker = broker
        self.position_store = position_store
        self.trade_store = trade_store
        self.clock = clock
        self.account_type = account_type  # the broker account this client trades

    def sync_with_broker(self) -> SyncResult:
        result = SyncResult()

        try:
            broker_positions = self.broker.get_portfolio()
        except Exception as e:
            logger.error(f"Failed to fetch broker portfolio, skipping sync: {e}")
            result.error = str(e)
            return result

        # Positions held in another account are not in this portfolio snapshot
        local_positions = [
            p for p in self.position_store.get_all_positions() if p.account_type == self.account_type
        ]
        local_by_ticker = {p.broker_ticker: p for p in local_positions if p.broker_ticker}
        broker_tickers = {bp.key for bp in broker_positions if bp.key}

        # Tracked locally, gone at the broker
        for position in local_positions:
            if position.broker_ticker and position.broker_ticker in broker_tickers:
                continue
            logger.warning(
                f"[{position.symbol}] Position not held at broker ({position.broker_ticker}), "
                f"reconciling as external close"
            )
            try:
                closed = self._close_externally(position)
            except Exception as e:
                logger.error(f"[{position.symbol}] Failed to reconcile external close: {e}")
                continue
            if closed:
                result.closed_externally.append(position.symbol)

        for broker_position in broker_positions:
            ticker = broker_position.key
            position = local_by_ticker.get(ticker) if ticker else None

            if position is None:
                logger.warning(f"Unmanaged broker position {ticker or '<no ticker>'}: {broker_position.quantity} shares")
                result.unmanaged.append(ticker or "")
                continue

            if abs(position.shares - broker_position.quantity) > QUANTITY_TOLERANCE:
                logger.warning(
                    f"[{position.symbol}] Quantity mismatch: local={position.shares} broker={broker_position.quantity}"
                )
                result.mismatched.append(position.symbol)

        logger.info(
            f"Broker sync complete: local={len(local_positions)} broker={len(broker_positions)} "
            f"closed_externally={len(result.closed_externally)} unmanaged={len(result.unmanaged)} "
            f"mismatched={len(result.mismatched)}"
        )
        return result

    def _close_externally(self, position: Position) -> bool:
        exit_price = position.current_price if position.current_price is not None else position.entry_price
        pnl = (exit_price - position.entry_price) * position.shares
        # Return is undefined without a positive entry price
        pnl_pct = (exit_price - position.entry_price) / position.entry_price if position.entry_price > 0 else None

        trade = CompletedTrade(
            id=None,
            symbol=position.symbol,
            broker_ticker=position.broker_ticker,
            side="sell",
            shares=position.shares,
            entry_price=position.entry_price,
            entry_time=position.entry_time,
            exit_price=exit_price,
            exit_time=self.clock(),
            exit_reason=EXTERNAL_CLOSE_REASON,
            pnl=pnl,
            pnl_pct=pnl_pct,
            account_type=position.account_type,
        )
        if self.trade_store.save_trade(trade) is None:
            logger.error(f"[{position.symbol}] Could not record external close, keeping position")
            return False

        self.position_store.delete_position(position.symbol)
        pct_str = f"{pnl_pct * 100:+.2f}%" if pnl_pct is not None else "n/a"
        logger.info(f"[{position.symbol}] Position auto-reconciled: P&L {pnl:+.2f} ({pct_str})")
        log_external_close(position.symbol, position.shares, exit_price, position.entry_price, pnl, pnl_pct)
        return True
