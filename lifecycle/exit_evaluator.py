"""
Exit checks for open positions.

Conditions are evaluated in a fixed order and the first match wins:

    1. stop-loss (trailing stop when set)
    2. take-profit
    3. ROI table (when enabled)
    4. AI exit conditions (max hold duration, then price target)

The evaluator only reports what should close; placing the exit orders is the
executor's job.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .config import ExitConfig
from .exceptions import PayloadError
from .models import Position, utcnow
from .payloads import decode_exit_conditions
from .position_store import PositionStore
from .quote_provider import QuoteProvider
from .roi_table import get_roi_threshold

logger = logging.getLogger(__name__)

REASON_STOP_LOSS = "Stop-loss triggered"
REASON_TAKE_PROFIT = "Take-profit triggered"
REASON_ROI = "roi_table"
REASON_MAX_HOLD = "Max hold duration reached"
REASON_PRICE_TARGET = "AI price target reached"


@dataclass
class ExitCheckResult:
    positions_to_close: List[str] = field(default_factory=list)
    exit_reasons: Dict[str, str] = field(default_factory=dict)


class PositionExitEvaluator:
    """Decides which positions should be closed and keeps trailing stops current."""

    def __init__(
        self,
        position_store: PositionStore,
        config: ExitConfig,
        quote_provider: Optional[QuoteProvider] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.position_store = position_store
        self.config = config
        self.quote_provider = quote_provider
        self.clock = clock

    def check_exit_conditions(self) -> ExitCheckResult:
        result = ExitCheckResult()
        now = self.clock()

        for position in self.position_store.get_all_positions():
            if position.current_price is None or not _has_valid_entry(position):
                continue

            try:
                reason = self._exit_reason(position, now)
            except Exception as e:
                logger.error(f"[{position.symbol}] Failed to check exit conditions: {e}")
                continue
            if reason:
                result.positions_to_close.append(position.symbol)
                result.exit_reasons[position.symbol] = reason

        if result.positions_to_close:
            logger.info(f"Exit conditions triggered for {result.positions_to_close}")
        return result

    def _exit_reason(self, position: Position, now: datetime) -> Optional[str]:
        price = position.current_price
        symbol = position.symbol

        stop = position.effective_stop
        if stop is not None and price <= stop:
            logger.warning(f"[{symbol}] Stop-loss triggered: price {price} <= stop {stop}")
            return REASON_STOP_LOSS

        if position.take_profit is not None and price >= position.take_profit:
            logger.info(f"[{symbol}] Take-profit triggered: price {price} >= target {position.take_profit}")
            return REASON_TAKE_PROFIT

        if self.config.roi_enabled:
            profit = position.profit_ratio()
            minutes = (now - position.entry_time).total_seconds() / 60
            threshold = get_roi_threshold(self.config.roi_table, minutes)
            if threshold is not None and profit >= threshold:
                logger.info(
                    f"[{symbol}] ROI exit triggered: profit {profit * 100:.2f}% >= "
                    f"{threshold * 100:.2f}% after {minutes:.0f} min"
                )
                return REASON_ROI

        if position.ai_exit_conditions:
            try:
                conditions = decode_exit_conditions(position.ai_exit_conditions)
            except PayloadError as e:
                logger.warning(f"[{symbol}] Failed to parse AI exit conditions: {e}")
                return None

            if conditions.max_hold_days:
                hold_days = (now - position.entry_time).total_seconds() / 86400
                if hold_days >= conditions.max_hold_days:
                    logger.info(f"[{symbol}] Max hold duration reached: {hold_days:.1f}d >= {conditions.max_hold_days}d")
                    return REASON_MAX_HOLD

            if conditions.price_target and price >= conditions.price_target:
                logger.info(f"[{symbol}] AI price target reached: price {price} >= {conditions.price_target}")
                return REASON_PRICE_TARGET

        return None

    def update_trailing_stops(self):
        """Ratchet trailing stops up for profitable positions, keeping the original stop distance."""
        for position in self.position_store.get_all_positions():
            if position.current_price is None or position.stop_loss is None:
                continue
            if not _has_valid_entry(position):
                continue

            try:
                self._trail(position)
            except Exception as e:
                logger.error(f"[{position.symbol}] Failed to update trailing stop: {e}")

    def _trail(self, position: Position):
        profit = position.profit_ratio()
        if profit <= 0:
            return

        stop_distance = (position.entry_price - position.stop_loss) / position.entry_price
        new_stop = position.current_price * (1 - stop_distance)

        current_stop = position.effective_stop
        if new_stop > current_stop:
            self.position_store.update_trailing_stop(position.symbol, new_stop)
            logger.info(
                f"[{position.symbol}] Trailing stop {current_stop:.4f} -> {new_stop:.4f} "
                f"(price {position.current_price}, profit {profit * 100:.2f}%)"
            )

    def refresh_prices(self) -> int:
        """Fetch a fresh quote for each position and store price and P&L. Returns how many updated."""
        if self.quote_provider is None:
            logger.warning("No quote provider configured, cannot refresh prices")
            return 0

        positions = self.position_store.get_all_positions()
        updated = 0
        for position in positions:
            try:
                quote = self.quote_provider.get_quote(position.symbol)
                if quote is None:
                    continue
                pnl = (quote.price - position.entry_price) * position.shares
                pnl_pct = position.profit_ratio(quote.price)
                if self.position_store.update_price(position.symbol, quote.price, pnl, pnl_pct):
                    updated += 1
            except Exception as e:
                logger.error(f"[{position.symbol}] Failed to update position price: {e}")

        logger.info(f"Positions updated: {updated}/{len(positions)}")
        return updated


def _has_valid_entry(position: Position) -> bool:
    if position.entry_price is None or position.entry_price <= 0:
        logger.warning(f"[{position.symbol}] Invalid entry price {position.entry_price}, skipping")
        return False
    return True
