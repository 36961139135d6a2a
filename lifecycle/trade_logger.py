"""Dedicated logger for order lifecycle events (fills, replacements, external closes)."""

import logging
from pathlib import Path
from typing import Optional

# Create logs directory if it doesn't exist
LOGS_DIR = Path(__file__).parent.parent / "logs"
LOGS_DIR.mkdir(exist_ok=True)

trade_logger = logging.getLogger("trade_executions")
trade_logger.setLevel(logging.INFO)
trade_logger.propagate = False  # Don't propagate to root logger

trade_file_handler = logging.FileHandler(LOGS_DIR / "trades.log")
trade_file_handler.setLevel(logging.INFO)

# Format: timestamp [EVENT] symbol details
trade_formatter = logging.Formatter(
    '%(asctime)s [%(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
trade_file_handler.setFormatter(trade_formatter)

trade_logger.addHandler(trade_file_handler)


def log_replacement(symbol: str, side: str, quantity: float, old_price: Optional[float],
                    new_price: float, old_order_id: int, new_order_id: int, dry_run: bool):
    """Log an order being repriced."""
    old_str = f"{old_price:.4f}" if old_price is not None else "n/a"
    mode = " dry_run" if dry_run else ""
    trade_logger.info(
        f"REPLACE] {symbol}: {side} {quantity} {old_str} -> {new_price:.4f} | "
        f"order {old_order_id} -> {new_order_id}{mode}"
    )


def log_fill_during_cancel(symbol: str, side: str, quantity: float, price: Optional[float], order_id: int):
    """Log an order that filled while we were trying to cancel it."""
    price_str = f"{price:.4f}" if price is not None else "n/a"
    trade_logger.info(f"{side.upper()}] {symbol}: {quantity} @ {price_str} | filled during cancel, order {order_id}")


def log_external_close(symbol: str, shares: float, exit_price: float, entry_price: float,
                       pnl: float, pnl_pct: Optional[float]):
    """Log a position that was closed outside this system."""
    pct_str = f"{pnl_pct * 100:+.2f}%" if pnl_pct is not None else "n/a"
    trade_logger.info(
        f"EXTERNAL_CLOSE] {symbol}: {shares} @ {exit_price:.4f} | "
        f"entry={entry_price:.4f} P&L={pnl:+.2f} ({pct_str})"
    )


def log_conditional_trigger(symbol: str, order_id: int, trigger_type: str, action_type: str):
    trade_logger.info(f"TRIGGER] {symbol}: conditional order {order_id} ({trigger_type}) -> {action_type}")


def log_order_fill(symbol: str, side: str, quantity: float, price: Optional[float], order_id: int,
                   partial: bool = False):
    """Log a fill picked up from the broker's order status."""
    price_str = f"{price:.4f}" if price is not None else "n/a"
    kind = "partial fill" if partial else "filled"
    trade_logger.info(f"{side.upper()}] {symbol}: {quantity} @ {price_str} | {kind}, order {order_id}")
