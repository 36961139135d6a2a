"""Database models and connection for orders, positions and conditional orders."""

import os
from pathlib import Path

from sqlalchemy import create_engine, Column, Integer, Float, String, DateTime, Text, Index
from sqlalchemy.orm import declarative_base, sessionmaker
from dotenv import load_dotenv

from .models import utcnow

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/lifecycle.db")

engine = create_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


class OrderDB(Base):
    """Order record - tracks every order submitted to the broker."""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Links to the position this order opens/closes (optional)
    position_id = Column(Integer, nullable=True)

    # Order details
    symbol = Column(String(20), nullable=False, index=True)
    side = Column(String(10), nullable=False)  # 'buy' or 'sell'
    order_type = Column(String(20), nullable=False, default="market")  # 'market', 'limit', 'stop'
    requested_quantity = Column(Float, nullable=False)
    requested_price = Column(Float, nullable=True)  # null for market orders
    stop_price = Column(Float, nullable=True)  # trigger price for stop orders

    # Fill tracking
    filled_quantity = Column(Float, default=0.0)
    filled_price = Column(Float, nullable=True)  # avg fill price
    filled_at = Column(DateTime, nullable=True)

    # Status: 'pending', 'open', 'filled', 'partially_filled', 'cancelled', 'expired', 'failed'
    status = Column(String(20), nullable=False, default="pending", index=True)
    cancel_reason = Column(String(200), nullable=True)

    # 'entry', 'exit', 'dca', 'stoploss', 'take_profit', 'partial_exit'
    order_tag = Column(String(20), nullable=True)

    # Broker reference (absent until acknowledged remotely)
    broker_order_id = Column(String(50), nullable=True, index=True)

    # Replacement chain: the order that superseded this one
    replaced_by_order_id = Column(Integer, nullable=True, index=True)

    account_type = Column(String(10), nullable=False, default="INVEST")  # 'INVEST' or 'ISA'

    # Metadata
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('ix_orders_status_symbol', 'status', 'symbol'),
        Index('ix_orders_created', 'created_at'),
    )


class PositionDB(Base):
    """Open position - one row per symbol, deleted when the position closes."""
    __tablename__ = "positions"

    id = Column(Integer, primary_key=True, autoincrement=True)

    symbol = Column(String(20), nullable=False, unique=True, index=True)
    broker_ticker = Column(String(50), nullable=False)  # e.g. AAPL_US_EQ

    # Entry details
    shares = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    entry_time = Column(DateTime, nullable=False)

    # Tracking
    current_price = Column(Float, nullable=True)
    pnl = Column(Float, nullable=True)
    pnl_pct = Column(Float, nullable=True)

    # Exit levels
    stop_loss = Column(Float, nullable=True)
    trailing_stop = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)

    # JSON payload: max_hold_days, price_target, stop_on_reversal
    ai_exit_conditions = Column(Text, nullable=True)

    account_type = Column(String(10), nullable=False, default="INVEST")

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ConditionalOrderDB(Base):
    """Conditional order waiting on a price/time/indicator trigger."""
    __tablename__ = "conditional_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)

    symbol = Column(String(20), nullable=False)
    trigger_type = Column(String(20), nullable=False)  # 'price_above', 'price_below', 'time', 'indicator'
    trigger_condition = Column(Text, nullable=False)  # JSON, shape depends on trigger_type
    action = Column(Text, nullable=False)  # JSON: {type, shares?, pct?, limit_price?}

    # 'pending', 'triggered', 'executed', 'cancelled', 'expired'
    status = Column(String(20), nullable=False, default="pending")

    # OCO pairing
    linked_order_id = Column(Integer, nullable=True)
    oco_group_id = Column(String(36), nullable=True, index=True)

    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    triggered_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_cond_orders_status_symbol', 'status', 'symbol'),
    )


class TradeDB(Base):
    """Completed trade record."""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)

    symbol = Column(String(20), nullable=False, index=True)
    broker_ticker = Column(String(50), nullable=False)
    side = Column(String(10), nullable=False)
    shares = Column(Float, nullable=False)
    entry_price = Column(Float, nullable=False)
    exit_price = Column(Float, nullable=True)
    pnl = Column(Float, nullable=True)
    pnl_pct = Column(Float, nullable=True)
    entry_time = Column(DateTime, nullable=False)
    exit_time = Column(DateTime, nullable=True)
    exit_reason = Column(String(100))  # stop_loss, take_profit, roi_table, external close
    account_type = Column(String(10), nullable=False, default="INVEST")

    # Metadata
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_trades_exit_time', 'exit_time'),
    )


def init_db():
    """Create all tables."""
    if engine.url.get_backend_name() == "sqlite" and engine.url.database:
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
