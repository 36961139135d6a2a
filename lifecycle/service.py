"""
Composition root for the lifecycle engines.

Builds stores, the broker client, the quote provider and each engine once,
with configuration injected, and exposes one method per scheduled job.
"""

import logging
from typing import List, Optional

from .conditional_order_store import ConditionalOrderStore
from .conditional_orders import ConditionalOrderManager, TriggeredAction
from .config import LifecycleConfig
from .exit_evaluator import ExitCheckResult, PositionExitEvaluator
from .order_replacer import OrderReplacer, ReplaceResult
from .order_store import OrderStore
from .order_sync import OrderSyncResult, OrderSynchronizer
from .position_store import PositionStore
from .quote_provider import QuoteProvider, YFinanceQuoteProvider
from .reconciliation import PositionReconciler, SyncResult
from .trade_store import TradeStore
from .trading import TradingClient, get_trading_client

logger = logging.getLogger(__name__)


class LifecycleService:
    """Owns the engines and runs one job per call."""

    def __init__(
        self,
        config: LifecycleConfig,
        broker: Optional[TradingClient] = None,
        quote_provider: Optional[QuoteProvider] = None,
    ):
        self.config = config
        self.broker = broker if broker is not None else self._build_broker(config)
        self.quote_provider = quote_provider or YFinanceQuoteProvider()

        self.order_store = OrderStore()
        self.position_store = PositionStore()
        self.conditional_order_store = ConditionalOrderStore()
        self.trade_store = TradeStore()

        self.order_replacer = OrderReplacer(
            self.order_store,
            self.position_store,
            self.quote_provider,
            config.order_replacement,
            broker=self.broker,
            dry_run=config.dry_run,
        )
        self.conditional_orders = ConditionalOrderManager(
            self.conditional_order_store,
            config.conditional_orders,
        )
        self.exit_evaluator = PositionExitEvaluator(
            self.position_store,
            config.exits,
            quote_provider=self.quote_provider,
        )
        if self.broker is not None:
            account_type = config.broker.account_type
            self.order_sync = OrderSynchronizer(self.broker, self.order_store, account_type=account_type)
            self.reconciler = PositionReconciler(
                self.broker, self.position_store, self.trade_store, account_type=account_type
            )
        else:
            self.order_sync = None
            self.reconciler = None

    @staticmethod
    def _build_broker(config: LifecycleConfig) -> Optional[TradingClient]:
        if not config.broker.api_key:
            logger.warning("T212_API_KEY not set, running without a broker client")
            return None
        return get_trading_client(api_key=config.broker.api_key, environment=config.broker.environment)

    def sync_orders(self) -> Optional[OrderSyncResult]:
        if self.order_sync is None:
            logger.warning("No broker client, skipping order sync")
            return None
        return self.order_sync.sync_open_orders()

    def replace_orders(self) -> ReplaceResult:
        return self.order_replacer.process_open_orders()

    def check_triggers(self) -> List[TriggeredAction]:
        """Evaluate conditional orders against the last known position prices."""
        prices = {
            p.symbol: p.current_price
            for p in self.position_store.get_all_positions()
            if p.current_price is not None
        }
        actions = self.conditional_orders.check_triggers(prices)
        for action in actions:
            logger.info(f"[{action.symbol}] Triggered action from order {action.order_id}: {action.action}")
        return actions

    def expire_orders(self) -> int:
        return self.conditional_orders.expire_old_orders()

    def check_exits(self) -> ExitCheckResult:
        """Refresh prices, ratchet trailing stops, then report positions to close."""
        self.exit_evaluator.refresh_prices()
        self.exit_evaluator.update_trailing_stops()
        result = self.exit_evaluator.check_exit_conditions()
        for symbol in result.positions_to_close:
            logger.info(f"[{symbol}] Should close: {result.exit_reasons[symbol]}")
        return result

    def sync_positions(self) -> Optional[SyncResult]:
        if self.reconciler is None:
            logger.warning("No broker client, skipping position sync")
            return None
        return self.reconciler.sync_with_broker()
