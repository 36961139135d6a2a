"""Tests for broker position reconciliation."""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from lifecycle.reconciliation import EXTERNAL_CLOSE_REASON, PositionReconciler
from lifecycle.trading.base import BrokerPosition


NOW = datetime(2025, 6, 2, 15, 0, 0)


@pytest.fixture
def broker():
    return Mock()


@pytest.fixture
def reconciler(broker, position_store, trade_store):
    return PositionReconciler(broker, position_store, trade_store, clock=lambda: NOW)


def open_position(store, symbol, broker_ticker, shares=10, entry=100.0, price=None):
    store.create_position(symbol, broker_ticker, shares, entry, entry_time=NOW - timedelta(days=1))
    if price is not None:
        store.update_price(symbol, price, (price - entry) * shares, (price - entry) / entry)


class TestSyncWithBroker:

    def test_external_close_books_one_trade(self, reconciler, broker, position_store, trade_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ", price=110.0)
        broker.get_portfolio.return_value = []

        result = reconciler.sync_with_broker()

        assert result.closed_externally == ["AAPL"]
        assert position_store.get_all_positions() == []
        trades = trade_store.get_trades()
        assert len(trades) == 1
        trade = trades[0]
        assert trade.symbol == "AAPL"
        assert trade.side == "sell"
        assert trade.exit_price == 110.0
        assert trade.exit_time == NOW
        assert trade.exit_reason == EXTERNAL_CLOSE_REASON
        assert trade.pnl == pytest.approx(100.0)
        assert trade.pnl_pct == pytest.approx(0.1)

    def test_second_sync_is_a_noop(self, reconciler, broker, position_store, trade_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ")
        broker.get_portfolio.return_value = []

        reconciler.sync_with_broker()
        result = reconciler.sync_with_broker()

        assert result.closed_externally == []
        assert len(trade_store.get_trades()) == 1

    def test_held_position_untouched(self, reconciler, broker, position_store, trade_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ")
        broker.get_portfolio.return_value = [BrokerPosition(quantity=10, ticker="AAPL_US_EQ")]

        result = reconciler.sync_with_broker()

        assert result.closed_externally == []
        assert result.mismatched == []
        assert position_store.get_position("AAPL") is not None
        assert trade_store.get_trades() == []

    def test_matches_on_instrument_ticker(self, reconciler, broker, position_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ")
        broker.get_portfolio.return_value = [BrokerPosition(quantity=10, instrument_ticker="AAPL_US_EQ")]

        result = reconciler.sync_with_broker()

        assert result.closed_externally == []
        assert result.unmanaged == []

    def test_unmanaged_reported_only(self, reconciler, broker, position_store, trade_store):
        broker.get_portfolio.return_value = [BrokerPosition(quantity=3, ticker="TSLA_US_EQ")]

        result = reconciler.sync_with_broker()

        assert result.unmanaged == ["TSLA_US_EQ"]
        assert position_store.get_all_positions() == []
        assert trade_store.get_trades() == []

    def test_quantity_mismatch_reported_only(self, reconciler, broker, position_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ", shares=10)
        broker.get_portfolio.return_value = [BrokerPosition(quantity=7.5, ticker="AAPL_US_EQ")]

        result = reconciler.sync_with_broker()

        assert result.mismatched == ["AAPL"]
        assert position_store.get_position("AAPL").shares == 10

    def test_fractional_drift_within_tolerance(self, reconciler, broker, position_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ", shares=1.5)
        broker.get_portfolio.return_value = [BrokerPosition(quantity=1.5004, ticker="AAPL_US_EQ")]

        assert reconciler.sync_with_broker().mismatched == []

    def test_portfolio_error_leaves_state_untouched(self, reconciler, broker, position_store, trade_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ")
        broker.get_portfolio.side_effect = RuntimeError("503 Service Unavailable")

        result = reconciler.sync_with_broker()

        assert result.error == "503 Service Unavailable"
        assert result.closed_externally == []
        assert position_store.get_position("AAPL") is not None
        assert trade_store.get_trades() == []

    def test_empty_ticker_never_matches(self, reconciler, broker, position_store):
        open_position(position_store, "AAPL", "")
        broker.get_portfolio.return_value = [BrokerPosition(quantity=10, ticker="")]

        result = reconciler.sync_with_broker()

        assert result.closed_externally == ["AAPL"]
        assert result.unmanaged == [""]

    def test_failed_trade_insert_keeps_position(self, broker, position_store):
        open_position(position_store, "AAPL", "AAPL_US_EQ")
        broker.get_portfolio.return_value = []
        trade_store = Mock()
        trade_store.save_trade.return_value = None
        reconciler = PositionReconciler(broker, position_store, trade_store, clock=lambda: NOW)

        result = reconciler.sync_with_broker()

        assert result.closed_externally == []
        assert position_store.get_position("AAPL") is not None


class TestBadPositionIsolation:

    def test_zero_entry_price_still_closes_everything(self, reconciler, broker, position_store, trade_store):
        position_store.create_position("AAA", "AAA_US_EQ", 10, 0.0, entry_time=NOW - timedelta(days=1))
        open_position(position_store, "ZZZ", "ZZZ_US_EQ", price=90.0)
        broker.get_portfolio.return_value = []

        result = reconciler.sync_with_broker()

        assert result.closed_externally == ["AAA", "ZZZ"]
        assert position_store.get_all_positions() == []
        trades = {t.symbol: t for t in trade_store.get_trades()}
        assert trades["AAA"].pnl_pct is None
        assert trades["ZZZ"].pnl_pct == pytest.approx(-0.1)

    def test_error_on_one_position_does_not_block_the_rest(self, broker, position_store):
        open_position(position_store, "AAA", "AAA_US_EQ")
        open_position(position_store, "ZZZ", "ZZZ_US_EQ")
        broker.get_portfolio.return_value = []
        trade_store = Mock()
        trade_store.save_trade.side_effect = [RuntimeError("disk full"), 7]
        reconciler = PositionReconciler(broker, position_store, trade_store, clock=lambda: NOW)

        result = reconciler.sync_with_broker()

        assert result.closed_externally == ["ZZZ"]
        assert position_store.get_position("AAA") is not None
        assert position_store.get_position("ZZZ") is None


class TestAccountScope:

    def test_other_account_positions_left_alone(self, broker, position_store, trade_store):
        position_store.create_position("AAPL", "AAPL_US_EQ", 10, 100.0, account_type="ISA")
        position_store.create_position("MSFT", "MSFT_US_EQ", 5, 400.0, account_type="INVEST")
        broker.get_portfolio.return_value = []
        reconciler = PositionReconciler(broker, position_store, trade_store, clock=lambda: NOW,
                                        account_type="INVEST")

        result = reconciler.sync_with_broker()

        assert result.closed_externally == ["MSFT"]
        assert position_store.get_position("AAPL") is not None
        assert [t.account_type for t in trade_store.get_trades()] == ["INVEST"]
