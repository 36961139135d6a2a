"""Tests for exit precedence, ROI exits, AI exit conditions and trailing stops."""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from lifecycle.config import ExitConfig
from lifecycle.database import PositionDB
from lifecycle.exit_evaluator import PositionExitEvaluator
from lifecycle.models import Position
from lifecycle.payloads import AiExitConditions
from lifecycle.quote_provider import Quote


NOW = datetime(2025, 6, 2, 15, 0, 0)


def open_position(store, symbol="AAPL", entry=100.0, price=None, minutes_ago=10,
                  stop_loss=None, take_profit=None, ai=None, shares=10):
    store.create_position(
        symbol,
        f"{symbol}_US_EQ",
        shares,
        entry,
        entry_time=NOW - timedelta(minutes=minutes_ago),
        stop_loss=stop_loss,
        take_profit=take_profit,
        ai_exit_conditions=ai,
    )
    if price is not None:
        store.update_price(symbol, price, (price - entry) * shares, (price - entry) / entry)


def make_evaluator(store, roi_enabled=False, roi_table=None, quotes=None):
    config = ExitConfig(roi_enabled=roi_enabled, roi_table=roi_table if roi_table is not None else {})
    return PositionExitEvaluator(store, config, quote_provider=quotes, clock=lambda: NOW)


class TestExitPrecedence:

    def test_stop_loss(self, position_store):
        open_position(position_store, price=94.0, stop_loss=95.0)

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.positions_to_close == ["AAPL"]
        assert result.exit_reasons["AAPL"] == "Stop-loss triggered"

    def test_trailing_stop_overrides_fixed_stop(self, position_store):
        open_position(position_store, price=104.0, stop_loss=95.0)
        position_store.update_trailing_stop("AAPL", 105.0)

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.exit_reasons["AAPL"] == "Stop-loss triggered"

    def test_take_profit(self, position_store):
        open_position(position_store, price=110.0, stop_loss=95.0, take_profit=110.0)

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.exit_reasons["AAPL"] == "Take-profit triggered"

    def test_stop_loss_wins_over_take_profit(self, position_store):
        # Misconfigured levels where both are breached at once
        open_position(position_store, price=100.0, stop_loss=101.0, take_profit=99.0)

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.positions_to_close == ["AAPL"]
        assert result.exit_reasons == {"AAPL": "Stop-loss triggered"}

    def test_position_without_price_skipped(self, position_store, db_session):
        open_position(position_store, stop_loss=200.0)
        db_session.query(PositionDB).filter(PositionDB.symbol == "AAPL").update({"current_price": None})
        db_session.commit()

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.positions_to_close == []

    def test_nothing_to_do(self, position_store):
        open_position(position_store, price=101.0, stop_loss=95.0, take_profit=120.0)

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.positions_to_close == []
        assert result.exit_reasons == {}


class TestRoiExit:

    ROI = {0: 0.06, 60: 0.04}

    def test_young_position_below_first_threshold(self, position_store):
        open_position(position_store, price=102.0, minutes_ago=30)

        result = make_evaluator(position_store, roi_enabled=True, roi_table=self.ROI).check_exit_conditions()

        assert result.positions_to_close == []

    def test_older_position_meets_later_threshold(self, position_store):
        open_position(position_store, price=105.0, minutes_ago=70)

        result = make_evaluator(position_store, roi_enabled=True, roi_table=self.ROI).check_exit_conditions()

        assert result.exit_reasons == {"AAPL": "roi_table"}

    def test_disabled(self, position_store):
        open_position(position_store, price=150.0, minutes_ago=70)

        result = make_evaluator(position_store, roi_enabled=False, roi_table=self.ROI).check_exit_conditions()

        assert result.positions_to_close == []

    def test_younger_than_smallest_key(self, position_store):
        open_position(position_store, price=150.0, minutes_ago=10)

        result = make_evaluator(position_store, roi_enabled=True, roi_table={30: 0.01}).check_exit_conditions()

        assert result.positions_to_close == []

    def test_empty_table(self, position_store):
        open_position(position_store, price=150.0, minutes_ago=600)

        result = make_evaluator(position_store, roi_enabled=True, roi_table={}).check_exit_conditions()

        assert result.positions_to_close == []

    def test_take_profit_checked_before_roi(self, position_store):
        open_position(position_store, price=110.0, minutes_ago=70, take_profit=108.0)

        result = make_evaluator(position_store, roi_enabled=True, roi_table=self.ROI).check_exit_conditions()

        assert result.exit_reasons["AAPL"] == "Take-profit triggered"


class TestAiExitConditions:

    def test_max_hold_duration(self, position_store):
        open_position(position_store, price=101.0, minutes_ago=3 * 24 * 60,
                      ai=AiExitConditions(max_hold_days=3))

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.exit_reasons["AAPL"] == "Max hold duration reached"

    def test_price_target(self, position_store):
        open_position(position_store, price=112.0, ai=AiExitConditions(max_hold_days=10, price_target=112.0))

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.exit_reasons["AAPL"] == "AI price target reached"

    def test_malformed_payload_skipped(self, position_store, db_session):
        open_position(position_store, symbol="AAPL", price=101.0)
        open_position(position_store, symbol="MSFT", price=90.0, stop_loss=95.0)
        db_session.query(PositionDB).filter(PositionDB.symbol == "AAPL").update(
            {"ai_exit_conditions": "{broken"}
        )
        db_session.commit()

        result = make_evaluator(position_store).check_exit_conditions()

        assert result.positions_to_close == ["MSFT"]


class TestTrailingStops:

    def test_trails_profitable_position(self, position_store):
        # 5% stop distance
        open_position(position_store, price=110.0, stop_loss=95.0)

        make_evaluator(position_store).update_trailing_stops()

        assert position_store.get_position("AAPL").trailing_stop == pytest.approx(104.5)

    def test_never_moves_down(self, position_store):
        open_position(position_store, price=110.0, stop_loss=95.0)
        evaluator = make_evaluator(position_store)
        evaluator.update_trailing_stops()

        position_store.update_price("AAPL", 106.0, 60.0, 0.06)
        evaluator.update_trailing_stops()

        assert position_store.get_position("AAPL").trailing_stop == pytest.approx(104.5)

    def test_ratchets_up(self, position_store):
        open_position(position_store, price=110.0, stop_loss=95.0)
        evaluator = make_evaluator(position_store)
        evaluator.update_trailing_stops()

        position_store.update_price("AAPL", 120.0, 200.0, 0.2)
        evaluator.update_trailing_stops()

        assert position_store.get_position("AAPL").trailing_stop == pytest.approx(114.0)

    def test_losing_position_untouched(self, position_store):
        open_position(position_store, price=98.0, stop_loss=95.0)

        make_evaluator(position_store).update_trailing_stops()

        assert position_store.get_position("AAPL").trailing_stop is None

    def test_no_stop_loss_untouched(self, position_store):
        open_position(position_store, price=120.0)

        make_evaluator(position_store).update_trailing_stops()

        assert position_store.get_position("AAPL").trailing_stop is None

    def test_barely_profitable_moves_stop_slightly(self, position_store):
        open_position(position_store, price=100.5, stop_loss=95.0)

        make_evaluator(position_store).update_trailing_stops()

        # 100.5 * 0.95 = 95.475, just above the fixed stop
        assert position_store.get_position("AAPL").trailing_stop == pytest.approx(95.475)


class TestRefreshPrices:

    def test_updates_price_and_pnl(self, position_store):
        open_position(position_store, symbol="AAPL", shares=10)
        open_position(position_store, symbol="MSFT", shares=2)
        quotes = Mock()
        quotes.get_quote.side_effect = lambda symbol: Quote(symbol, 110.0) if symbol == "AAPL" else None

        updated = make_evaluator(position_store, quotes=quotes).refresh_prices()

        assert updated == 1
        aapl = position_store.get_position("AAPL")
        assert aapl.current_price == 110.0
        assert aapl.pnl == pytest.approx(100.0)
        assert aapl.pnl_pct == pytest.approx(0.1)
        assert position_store.get_position("MSFT").current_price == 100.0

    def test_one_failure_does_not_stop_others(self, position_store):
        open_position(position_store, symbol="AAPL")
        open_position(position_store, symbol="MSFT")
        quotes = Mock()

        def get_quote(symbol):
            if symbol == "AAPL":
                raise RuntimeError("rate limited")
            return Quote(symbol, 90.0)

        quotes.get_quote.side_effect = get_quote

        assert make_evaluator(position_store, quotes=quotes).refresh_prices() == 1
        assert position_store.get_position("MSFT").current_price == 90.0


class TestBadPositionIsolation:

    def open_zero_entry(self, store):
        store.create_position("AAA", "AAA_US_EQ", 10, 0.0, entry_time=NOW - timedelta(minutes=90),
                              stop_loss=0.0)
        store.update_price("AAA", 5.0, 50.0, 0.0)

    def test_zero_entry_price_does_not_block_exit_checks(self, position_store):
        self.open_zero_entry(position_store)
        open_position(position_store, symbol="ZZZ", price=90.0, stop_loss=95.0)

        result = make_evaluator(position_store, roi_enabled=True, roi_table={0: 0.06}).check_exit_conditions()

        assert result.positions_to_close == ["ZZZ"]
        assert result.exit_reasons["ZZZ"] == "Stop-loss triggered"

    def test_zero_entry_price_does_not_block_trailing(self, position_store):
        self.open_zero_entry(position_store)
        open_position(position_store, symbol="ZZZ", price=110.0, stop_loss=95.0)

        make_evaluator(position_store).update_trailing_stops()

        assert position_store.get_position("AAA").trailing_stop is None
        assert position_store.get_position("ZZZ").trailing_stop == pytest.approx(104.5)

    def test_error_on_one_position_keeps_checking_others(self):
        broken = Position(id=1, symbol="AAA", broker_ticker="AAA_US_EQ", shares=1, entry_price=100.0,
                          entry_time=NOW, current_price="n/a", stop_loss=95.0)
        healthy = Position(id=2, symbol="ZZZ", broker_ticker="ZZZ_US_EQ", shares=1, entry_price=100.0,
                           entry_time=NOW, current_price=90.0, stop_loss=95.0)
        store = Mock()
        store.get_all_positions.return_value = [broken, healthy]

        result = make_evaluator(store).check_exit_conditions()

        assert result.positions_to_close == ["ZZZ"]

    def test_store_error_on_one_trailing_update_keeps_going(self):
        first = Position(id=1, symbol="AAA", broker_ticker="AAA_US_EQ", shares=1, entry_price=100.0,
                         entry_time=NOW, current_price=110.0, stop_loss=95.0)
        second = Position(id=2, symbol="ZZZ", broker_ticker="ZZZ_US_EQ", shares=1, entry_price=100.0,
                          entry_time=NOW, current_price=120.0, stop_loss=95.0)
        store = Mock()
        store.get_all_positions.return_value = [first, second]
        store.update_trailing_stop.side_effect = [RuntimeError("database is locked"), True]

        make_evaluator(store).update_trailing_stops()

        assert store.update_trailing_stop.call_count == 2
        assert store.update_trailing_stop.call_args[0][0] == "ZZZ"
        assert store.update_trailing_stop.call_args[0][1] == pytest.approx(114.0)
