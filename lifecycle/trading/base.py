"""Abstract base class for broker clients."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional


@dataclass
class BrokerOrder:
    """An order as the broker reports it."""
    order_id: str
    status: str  # "NEW", "WORKING", "FILLED", "CANCELLED", "REJECTED", ...
    ticker: Optional[str] = None
    instrument_ticker: Optional[str] = None
    quantity: Optional[float] = None
    filled_quantity: Optional[float] = None
    filled_value: Optional[float] = None
    value: Optional[float] = None
    limit_price: Optional[float] = None
    stop_price: Optional[float] = None

    @property
    def resolved_ticker(self) -> Optional[str]:
        """Top-level ticker, else the nested instrument ticker."""
        return self.ticker or self.instrument_ticker or None

    @property
    def fill_quantity(self) -> Optional[float]:
        """Filled quantity, else the order quantity (sign dropped)."""
        qty = self.filled_quantity if self.filled_quantity is not None else self.quantity
        return abs(qty) if qty is not None else None

    @property
    def fill_price(self) -> Optional[float]:
        """Average fill price: filled value / filled quantity, else value / quantity."""
        if self.filled_value and self.filled_quantity:
            return abs(self.filled_value / self.filled_quantity)
        if self.value and self.quantity:
            return abs(self.value / self.quantity)
        return None


@dataclass
class BrokerPosition:
    """A position from the broker's portfolio snapshot."""
    quantity: float
    current_price: Optional[float] = None
    average_price: Optional[float] = None
    ticker: Optional[str] = None
    instrument_ticker: Optional[str] = None

    @property
    def key(self) -> Optional[str]:
        """Ticker used to match against local positions (None if absent)."""
        return self.ticker or self.instrument_ticker or None


class TradingClient(ABC):
    """Abstract base class for broker clients."""

    @abstractmethod
    def place_market_order(self, ticker: str, quantity: float, side: str) -> BrokerOrder:
        pass

    @abstractmethod
    def place_limit_order(
        self,
        ticker: str,
        quantity: float,
        limit_price: float,
        side: str,
        time_validity: str = "DAY",
    ) -> BrokerOrder:
        """
        Submit a limit order.

        Args:
            ticker: Broker instrument ticker (e.g. AAPL_US_EQ)
            quantity: Number of shares (always positive; side sets direction)
            limit_price: Limit price
            side: "buy" or "sell"
            time_validity: "DAY" or "GOOD_TILL_CANCEL"
        """
        pass

    @abstractmethod
    def place_stop_order(
        self,
        ticker: str,
        quantity: float,
        stop_price: float,
        side: str,
        time_validity: str = "DAY",
    ) -> BrokerOrder:
        pass

    @abstractmethod
    def get_order(self, order_id: str) -> BrokerOrder:
        """Fetch an order by broker ID."""
        pass

    @abstractmethod
    def cancel_order(self, order_id: str) -> None:
        """
        Cancel an order. Raises on failure (e.g. the order already filled).
        """
        pass

    @abstractmethod
    def get_portfolio(self) -> List[BrokerPosition]:
        """Get all open positions held at the broker."""
        pass
