"""Latest-price lookups for open positions and resting orders."""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, Optional

import yfinance as yf

from .models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class Quote:
    """Represents a price quote."""
    symbol: str
    price: float
    timestamp: datetime = field(default_factory=utcnow)


class QuoteProvider(ABC):
    """Source of the latest tradable price for a symbol."""

    @abstractmethod
    def get_quote(self, symbol: str) -> Optional[Quote]:
        """Latest quote, or None when no usable price is available."""
        pass

    def get_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Prices for every symbol that has one. Missing symbols are left out."""
        prices = {}
        for symbol in symbols:
            quote = self.get_quote(symbol)
            if quote is not None:
                prices[symbol] = quote.price
        return prices


class YFinanceQuoteProvider(QuoteProvider):
    """Quotes from yfinance fast_info."""

    def get_quote(self, symbol: str) -> Optional[Quote]:
        try:
            ticker = yf.Ticker(symbol)
            price = getattr(ticker.fast_info, "last_price", None)
        except Exception as e:
            logger.warning(f"[{symbol}] Price fetch failed: {e}")
            return None

        if price is None:
            logger.debug(f"[{symbol}] No price available")
            return None
        price = float(price)
        if math.isnan(price) or price <= 0:
            logger.warning(f"[{symbol}] Ignoring invalid price {price}")
            return None
        return Quote(symbol=symbol, price=price)
