"""Trading 212 broker client implementation."""

import logging
import os
import time
from typing import List, Optional

import requests

from .base import TradingClient, BrokerOrder, BrokerPosition

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10


class Trading212Client(TradingClient):
    """Broker client for the Trading 212 public API (v0)."""

    DEMO_URL = "https://demo.trading212.com/api/v0"
    LIVE_URL = "https://live.trading212.com/api/v0"

    def __init__(
        self,
        api_key: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key or os.getenv("T212_API_KEY")
        self.environment = environment or os.getenv("T212_ENVIRONMENT", "demo")
        self.base_url = self.LIVE_URL if self.environment == "live" else self.DEMO_URL
        self.timeout = timeout
        self._session = session or requests.Session()

        if not self.api_key:
            raise ValueError(
                "Trading 212 API key not set. "
                "Set T212_API_KEY in .env"
            )

        # Keys come as "key" or "key:secret"; both are sent as HTTP Basic auth
        key, _, secret = self.api_key.partition(":")
        self._session.auth = (key, secret)

    def _request(
        self,
        method: str,
        endpoint: str,
        max_retries: int = 3,
        **kwargs,
    ):
        """Make an API request with retry on rate limit (429)."""
        url = f"{self.base_url}{endpoint}"

        for attempt in range(max_retries):
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)

            if response.status_code == 429:
                retry_after = int(response.headers.get("Retry-After", 1))
                wait_time = max(retry_after, 2 ** attempt)
                logger.warning(f"Rate limited by Trading 212 (429), waiting {wait_time}s before retry {attempt + 1}/{max_retries}")
                time.sleep(wait_time)
                continue

            # For client errors (4xx), surface the broker's message
            if 400 <= response.status_code < 500:
                try:
                    error_body = response.json()
                    error_msg = error_body.get("message") or error_body.get("errorMessage") or response.text
                except ValueError:
                    error_msg = response.text
                logger.error(f"Trading 212 {response.status_code} error on {method} {endpoint}: {error_msg}")
                raise requests.HTTPError(
                    f"{response.status_code} Error: {error_msg}",
                    response=response,
                )

            response.raise_for_status()
            return response.json() if response.text else {}

        logger.error(f"Trading 212 rate limit: all {max_retries} retries exhausted for {method} {endpoint}")
        response.raise_for_status()
        return {}

    @staticmethod
    def _signed_quantity(quantity: float, side: str) -> float:
        """Trading 212 encodes sells as negative quantities."""
        if side not in ("buy", "sell"):
            raise ValueError(f"side must be 'buy' or 'sell', got {side!r}")
        return -abs(quantity) if side == "sell" else abs(quantity)

    def place_market_order(self, ticker: str, quantity: float, side: str) -> BrokerOrder:
        data = {
            "ticker": ticker,
            "quantity": self._signed_quantity(quantity, side),
        }
        logger.info(f"[{ticker}] {side.upper()} MARKET {quantity}")
        result = self._request("POST", "/equity/orders/market", json=data)
        return self._parse_order(result)

    def place_limit_order(
        self,
        ticker: str,
        quantity: float,
        limit_price: float,
        side: str,
        time_validity: str = "DAY",
    ) -> BrokerOrder:
        data = {
            "ticker": ticker,
            "quantity": self._signed_quantity(quantity, side),
            "limitPrice": limit_price,
            "timeValidity": time_validity,
        }
        logger.info(f"[{ticker}] {side.upper()} LIMIT {quantity} @ {limit_price} ({time_validity})")
        result = self._request("POST", "/equity/orders/limit", json=data)
        return self._parse_order(result)

    def place_stop_order(
        self,
        ticker: str,
        quantity: float,
        stop_price: float,
        side: str,
        time_validity: str = "DAY",
    ) -> BrokerOrder:
        data = {
            "ticker": ticker,
            "quantity": self._signed_quantity(quantity, side),
            "stopPrice": stop_price,
            "timeValidity": time_validity,
        }
        logger.info(f"[{ticker}] {side.upper()} STOP {quantity} @ {stop_price} ({time_validity})")
        result = self._request("POST", "/equity/orders/stop", json=data)
        return self._parse_order(result)

    def get_order(self, order_id: str) -> BrokerOrder:
        result = self._request("GET", f"/equity/orders/{order_id}")
        return self._parse_order(result)

    def cancel_order(self, order_id: str) -> None:
        self._request("DELETE", f"/equity/orders/{order_id}")
        logger.info(f"Cancelled Trading 212 order {order_id}")

    def get_portfolio(self) -> List[BrokerPosition]:
        results = self._request("GET", "/equity/portfolio")
        return [self._parse_position(p) for p in results or []]

    def _parse_order(self, data: dict) -> BrokerOrder:
        """Parse Trading 212 order response."""
        instrument = data.get("instrument") or {}
        return BrokerOrder(
            order_id=str(data.get("id", "")),
            status=str(data.get("status", "")).upper(),
            ticker=data.get("ticker"),
            instrument_ticker=instrument.get("ticker"),
            quantity=_float_or_none(data.get("quantity")),
            filled_quantity=_float_or_none(data.get("filledQuantity")),
            filled_value=_float_or_none(data.get("filledValue")),
            value=_float_or_none(data.get("value")),
            limit_price=_float_or_none(data.get("limitPrice")),
            stop_price=_float_or_none(data.get("stopPrice")),
        )

    def _parse_position(self, data: dict) -> BrokerPosition:
        """Parse Trading 212 portfolio entry."""
        instrument = data.get("instrument") or {}
        return BrokerPosition(
            ticker=data.get("ticker"),
            instrument_ticker=instrument.get("ticker"),
            quantity=float(data.get("quantity") or 0),
            current_price=_float_or_none(data.get("currentPrice")),
            average_price=_float_or_none(data.get("averagePrice")),
        )


def _float_or_none(value) -> Optional[float]:
    if value is None:
        return None
    return float(value)
