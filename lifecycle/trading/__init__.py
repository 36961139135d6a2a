"""Broker client abstraction layer."""

import os
from typing import Optional

from .base import TradingClient, BrokerOrder, BrokerPosition
from .trading212 import Trading212Client


def get_trading_client(
    backend: Optional[str] = None,
    api_key: Optional[str] = None,
    environment: Optional[str] = None,
) -> TradingClient:
    """
    Factory to get a broker client.

    Args:
        backend: Broker backend to use. Defaults to TRADING_BACKEND env var or "trading212"
        api_key: API key (defaults to T212_API_KEY)
        environment: "demo" or "live" (defaults to T212_ENVIRONMENT)

    Returns:
        TradingClient instance
    """
    backend = backend or os.getenv("TRADING_BACKEND", "trading212")

    if backend == "trading212":
        return Trading212Client(api_key=api_key, environment=environment)
    else:
        raise ValueError(f"Unknown trading backend: {backend}")


__all__ = [
    "TradingClient",
    "BrokerOrder",
    "BrokerPosition",
    "Trading212Client",
    "get_trading_client",
]
