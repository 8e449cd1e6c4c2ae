"""Swap aggregator routing."""

from offramp.routing.base import Quote, RouteProvider
from offramp.routing.zerox import ZeroXProvider

__all__ = ["Quote", "RouteProvider", "ZeroXProvider"]
