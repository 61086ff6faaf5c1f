"""Extraction strategies and the strategy registry."""

from .amazon import AmazonStrategy
from .base import BaseStrategy, StrategyProtocol, StrategyRegistry
from .firecrawl import FirecrawlClient
from .pcpartpicker import PCPartPickerStrategy
from .retail import RetailStrategy
from .staticice import StaticIceStrategy


def build_registry(firecrawl: FirecrawlClient | None = None) -> StrategyRegistry:
    """Registry with one instance of every shipped strategy.

    Args:
        firecrawl: Shared extraction API client, created from config if omitted.

    Returns:
        Populated StrategyRegistry.
    """
    firecrawl = firecrawl or FirecrawlClient()
    registry = StrategyRegistry()
    registry.register(StaticIceStrategy())
    registry.register(PCPartPickerStrategy())
    registry.register(RetailStrategy(firecrawl=firecrawl))
    registry.register(AmazonStrategy(firecrawl=firecrawl))
    return registry


__all__ = [
    "AmazonStrategy",
    "BaseStrategy",
    "FirecrawlClient",
    "PCPartPickerStrategy",
    "RetailStrategy",
    "StaticIceStrategy",
    "StrategyProtocol",
    "StrategyRegistry",
    "build_registry",
]
