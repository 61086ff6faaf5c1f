"""Exception types raised inside the scrape pipeline.

Only a few failures are modelled as exceptions. A strategy that finds no
prices is a ``warning`` outcome and a cache skip is a ``cached`` outcome,
neither of them raise.
"""


class PriceTrackerError(Exception):
    """Base class for all price tracker errors."""


class StrategyNotFound(PriceTrackerError):
    """No extraction strategy is registered for a strategy type."""

    def __init__(self, strategy_type: str):
        self.strategy_type = strategy_type
        super().__init__(f"Unknown scraper type: {strategy_type}")


class StrategyFailure(PriceTrackerError):
    """An extraction strategy could not produce a result.

    The message is kept verbatim so operators see exactly what the strategy
    reported (e.g. ``blocked (403)``).
    """


class QueueBusyError(PriceTrackerError):
    """The queue interval cannot change while jobs are pending or running."""
