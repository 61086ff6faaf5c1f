"""Scrape scheduling and execution pipeline."""

from .executor import RunExecutor
from .queue import ScrapeQueue, TierRefresher
from .scheduler import Scheduler
from .service import TargetNotFound, TrackerService

__all__ = [
    "RunExecutor",
    "ScrapeQueue",
    "Scheduler",
    "TargetNotFound",
    "TierRefresher",
    "TrackerService",
]
