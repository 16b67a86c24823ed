"""
CEP worker components.

- CepWorker: consumes work items, calls the providers under the rate limiter
  and persists outcomes through the orchestrator
- ItemErrorHandler: classifies lookup outcomes as terminal or retryable
"""

from .crawler_worker import CepWorker, WorkerStats
from .error_handler import ItemErrorHandler, ItemOutcome

__all__ = [
    "CepWorker",
    "WorkerStats",
    "ItemErrorHandler",
    "ItemOutcome",
]
