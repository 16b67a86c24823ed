"""
Outcome classification for CEP lookups.

Turns a provider result (or the exception a provider raised) into an
ItemOutcome: what to persist, whether the failure is terminal, and whether
the broker should redeliver the message.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp
from pydantic import BaseModel

from ..core.exceptions import ItemFailure, ItemNotFound, ItemTransientFailure
from ..core.types import ItemErrorType, ProviderResult

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = "CEP not found"


def failure_from_result(item_key: str, result: ProviderResult) -> ItemFailure:
    """Failed ProviderResult to ItemFailure; not-found wins over rate-limited."""
    if result.not_found:
        return ItemNotFound(item_key, result.error or NOT_FOUND_MESSAGE)
    if result.rate_limited:
        return ItemTransientFailure(item_key, result.error or "Rate limited by provider", rate_limited=True)
    return ItemTransientFailure(item_key, result.error or f"Lookup failed with status {result.status_code}")


class ItemOutcome(BaseModel):
    """Classified result of one lookup"""

    success: bool
    retryable: bool = False
    error_type: Optional[ItemErrorType] = None
    payload: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @property
    def terminal(self) -> bool:
        return not self.retryable


class ItemErrorHandler:
    """
    Classifies lookup outcomes in priority order: not-found (terminal),
    rate-limited (retryable), other failure (retryable), success.
    """

    def __init__(self) -> None:
        self.stats: Dict[str, Any] = {
            "outcomes_classified": 0,
            "successes": 0,
            "terminal_failures": 0,
            "retryable_failures": 0,
            "errors_by_type": {},
        }

    def _record(self, outcome: ItemOutcome) -> ItemOutcome:
        self.stats["outcomes_classified"] += 1
        if outcome.success:
            self.stats["successes"] += 1
            return outcome

        if outcome.retryable:
            self.stats["retryable_failures"] += 1
        else:
            self.stats["terminal_failures"] += 1

        error_type = outcome.error_type.value if outcome.error_type else "unknown"
        self.stats["errors_by_type"][error_type] = self.stats["errors_by_type"].get(error_type, 0) + 1
        return outcome

    def classify_result(self, item_key: str, result: ProviderResult) -> ItemOutcome:
        if result.success:
            return self._record(ItemOutcome(success=True, payload=result.payload or {}))
        return self.classify_failure(failure_from_result(item_key, result))

    def classify_failure(self, failure: ItemFailure) -> ItemOutcome:
        """ItemNotFound is terminal; every other ItemFailure goes back to the broker."""
        if not failure.retryable:
            return self._record(
                ItemOutcome(success=False, error_type=ItemErrorType.NOT_FOUND, error_message=str(failure))
            )

        rate_limited = isinstance(failure, ItemTransientFailure) and failure.rate_limited
        if rate_limited:
            logger.warning(f"Provider rate limited lookup of {failure.item_key}", extra={"item_key": failure.item_key})
        return self._record(
            ItemOutcome(
                success=False,
                retryable=True,
                error_type=ItemErrorType.RATE_LIMITED if rate_limited else ItemErrorType.TRANSIENT,
                error_message=str(failure),
            )
        )

    def classify_exception(self, item_key: str, error: Exception) -> ItemOutcome:
        """
        Providers report expected failures in their result or by raising an
        ItemFailure; anything else they raise is treated as an "other failure".
        """
        if isinstance(error, ItemFailure):
            return self.classify_failure(error)

        if isinstance(error, asyncio.TimeoutError):
            message = "Request timed out"
        elif isinstance(error, aiohttp.ClientError):
            message = f"Network error: {error}"
        else:
            message = f"Unexpected error: {type(error).__name__}: {error}"

        logger.error(f"Lookup of {item_key} raised {type(error).__name__}: {error}", extra={"item_key": item_key})
        return self.classify_failure(ItemTransientFailure(item_key, message))

    def get_stats(self) -> Dict[str, Any]:
        return {**self.stats, "errors_by_type": dict(self.stats["errors_by_type"])}
