"""
DynamoDB client wrapper for the job store.

pynamodb calls are blocking, so every operation runs in the default executor
with retries on throttling and connection errors. Failures are mapped to the
crawler's StoreError hierarchy.
"""

import logging
from typing import Any, Callable, Dict, Optional, TypeVar

from botocore.exceptions import (
    ClientError,
    ConnectionError,
    EndpointConnectionError,
    NoCredentialsError,
    ReadTimeoutError,
)
from pynamodb.exceptions import PynamoDBException

from ..config.settings import CrawlerSettings
from ..core.exceptions import ConditionalCheckFailedError, StoreError, ThrottlingError, TransactionCanceledError
from ..utils.retry import DATABASE_RETRY_CONFIG, AsyncRetrier, RetryError
from .models import initialize_models

logger = logging.getLogger(__name__)

R = TypeVar("R")

THROTTLING_CODES = frozenset(
    ["ProvisionedThroughputExceededException", "ThrottlingException", "RequestLimitExceeded"]
)
# Cancellation reasons that clear up on their own
RETRYABLE_CANCELLATION_CODES = frozenset(["TransactionConflict", "ThrottlingError", "ProvisionedThroughputExceeded"])
CONNECTION_ERRORS =(ConnectionError, EndpointConnectionError, ReadTimeoutError)


class StoreConnectionError(StoreError):
    """Store endpoint could not be reached"""

    pass


def _error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, PynamoDBException):
        return error.cause_response_code
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def _cause(error: BaseException) -> BaseException:
    if isinstance(error, PynamoDBException) and error.cause is not None:
        return error.cause
    return error


class DynamoDBClient:
    """
    Runs pynamodb operations off the event loop with retry and error mapping.
    """

    def __init__(self, settings: CrawlerSettings):
        self.settings = settings
        self.retrier = AsyncRetrier(DATABASE_RETRY_CONFIG)

        initialize_models(settings)

        logger.info(f"DynamoDB client initialized for region {settings.aws_region}")

    def map_error(self, error: Exception, operation: str) -> StoreError:
        """
        Translate a pynamodb/botocore error into a StoreError subclass.
        """
        if isinstance(error, StoreError):
            return error

        code = _error_code(error)
        cause = _cause(error)

        if code in THROTTLING_CODES:
            return ThrottlingError(f"DynamoDB throughput exceeded during {operation}: {error}", error)
        if code == "ConditionalCheckFailedException":
            return ConditionalCheckFailedError(f"Conditional check failed during {operation}", error)
        if code == "TransactionCanceledException":
            reasons = [r.code if r is not None else None for r in getattr(error, "cancellation_reasons", [])]
            if RETRYABLE_CANCELLATION_CODES.intersection(reasons):
                return ThrottlingError(f"DynamoDB transaction contended during {operation}: {reasons}", error)
            return TransactionCanceledError(f"Transaction cancelled during {operation}: {reasons}", error, reasons)
        if code == "ResourceNotFoundException":
            return StoreError(f"DynamoDB resource not found during {operation}: {error}", error)
        if isinstance(cause, CONNECTION_ERRORS):
            return StoreConnectionError(f"DynamoDB connection error during {operation}: {cause}", error)
        if isinstance(cause, NoCredentialsError):
            return StoreError(f"AWS credentials not configured for DynamoDB {operation}", error)
        return StoreError(f"DynamoDB error during {operation}: {error}", error)

    async def run(self, func: Callable[[], R], operation: str) -> R:
        """
        Execute a blocking pynamodb operation with retry logic.

        Raises:
            StoreError: If the operation fails after all retries, or fails
                with a non-retryable error
        """

        def _attempt() -> R:
            try:
                return func()
            except (PynamoDBException, ClientError) as e:
                mapped = self.map_error(e, operation)
                if isinstance(mapped, (ThrottlingError, StoreConnectionError)):
                    raise mapped from e
                raise

        _attempt.__name__ = operation

        try:
            return await self.retrier.call_sync(_attempt, (ThrottlingError, StoreConnectionError))
        except RetryError as e:
            logger.error(f"DynamoDB {operation} failed after {e.attempts} attempts: {e.last_exception}")
            raise self.map_error(e.last_exception, operation) from e
        except StoreError:
            raise
        except (PynamoDBException, ClientError, NoCredentialsError) as e:
            raise self.map_error(e, operation) from e

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = dict(self.retrier.get_stats())
        stats.update(
            {
                "region": self.settings.aws_region,
                "jobs_table": self.settings.dynamodb_jobs_table,
                "results_table": self.settings.dynamodb_results_table,
                "endpoint": self.settings.localstack_endpoint,
            }
        )
        return stats
