"""
Module: delivery/retry.py
Description: Retry logic for event delivery and storage calls.

Implements the delivery failure policy (exponential backoff capped at a
maximum delay, permanent failure once the attempt budget is spent) and a
tenacity retry decorator for transient storage throttling.

Key Components:
- compute_retry_delay_ms(): Backoff delay for a given attempt count
- plan_failure(): Next state of a delivery after a failed attempt
- storage_retry: tenacity decorator for throttled DynamoDB calls
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from botocore.exceptions import ClientError
from tenacity import (
    after_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from eventbus.models.delivery import DeliveryStatus
from eventbus.utils.logger import get_logger

logger = get_logger(__name__)

THROTTLING_ERROR_CODES = frozenset({
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
})


def compute_retry_delay_ms(previous_attempts: int, retry_delay_ms: int, max_delay_ms: int) -> int:
    """
    Exponential backoff delay, capped.

    Args:
        previous_attempts: Failed attempts before the one that just failed
        retry_delay_ms: Base delay
        max_delay_ms: Ceiling

    Returns:
        min(retry_delay_ms * 2 ** previous_attempts, max_delay_ms)

    Example:
        >>> [compute_retry_delay_ms(n, 1000, 5000) for n in range(5)]
        [1000, 2000, 4000, 5000, 5000]
    """
    if previous_attempts < 0:
        raise ValueError("previous_attempts must be non-negative")

    if retry_delay_ms <= 0:
        return 0
    # Cap before exponentiating large attempt counts
    if previous_attempts >= 64 or retry_delay_ms * (2 ** previous_attempts) >= max_delay_ms:
        return max_delay_ms
    return retry_delay_ms * (2 ** previous_attempts)


@dataclass(frozen=True)
class FailurePlan:
    """State a delivery moves to after a failed attempt."""

    attempts: int
    status: DeliveryStatus
    next_attempt_at: Optional[datetime]
    last_error: str

    @property
    def is_permanent(self) -> bool:
        return self.status == DeliveryStatus.FAILED


def plan_failure(
    previous_attempts: int,
    error: str,
    now: datetime,
    max_attempts: int,
    retry_delay_ms: int,
    max_delay_ms: int,
) -> FailurePlan:
    """
    Apply the failure policy to one delivery.

    The attempt counter is incremented. Once it reaches max_attempts the
    delivery is permanently failed; before that it goes back to pending,
    due after the backoff delay.

    Args:
        previous_attempts: Attempt count stored before this failure
        error: Failure message to record
        now: Current time
        max_attempts: Attempt budget
        retry_delay_ms: Backoff base delay
        max_delay_ms: Backoff ceiling

    Returns:
        FailurePlan describing the new delivery state
    """
    attempts = previous_attempts + 1

    if attempts >= max_attempts:
        return FailurePlan(
            attempts=attempts,
            status=DeliveryStatus.FAILED,
            next_attempt_at=None,
            last_error=error,
        )

    delay_ms = compute_retry_delay_ms(previous_attempts, retry_delay_ms, max_delay_ms)
    return FailurePlan(
        attempts=attempts,
        status=DeliveryStatus.PENDING,
        next_attempt_at=now + timedelta(milliseconds=delay_ms),
        last_error=error,
    )


def is_throttling_error(exc: BaseException) -> bool:
    """Whether a boto error is a transient throttling/server error worth retrying."""
    if not isinstance(exc, ClientError):
        return False
    return exc.response.get('Error', {}).get('Code') in THROTTLING_ERROR_CODES


# Retries throttled storage calls; the decorated function must be synchronous
storage_retry = retry(
    stop=stop_after_attempt(4),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception(is_throttling_error),
    after=after_log(logger, logging.WARNING),
    reraise=True
)
