"""
Module: test_retry.py
Description: Unit tests for the delivery failure policy and storage retries.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest
from botocore.exceptions import ClientError

from eventbus.delivery.retry import (
    compute_retry_delay_ms,
    is_throttling_error,
    plan_failure,
    storage_retry,
)
from eventbus.models.delivery import DeliveryStatus

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _client_error(code):
    return ClientError(
        error_response={'Error': {'Code': code, 'Message': 'Test error'}},
        operation_name='UpdateItem'
    )


class TestComputeRetryDelay:

    def test_doubles_per_previous_attempt(self):
        delays = [compute_retry_delay_ms(n, 1000, 3_600_000) for n in range(5)]

        assert delays == [1000, 2000, 4000, 8000, 16000]

    def test_capped_at_max_delay(self):
        assert compute_retry_delay_ms(3, 1000, 5000) == 5000
        assert compute_retry_delay_ms(500, 1000, 3_600_000) == 3_600_000

    def test_non_decreasing(self):
        delays = [compute_retry_delay_ms(n, 250, 60_000) for n in range(30)]

        assert delays == sorted(delays)

    def test_zero_base_delay(self):
        assert compute_retry_delay_ms(4, 0, 1000) == 0

    def test_negative_attempts_rejected(self):
        with pytest.raises(ValueError):
            compute_retry_delay_ms(-1, 1000, 5000)


class TestPlanFailure:

    def test_first_failure_retries_after_base_delay(self):
        plan = plan_failure(0, "HTTP 500", NOW, max_attempts=20, retry_delay_ms=1000, max_delay_ms=3_600_000)

        assert plan.attempts == 1
        assert plan.status == DeliveryStatus.PENDING
        assert plan.next_attempt_at == NOW + timedelta(seconds=1)
        assert plan.last_error == "HTTP 500"
        assert not plan.is_permanent

    def test_delay_uses_attempts_before_increment(self):
        """With attempts=2 stored, the third failure waits base * 2^2."""
        plan = plan_failure(2, "boom", NOW, max_attempts=20, retry_delay_ms=1000, max_delay_ms=3_600_000)

        assert plan.attempts == 3
        assert plan.next_attempt_at == NOW + timedelta(seconds=4)

    def test_permanent_failure_at_max_attempts(self):
        plan = plan_failure(2, "boom", NOW, max_attempts=3, retry_delay_ms=1000, max_delay_ms=10_000)

        assert plan.attempts == 3
        assert plan.status == DeliveryStatus.FAILED
        assert plan.next_attempt_at is None
        assert plan.is_permanent

    def test_single_attempt_budget(self):
        plan = plan_failure(0, "boom", NOW, max_attempts=1, retry_delay_ms=1000, max_delay_ms=10_000)

        assert plan.is_permanent


class TestStorageRetry:

    def test_throttling_detection(self):
        assert is_throttling_error(_client_error('ProvisionedThroughputExceededException'))
        assert is_throttling_error(_client_error('ThrottlingException'))
        assert not is_throttling_error(_client_error('ConditionalCheckFailedException'))
        assert not is_throttling_error(ValueError("nope"))

    def test_retries_throttled_calls(self):
        operation = Mock(side_effect=[_client_error('ThrottlingException'), {'ok': True}])

        wrapped = storage_retry(operation)

        assert wrapped() == {'ok': True}
        assert operation.call_count == 2

    def test_does_not_retry_other_errors(self):
        operation = Mock(side_effect=_client_error('ValidationException'))

        with pytest.raises(ClientError):
            storage_retry(operation)()

        assert operation.call_count == 1
