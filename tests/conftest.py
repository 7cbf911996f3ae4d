"""
Module: conftest.py
Description: Shared pytest fixtures for event bus tests.

Provides reusable fixtures for delivery stores, a controllable clock, a
recording notifier and common test data. Uses moto for AWS service
mocking so DynamoDB tests run fast and isolated.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import boto3
import pytest
from moto import mock_aws
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from eventbus.config.settings import DeliveryConfig
from eventbus.models.event import CloudEvent, Event
from eventbus.models.notify import NotifyResult
from eventbus.storage.dynamodb import DynamoDBDeliveryStore, create_tables
from eventbus.storage.memory import InMemoryDeliveryStore


class TestSettings(BaseSettings):
    """Test settings that don't require environment variables."""

    model_config = SettingsConfigDict(
        env_file=None,  # Disable .env file loading for tests
        case_sensitive=False,
        extra="ignore"
    )

    app_name: str = Field(default="Event Bus Test")
    app_version: str = Field(default="0.3.0-test")
    log_level: str = Field(default="DEBUG")

    storage_backend: str = Field(default="memory")
    aws_region: str = Field(default="us-east-1")
    events_table_name: str = Field(default="test-events")
    subscriptions_table_name: str = Field(default="test-subscriptions")
    deliveries_table_name: str = Field(default="test-deliveries")


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class RecordingNotifier:
    """
    Notifier double that records every call.

    Responses are looked up per connection id; a response may be a
    NotifyResult, an exception to raise, or a callable receiving the
    events and returning either.
    """

    def __init__(self, default: NotifyResult = None):
        self.default = default or NotifyResult(success=True)
        self.responses: Dict[str, Any] = {}
        self.calls: List[Tuple[str, List[str]]] = []

    async def notify(self, connection_id: str, events: List[CloudEvent]) -> NotifyResult:
        self.calls.append((connection_id, [e.id for e in events]))

        response = self.responses.get(connection_id, self.default)
        if callable(response) and not isinstance(response, (NotifyResult, Exception)):
            response = response(events)
        if isinstance(response, Exception):
            raise response
        return response

    def events_sent_to(self, connection_id: str) -> List[str]:
        return [event_id for conn, ids in self.calls if conn == connection_id for event_id in ids]


@pytest.fixture
def test_settings():
    """
    Provide test configuration settings.

    Disables environment variable loading for predictable tests.
    """
    return TestSettings()


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-15T10:02:00Z until advanced."""
    return FakeClock(datetime(2024, 1, 15, 10, 2, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def delivery_config():
    """Small retry budget and a long poll interval so tests drive cycles explicitly."""
    return DeliveryConfig(
        poll_interval_ms=60_000,
        batch_size=100,
        max_attempts=3,
        retry_delay_ms=1000,
        max_delay_ms=10_000,
        notify_timeout_seconds=1.0,
    )


@pytest.fixture
def memory_store(clock):
    return InMemoryDeliveryStore(clock=clock)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake AWS credentials so boto3 never reaches a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def dynamodb_resource(test_settings, aws_credentials):
    """
    Create mock DynamoDB tables for the event bus.

    Uses moto to mock AWS DynamoDB and creates the three tables with the
    same schema and indexes as production.
    """
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name=test_settings.aws_region)
        create_tables(
            dynamodb,
            events_table_name=test_settings.events_table_name,
            subscriptions_table_name=test_settings.subscriptions_table_name,
            deliveries_table_name=test_settings.deliveries_table_name,
        )
        yield dynamodb


@pytest.fixture
def dynamodb_store(test_settings, dynamodb_resource, clock):
    return DynamoDBDeliveryStore(
        events_table_name=test_settings.events_table_name,
        subscriptions_table_name=test_settings.subscriptions_table_name,
        deliveries_table_name=test_settings.deliveries_table_name,
        region_name=test_settings.aws_region,
        clock=clock,
    )


@pytest.fixture(params=["memory", "dynamodb"])
def store(request):
    """Run a test against every delivery store implementation."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def sample_event(clock):
    """A typical one-off event."""
    return Event(
        id="evt_order_1",
        source="conn_shop",
        type="order.created",
        time=clock(),
        subject="orders/1",
        data={"order_id": "1", "amount": 99.99, "currency": "USD"},
        created_at=clock(),
        updated_at=clock(),
    )
