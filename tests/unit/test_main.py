"""
Module: test_main.py
Description: Unit tests for application wiring.
"""

from eventbus.bus import EventBus
from eventbus.config.settings import Settings
from eventbus.delivery.push import WebhookNotifier
from eventbus.main import build_event_bus, build_store
from eventbus.storage.dynamodb import DynamoDBDeliveryStore
from eventbus.storage.memory import InMemoryDeliveryStore


def test_build_memory_store():
    assert isinstance(build_store(Settings(_env_file=None)), InMemoryDeliveryStore)


def test_build_dynamodb_store(dynamodb_resource, test_settings):
    config = Settings(
        _env_file=None,
        storage_backend="dynamodb",
        events_table_name=test_settings.events_table_name,
        subscriptions_table_name=test_settings.subscriptions_table_name,
        deliveries_table_name=test_settings.deliveries_table_name,
    )

    store = build_store(config)

    assert isinstance(store, DynamoDBDeliveryStore)
    assert store.deliveries_table.name == test_settings.deliveries_table_name


def test_build_event_bus_uses_settings():
    config = Settings(
        _env_file=None,
        batch_size=10,
        notify_timeout_seconds=2.5,
        webhook_url_template="https://hooks.example.com/{connection_id}",
        webhook_endpoints={"conn_b": "https://b.example.com/hook"},
    )

    bus = build_event_bus(config)

    assert isinstance(bus, EventBus)
    assert bus.worker.config.batch_size == 10
    assert bus.worker.config.notify_timeout_seconds == 2.5
    assert isinstance(bus.worker.notifier, WebhookNotifier)
    assert bus.worker.notifier.resolver("conn_b") == "https://b.example.com/hook"
    assert bus.worker.notifier.resolver("conn_c") == "https://hooks.example.com/conn_c"
