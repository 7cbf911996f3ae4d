"""
Module: test_settings.py
Description: Unit tests for settings and delivery configuration.
"""

import pytest
from pydantic import ValidationError

from eventbus.config.settings import DeliveryConfig, Settings


class TestDeliveryConfig:

    def test_defaults(self):
        config = DeliveryConfig()

        assert config.poll_interval_ms == 5000
        assert config.batch_size == 100
        assert config.max_attempts == 20
        assert config.retry_delay_ms == 1000
        assert config.max_delay_ms == 3_600_000

    def test_backoff_ceiling_below_base(self):
        with pytest.raises(ValidationError, match="max_delay_ms"):
            DeliveryConfig(retry_delay_ms=5000, max_delay_ms=1000)

    @pytest.mark.parametrize("field", ["poll_interval_ms", "batch_size", "max_attempts"])
    def test_positive_fields(self, field):
        with pytest.raises(ValidationError):
            DeliveryConfig(**{field: 0})


class TestSettings:

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "DynamoDB")
        monkeypatch.setenv("BATCH_SIZE", "25")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("WEBHOOK_ENDPOINTS", '{"conn_b": "https://b.example.com/hook"}')

        config = Settings(_env_file=None)

        assert config.storage_backend == "dynamodb"
        assert config.log_level == "DEBUG"
        assert config.webhook_endpoints == {"conn_b": "https://b.example.com/hook"}
        assert config.delivery_config().batch_size == 25

    def test_invalid_storage_backend(self):
        with pytest.raises(ValidationError, match="storage_backend"):
            Settings(_env_file=None, storage_backend="redis")

    def test_invalid_table_name(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, events_table_name="bad table!")

    def test_webhook_template_needs_placeholder(self):
        with pytest.raises(ValidationError, match="connection_id"):
            Settings(_env_file=None, webhook_url_template="https://hooks.example.com/static")

        config = Settings(_env_file=None, webhook_url_template="https://hooks.example.com/{connection_id}")
        assert config.webhook_url_template.endswith("{connection_id}")
