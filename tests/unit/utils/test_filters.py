"""
Module: test_filters.py
Description: Unit tests for subscription filter parsing and matching.
"""

import pytest

from eventbus.models.event import Event
from eventbus.utils.filters import EventFilter, event_matches_filter, parse_filter


@pytest.fixture
def order_event():
    return Event(
        id="evt_1",
        source="conn_shop",
        type="order.created",
        subject="orders/42",
        data={
            "amount": 120,
            "customer": {"email": "ada@example.com", "tier": "gold"},
            "tags": ["priority", "gift"],
        },
    )


class TestParseFilter:

    def test_plain_key_defaults_to_eq(self):
        filters = parse_filter({"data.customer.tier": "gold"})

        parsed = filters["data.customer.tier"]
        assert isinstance(parsed, EventFilter)
        assert parsed.field == "data.customer.tier"
        assert parsed.operator == "eq"
        assert parsed.value == "gold"

    def test_bracket_operator(self):
        parsed = parse_filter({"data.amount[gte]": 100})["data.amount[gte]"]

        assert parsed.field == "data.amount"
        assert parsed.operator == "gte"

    def test_empty_filter(self):
        assert parse_filter(None) == {}
        assert parse_filter({}) == {}

    @pytest.mark.parametrize("key", ["data.amount[between]", "data amount", "data.amount[gte", "[gte]"])
    def test_malformed_keys_rejected(self, key):
        with pytest.raises(ValueError):
            parse_filter({key: 1})


class TestEventMatchesFilter:

    def test_no_filter_matches_everything(self, order_event):
        assert event_matches_filter(order_event, None)
        assert event_matches_filter(order_event, {})

    @pytest.mark.parametrize("filter_spec, expected", [
        ({"data.amount[gt]": 100}, True),
        ({"data.amount[lt]": 100}, False),
        ({"data.amount[lte]": 120}, True),
        ({"data.amount[ne]": 120}, False),
        ({"data.customer.tier": "gold"}, True),
        ({"data.customer.email[contains]": "@example.com"}, True),
        ({"data.tags[contains]": "gift"}, True),
        ({"data.tags[contains]": "fragile"}, False),
        ({"subject[startswith]": "orders/"}, True),
        ({"source": "conn_shop", "data.amount[gte]": 200}, False),
    ])
    def test_operators(self, order_event, filter_spec, expected):
        assert event_matches_filter(order_event, filter_spec) is expected

    def test_missing_field_does_not_match(self, order_event):
        assert not event_matches_filter(order_event, {"data.shipping.country": "NL"})

    def test_incomparable_types_do_not_match(self, order_event):
        assert not event_matches_filter(order_event, {"data.customer.tier[gt]": 5})

    def test_invalid_filter_matches_nothing(self, order_event):
        assert not event_matches_filter(order_event, {"data.amount[between]": 1})
