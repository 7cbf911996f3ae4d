"""
Module: filters.py
Description: Subscription filter parsing and matching.

A subscription may narrow the events it receives with field conditions
over the event record. Conditions are expressed as a mapping of
`field[operator]` keys to values, for example:

    {"data.order.total[gte]": 100, "subject[startswith]": "orders/"}

Key Components:
- EventFilter: A single parsed condition
- parse_filter(): Turn a filter mapping into EventFilter objects
- event_matches_filter(): Evaluate a filter mapping against an event
- Support for nested paths into the event data (data.customer.email)
- Operators: eq, ne, gt, gte, lt, lte, contains, startswith

Author: Event Bus Team
"""

import re
from typing import Any, Dict, Optional, Tuple

from eventbus.utils.logger import get_logger

logger = get_logger(__name__)

VALID_OPERATORS = {'eq', 'gt', 'gte', 'lt', 'lte', 'ne', 'contains', 'startswith'}


class EventFilter:
    """
    Represents a single filter condition.

    Attributes:
        field: The field path (e.g., 'data.order_id', 'subject')
        operator: The comparison operator
        value: The value to compare against
    """

    def __init__(self, field: str, operator: str, value: Any):
        self.field = field
        self.operator = operator
        self.value = value

    def __repr__(self):
        return f"EventFilter(field='{self.field}', operator='{self.operator}', value={self.value!r})"


def parse_filter(filter_spec: Optional[Dict[str, Any]]) -> Dict[str, EventFilter]:
    """
    Parse a subscription filter mapping into EventFilter objects.

    Args:
        filter_spec: Mapping of `field` or `field[operator]` keys to values

    Returns:
        Dictionary mapping the original keys to EventFilter objects

    Raises:
        ValueError: If a key is malformed or uses an unknown operator

    Examples:
        >>> parse_filter({'data.order_id': '12345', 'data.amount[gte]': 10})
        {'data.order_id': EventFilter(field='data.order_id', operator='eq', value='12345'),
         'data.amount[gte]': EventFilter(field='data.amount', operator='gte', value=10)}
    """
    filters = {}
    if not filter_spec:
        return filters

    for key, value in filter_spec.items():
        field, operator = _parse_key(key)
        filters[key] = EventFilter(field, operator, value)

    return filters


def _parse_key(key: str) -> Tuple[str, str]:
    """
    Parse a filter key into field and operator.

    Supports formats:
    - field (defaults to 'eq' operator)
    - field[operator]

    Raises:
        ValueError: If the key format is invalid
    """
    bracket_match = re.match(r'^([^[\]]+)\[([^[\]]+)\]$', key)

    if bracket_match:
        field = bracket_match.group(1)
        operator = bracket_match.group(2)

        if operator not in VALID_OPERATORS:
            raise ValueError(f"Invalid operator '{operator}'. Valid operators: {sorted(VALID_OPERATORS)}")
    else:
        field = key
        operator = 'eq'

    if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_.]*$', field):
        raise ValueError(f"Filter field '{field}' contains invalid characters")

    return field, operator


def event_matches_filter(event, filter_spec: Optional[Dict[str, Any]]) -> bool:
    """
    Check if an event satisfies every condition of a filter mapping.

    An empty or missing filter matches every event. A filter that cannot
    be parsed matches nothing, so a broken subscription never receives
    events it did not ask for.

    Args:
        event: Event object
        filter_spec: Subscription filter mapping

    Returns:
        True if the event matches all conditions, False otherwise
    """
    if not filter_spec:
        return True

    try:
        filters = parse_filter(filter_spec)
    except ValueError as e:
        logger.warning("Invalid subscription filter", filter=filter_spec, error=str(e))
        return False

    for filter_obj in filters.values():
        if not _event_matches_condition(event, filter_obj):
            return False
    return True


def _event_matches_condition(event, filter_obj: EventFilter) -> bool:
    """Check if an event matches a single condition."""
    operator = filter_obj.operator
    value = filter_obj.value

    field_value = _get_field_value(event, filter_obj.field)
    if field_value is None:
        return False

    try:
        if operator == 'eq':
            return field_value == value
        elif operator == 'ne':
            return field_value != value
        elif operator == 'gt':
            return field_value > value
        elif operator == 'gte':
            return field_value >= value
        elif operator == 'lt':
            return field_value < value
        elif operator == 'lte':
            return field_value <= value
        elif operator == 'contains':
            if isinstance(field_value, str):
                return str(value) in field_value
            if isinstance(field_value, (list, tuple)):
                return value in field_value
            return False
        elif operator == 'startswith':
            if isinstance(field_value, str):
                return field_value.startswith(str(value))
            return False
    except TypeError:
        # Ordering comparison between incompatible types
        return False

    return False


def _get_field_value(event, field: str) -> Any:
    """
    Extract a field value from an event, supporting nested paths.

    Args:
        event: Event object
        field: Field path (e.g., 'data.order_id', 'source')

    Returns:
        The field value, or None if not found
    """
    parts = field.split('.')
    current = event

    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return None

    return current
