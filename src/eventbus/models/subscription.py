"""
Module: subscription.py
Description: Subscription model linking a subscriber connection to events.

Key Components:
- Subscription: Standing registration of interest in an event type
- Subscription.matches(): Matching rule shared by every store
- SubscriptionSpec: Desired subscription in a sync request
- SyncResult: Outcome of reconciling a connection's subscriptions

Dependencies: pydantic, datetime, typing
Author: Event Bus Team
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from eventbus.models.event import Event
from eventbus.utils.filters import event_matches_filter, parse_filter
from eventbus.utils.timeutils import ensure_utc, to_iso, utc_now


class Subscription(BaseModel):
    """
    Subscription of a connection to an event type.

    Attributes:
        id: Unique subscription identifier
        connection_id: Subscriber identity that receives the events
        event_type: Event type to match exactly
        publisher: Optional source restriction (None matches every source)
        filter: Optional field conditions over the event
        enabled: Disabled subscriptions neither match nor get claimed
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    id: str = Field(..., min_length=1)
    connection_id: str = Field(..., min_length=1)
    event_type: str = Field(..., min_length=1, max_length=255)
    publisher: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('filter')
    @classmethod
    def validate_filter(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        """Reject filters that cannot be parsed; normalize empty filters to None."""
        if not v:
            return None
        parse_filter(v)
        return v

    @field_validator('created_at', 'updated_at')
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_serializer('created_at', 'updated_at')
    def serialize_datetime(self, v: datetime) -> str:
        return to_iso(v)

    def matches(self, event: Event) -> bool:
        """
        Check whether this subscription wants the given event.

        Args:
            event: Event to test

        Returns:
            True if enabled, the type matches, the publisher restriction (if
            any) equals the event source, a targeted event names this
            connection and the filter (if any) holds
        """
        if not self.enabled:
            return False
        if event.target is not None and event.target != self.connection_id:
            return False
        if self.event_type != event.type:
            return False
        if self.publisher is not None and self.publisher != event.source:
            return False
        return event_matches_filter(event, self.filter)

    def same_registration(
        self,
        connection_id: str,
        event_type: str,
        publisher: Optional[str],
        filter_spec: Optional[Dict[str, Any]],
    ) -> bool:
        """Whether this subscription is the idempotency twin of the given registration."""
        return (
            self.connection_id == connection_id
            and self.event_type == event_type
            and self.publisher == publisher
            and (self.filter or None) == (filter_spec or None)
        )

    @property
    def sync_key(self) -> Tuple[str, Optional[str]]:
        """Identity of the subscription within a connection's sync set."""
        return (self.event_type, self.publisher)


class SubscriptionSpec(BaseModel):
    """Desired subscription of a connection, identified by (event_type, publisher)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    event_type: str = Field(..., min_length=1, max_length=255)
    publisher: Optional[str] = Field(default=None, min_length=1)
    filter: Optional[Dict[str, Any]] = None

    @field_validator('filter')
    @classmethod
    def validate_filter(cls, v: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not v:
            return None
        parse_filter(v)
        return v

    @property
    def sync_key(self) -> Tuple[str, Optional[str]]:
        return (self.event_type, self.publisher)


class SyncResult(BaseModel):
    """
    Outcome of syncing a connection's subscriptions to a desired set.

    Attributes:
        created: Number of subscriptions created
        updated: Number of subscriptions whose filter changed
        deleted: Number of subscriptions removed
        unchanged: Number of subscriptions left as they were
        deleted_ids: Ids of the removed subscriptions
        subscriptions: The connection's subscriptions after the sync
    """

    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    deleted_ids: List[str] = Field(default_factory=list)
    subscriptions: List[Subscription] = Field(default_factory=list)
