"""
Module: request.py
Description: API request models for the event bus.

Defines request models for incoming API calls. These models handle
input validation for the HTTP endpoints; the caller's connection id is
taken from the X-Connection-Id header, not from the body.

Key Components:
- PublishEventRequest: Model for POST /events requests
- SubscribeRequest: Model for POST /subscriptions requests
- SyncSubscriptionsRequest: Model for PUT /subscriptions requests

Dependencies: pydantic, datetime, typing
Author: Event Bus Team
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from eventbus.models.subscription import SubscriptionSpec


class PublishEventRequest(BaseModel):
    """
    Request model for publishing events.

    Attributes:
        type: Event type (required, e.g., 'order.created')
        data: Optional payload (any JSON value)
        target: Optional connection id that alone receives the event
        subject: Optional resource identifier
        dataschema: Optional schema URI for data
        deliver_at: Optional earliest delivery time
        cron: Optional cron expression for recurring delivery
        id: Optional explicit event id
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    type: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Event type identifier"
    )
    data: Optional[Any] = Field(
        default=None,
        description="Event payload data"
    )
    target: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Deliver only to this connection"
    )
    subject: Optional[str] = Field(
        default=None,
        max_length=1024,
        description="Resource the event is about"
    )
    dataschema: Optional[str] = Field(
        default=None,
        description="Schema URI for data"
    )
    deliver_at: Optional[datetime] = Field(
        default=None,
        description="Deliver no earlier than this instant"
    )
    cron: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Cron expression for recurring delivery"
    )
    id: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=255,
        description="Explicit event id"
    )

    @field_validator('cron')
    @classmethod
    def validate_cron_not_blank(cls, v: Optional[str]) -> Optional[str]:
        """Treat a blank cron expression as absent."""
        if v is not None and not v.strip():
            return None
        return v


class SubscribeRequest(BaseModel):
    """
    Request model for creating subscriptions.

    Attributes:
        event_type: Event type to subscribe to
        publisher: Optional source restriction
        filter: Optional field conditions, e.g. {"data.amount[gte]": 10}
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
    )

    event_type: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Event type to receive"
    )
    publisher: Optional[str] = Field(
        default=None,
        min_length=1,
        description="Only receive events from this source"
    )
    filter: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Field conditions over the event"
    )


class SyncSubscriptionsRequest(BaseModel):
    """
    Desired subscription set of the calling connection.

    Subscriptions are identified by (event_type, publisher); listing the
    same pair twice is rejected.
    """

    subscriptions: List[SubscriptionSpec] = Field(
        default_factory=list,
        description="Subscriptions the connection should end up with"
    )

    @field_validator('subscriptions')
    @classmethod
    def validate_unique_keys(cls, v: List[SubscriptionSpec]) -> List[SubscriptionSpec]:
        keys = [spec.sync_key for spec in v]
        if len(keys) != len(set(keys)):
            raise ValueError("subscriptions must be unique by (event_type, publisher)")
        return v
