"""
Module: event.py
Description: Event data models for the event bus.

Defines the Event record persisted by the delivery store and the
CloudEvents v1.0 envelope that subscribers receive.

Key Components:
- Event: Published event with optional cron recurrence
- EventStatus: Aggregate delivery status derived from deliveries
- CloudEvent: Wire envelope projected from an Event

Dependencies: pydantic, datetime, typing
Author: Event Bus Team
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from eventbus.utils.timeutils import ensure_utc, to_iso, utc_now


class EventStatus(str, Enum):
    """Aggregate status of an event across all of its deliveries."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CloudEvent(BaseModel):
    """
    CloudEvents v1.0 envelope delivered to subscribers.

    Optional attributes are omitted from the serialized form when unset.
    """

    specversion: str = "1.0"
    id: str
    source: str
    type: str
    time: str
    subject: Optional[str] = None
    datacontenttype: str = "application/json"
    dataschema: Optional[str] = None
    data: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the envelope, dropping unset optional attributes."""
        return self.model_dump(exclude_none=True)


class Event(BaseModel):
    """
    Event model representing a published event.

    Attributes:
        id: Unique event identifier
        source: Publisher identity (connection id of the publisher)
        type: Event type (e.g., 'order.created')
        time: When the event occurred
        subject: Optional resource identifier
        datacontenttype: Content type of data
        dataschema: Optional schema URI for data
        data: Optional event payload (any JSON value)
        target: Optional connection id; only that connection receives the event
        cron: Optional cron expression making the event recurring
        status: Aggregate delivery status, written by reconciliation only
          (cancelled once a cancelled event has no deliveries left)
        cancelled: Whether a recurring event has been cancelled
        created_at: When the event was stored
        updated_at: When the event record last changed
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True,
    )

    id: str = Field(..., min_length=1, description="Unique event identifier")
    source: str = Field(..., min_length=1, description="Publisher connection id")
    type: str = Field(..., min_length=1, max_length=255, description="Event type identifier")
    time: datetime = Field(default_factory=utc_now, description="Event timestamp")
    subject: Optional[str] = Field(default=None, description="Resource identifier")
    datacontenttype: str = Field(default="application/json", description="Content type of data")
    dataschema: Optional[str] = Field(default=None, description="Schema URI for data")
    data: Optional[Any] = Field(default=None, description="Event payload")
    target: Optional[str] = Field(default=None, min_length=1, description="Only this connection receives the event")
    cron: Optional[str] = Field(default=None, description="Cron expression for recurring events")
    status: EventStatus = Field(default=EventStatus.PENDING, description="Aggregate delivery status")
    cancelled: bool = Field(default=False, description="Recurring schedule cancelled")
    created_at: datetime = Field(default_factory=utc_now, description="Creation timestamp")
    updated_at: datetime = Field(default_factory=utc_now, description="Last update timestamp")

    @field_validator('type')
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Validate event type follows naming conventions."""
        if not re.match(r'^[A-Za-z0-9._:/-]+$', v):
            raise ValueError(
                "type must contain only letters, numbers, dots, colons, slashes, hyphens, and underscores"
            )
        return v

    @field_validator('time', 'created_at', 'updated_at')
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        """Normalize timestamps to aware UTC."""
        return ensure_utc(v)

    @field_serializer('time', 'created_at', 'updated_at')
    def serialize_datetime(self, v: datetime) -> str:
        return to_iso(v)

    @property
    def is_recurring(self) -> bool:
        """Whether the event carries a cron schedule."""
        return bool(self.cron)

    def to_cloud_event(self) -> CloudEvent:
        """Project the event onto the CloudEvents envelope."""
        return CloudEvent(
            id=self.id,
            source=self.source,
            type=self.type,
            time=to_iso(self.time),
            subject=self.subject,
            datacontenttype=self.datacontenttype,
            dataschema=self.dataschema,
            data=self.data,
        )
