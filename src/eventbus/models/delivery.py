"""
Module: delivery.py
Description: Delivery models, the unit of work of the delivery worker.

Key Components:
- DeliveryStatus: pending -> processing -> delivered | failed, with the
  retry loop processing -> pending
- Delivery: One (event, subscription) pairing
- PendingDelivery: Delivery joined with its event and subscription, as
  returned by the claim operation

Dependencies: pydantic, datetime, typing
Author: Event Bus Team
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_serializer, field_validator

from eventbus.models.event import Event
from eventbus.models.subscription import Subscription
from eventbus.utils.timeutils import ensure_utc, to_iso, utc_now


class DeliveryStatus(str, Enum):
    """Lifecycle states of a delivery."""

    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"
    FAILED = "failed"


OPEN_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.PROCESSING})


class Delivery(BaseModel):
    """
    Obligation to transmit one event to one subscription.

    Attributes:
        id: Unique delivery identifier
        event_id: Event being delivered
        subscription_id: Subscription receiving the event
        status: Current lifecycle state
        attempts: Failed attempts so far (soft defers do not count)
        next_attempt_at: Earliest time the delivery may be claimed
        last_error: Last failure message
        delivered_at: When the delivery was marked delivered
        created_at: Creation timestamp
    """

    id: str = Field(..., min_length=1)
    event_id: str = Field(..., min_length=1)
    subscription_id: str = Field(..., min_length=1)
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = Field(default=0, ge=0)
    next_attempt_at: datetime = Field(default_factory=utc_now)
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator('next_attempt_at', 'created_at')
    @classmethod
    def validate_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @field_validator('delivered_at')
    @classmethod
    def validate_optional_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @field_serializer('next_attempt_at', 'created_at')
    def serialize_datetime(self, v: datetime) -> str:
        return to_iso(v)

    @field_serializer('delivered_at')
    def serialize_optional_datetime(self, v: Optional[datetime]) -> Optional[str]:
        return to_iso(v) if v is not None else None

    @property
    def is_open(self) -> bool:
        """Whether the delivery still awaits resolution."""
        return self.status in OPEN_STATUSES


class PendingDelivery(BaseModel):
    """Claimed delivery together with its event and subscription."""

    delivery: Delivery
    event: Event
    subscription: Subscription
