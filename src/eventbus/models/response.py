"""
Module: response.py
Description: API response models for the event bus.

Key Components:
- EventResponse: Event details, optionally with its deliveries
- DeliveryResponse: Per-subscription delivery state
- SubscriptionResponse: Subscription details
- OperationResponse: Outcome of ack / cancel
- SyncSubscriptionsResponse: Outcome of PUT /subscriptions

Dependencies: pydantic, datetime, typing
Author: Event Bus Team
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from eventbus.models.delivery import Delivery
from eventbus.models.event import Event
from eventbus.models.subscription import Subscription, SyncResult


class DeliveryResponse(BaseModel):
    """Delivery state of an event for one subscription."""

    id: str
    subscription_id: str
    status: str
    attempts: int
    next_attempt_at: datetime
    last_error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_delivery(cls, delivery: Delivery) -> "DeliveryResponse":
        return cls(
            id=delivery.id,
            subscription_id=delivery.subscription_id,
            status=delivery.status.value,
            attempts=delivery.attempts,
            next_attempt_at=delivery.next_attempt_at,
            last_error=delivery.last_error,
            delivered_at=delivery.delivered_at,
        )


class EventResponse(BaseModel):
    """
    Response model for event operations.

    Attributes:
        id: Unique event identifier
        source: Publisher connection id
        type: Event type
        time: Event timestamp
        status: Aggregate delivery status
        target: Connection the event is addressed to
        cron: Cron expression of a recurring event
        cancelled: Whether the event was cancelled
        deliveries: Delivery details (GET /events/{id} only)
    """

    id: str = Field(..., description="Unique event identifier")
    source: str = Field(..., description="Publisher connection id")
    type: str = Field(..., description="Event type identifier")
    time: datetime = Field(..., description="Event timestamp")
    subject: Optional[str] = None
    datacontenttype: str = "application/json"
    dataschema: Optional[str] = None
    data: Optional[Any] = None
    target: Optional[str] = None
    cron: Optional[str] = None
    status: str = Field(..., description="Aggregate delivery status")
    cancelled: bool = False
    created_at: datetime
    updated_at: datetime
    deliveries: Optional[List[DeliveryResponse]] = None

    @classmethod
    def from_event(cls, event: Event, deliveries: Optional[List[Delivery]] = None) -> "EventResponse":
        return cls(
            id=event.id,
            source=event.source,
            type=event.type,
            time=event.time,
            subject=event.subject,
            datacontenttype=event.datacontenttype,
            dataschema=event.dataschema,
            data=event.data,
            target=event.target,
            cron=event.cron,
            status=event.status.value,
            cancelled=event.cancelled,
            created_at=event.created_at,
            updated_at=event.updated_at,
            deliveries=(
                [DeliveryResponse.from_delivery(d) for d in deliveries]
                if deliveries is not None else None
            ),
        )


class SubscriptionResponse(BaseModel):
    """Response model for subscription operations."""

    id: str
    connection_id: str
    event_type: str
    publisher: Optional[str] = None
    filter: Optional[Dict[str, Any]] = None
    enabled: bool = True
    created_at: datetime

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            connection_id=subscription.connection_id,
            event_type=subscription.event_type,
            publisher=subscription.publisher,
            filter=subscription.filter,
            enabled=subscription.enabled,
            created_at=subscription.created_at,
        )


class OperationResponse(BaseModel):
    """Outcome of an ack or cancel request."""

    success: bool
    message: Optional[str] = None


class SyncSubscriptionsResponse(BaseModel):
    """Summary of a subscription sync and the resulting subscription set."""

    created: int
    updated: int
    deleted: int
    unchanged: int
    subscriptions: List[SubscriptionResponse]

    @classmethod
    def from_result(cls, result: SyncResult) -> "SyncSubscriptionsResponse":
        return cls(
            created=result.created,
            updated=result.updated,
            deleted=result.deleted,
            unchanged=result.unchanged,
            subscriptions=[SubscriptionResponse.from_subscription(s) for s in result.subscriptions],
        )
