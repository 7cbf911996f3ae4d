"""
Module: models
Description: Package initialization for Pydantic data models.

This package contains all data models used by the event bus:
- Event / CloudEvent: Published events and their wire envelope
- Subscription: Registration of a connection's interest in an event type
- Delivery / PendingDelivery: Units of delivery work
- NotifyResult / EventResult: Subscriber notification outcomes

All models are exported here for convenient importing.
"""

from .event import CloudEvent, Event, EventStatus
from .subscription import Subscription, SubscriptionSpec, SyncResult
from .delivery import Delivery, DeliveryStatus, PendingDelivery
from .notify import EventResult, NotifyResult

__all__ = [
    "CloudEvent",
    "Event",
    "EventStatus",
    "Subscription",
    "SubscriptionSpec",
    "SyncResult",
    "Delivery",
    "DeliveryStatus",
    "PendingDelivery",
    "EventResult",
    "NotifyResult",
]
