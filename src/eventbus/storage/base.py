"""
Module: base.py
Description: Delivery store contract.

Every durable mutation of events, subscriptions and deliveries goes
through this interface. Implementations must make
claim_pending_deliveries() a single atomic operation per delivery
(conditional update or row-locking claim): concurrent workers sharing a
store rely on it to never hold the same delivery at once.

Key Components:
- DeliveryStore: Abstract async store interface

Author: Event Bus Team
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from eventbus.models.delivery import Delivery, DeliveryStatus, OPEN_STATUSES, PendingDelivery
from eventbus.models.event import Event, EventStatus
from eventbus.models.subscription import Subscription, SubscriptionSpec, SyncResult


def derive_event_status(statuses: List[DeliveryStatus], cancelled: bool = False) -> Optional[EventStatus]:
    """
    Aggregate delivery statuses into an event status.

    Empty set: cancelled for a cancelled event, None otherwise. pending if
    any delivery is still open, delivered if every delivery is delivered,
    failed otherwise.
    """
    if not statuses:
        return EventStatus.CANCELLED if cancelled else None
    if any(status in OPEN_STATUSES for status in statuses):
        return EventStatus.PENDING
    if all(status == DeliveryStatus.DELIVERED for status in statuses):
        return EventStatus.DELIVERED
    return EventStatus.FAILED


class DeliveryStore(ABC):
    """Async persistence interface used by the worker and the event bus."""

    # --- events -----------------------------------------------------------

    @abstractmethod
    async def publish_event(self, event: Event) -> Event:
        """Insert a new event; returns the stored record."""

    @abstractmethod
    async def get_event(self, event_id: str) -> Optional[Event]:
        """Fetch an event, or None if it does not exist."""

    @abstractmethod
    async def find_active_cron_event(self, event_type: str, source: str, cron: str) -> Optional[Event]:
        """A recurring event with the same type, source and schedule that is not cancelled."""

    @abstractmethod
    async def list_active_cron_events(self, event_type: str) -> List[Event]:
        """Recurring events of a type that are not cancelled, any publisher."""

    @abstractmethod
    async def cancel_event(self, event_id: str, source: str) -> bool:
        """
        Cancel an event owned by `source`.

        Marks the event cancelled and drops its pending deliveries so a
        recurring schedule stops. Returns False if the event does not exist
        or belongs to another publisher.
        """

    @abstractmethod
    async def update_event_status(self, event_id: str) -> Optional[EventStatus]:
        """
        Recompute and persist an event's aggregate status from its deliveries.

        pending if any delivery is pending or processing, delivered if all
        are delivered, failed if any failed and none are open. A cancelled
        event left without deliveries becomes cancelled. Idempotent.
        Returns the persisted status, or None if the event has no deliveries
        and is not cancelled.
        """

    # --- subscriptions ----------------------------------------------------

    @abstractmethod
    async def subscribe(
        self,
        connection_id: str,
        event_type: str,
        publisher: Optional[str] = None,
        filter_spec: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Create a subscription, returning the existing one for an identical registration."""

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        """
        Delete a subscription. Returns whether one was deleted.

        Its pending deliveries are not touched; callers release them with
        release_subscription_deliveries() once the subscription is gone.
        """

    @abstractmethod
    async def sync_subscriptions(self, connection_id: str, desired: List[SubscriptionSpec]) -> SyncResult:
        """
        Reconcile a connection's subscriptions with a desired set.

        Subscriptions are keyed by (event_type, publisher): missing keys are
        created, keys absent from `desired` are deleted and changed filters
        are updated in place. Extra subscriptions sharing a key are deleted.
        Deleted ids are reported in the result.
        """

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """Fetch a subscription, or None."""

    @abstractmethod
    async def list_subscriptions(self, connection_id: Optional[str] = None) -> List[Subscription]:
        """List subscriptions, optionally for one connection."""

    @abstractmethod
    async def get_matching_subscriptions(self, event: Event) -> List[Subscription]:
        """Current enabled subscriptions that want the event."""

    # --- deliveries -------------------------------------------------------

    @abstractmethod
    async def create_deliveries(
        self,
        event_id: str,
        subscription_ids: List[str],
        deliver_at: Optional[datetime] = None,
    ) -> List[Delivery]:
        """Create pending deliveries, due at `deliver_at` (now when omitted)."""

    @abstractmethod
    async def release_subscription_deliveries(self, subscription_id: str) -> List[str]:
        """
        Delete the pending deliveries of a subscription.

        Rows already claimed are left to the worker. Returns the ids of the
        events that lost a delivery, so their status and schedule can be
        settled.
        """

    @abstractmethod
    async def get_deliveries(self, event_id: str) -> List[Delivery]:
        """All deliveries of an event."""

    @abstractmethod
    async def has_open_deliveries(self, event_id: str) -> bool:
        """Whether any delivery of the event is pending or processing."""

    @abstractmethod
    async def claim_pending_deliveries(self, batch_size: int) -> List[PendingDelivery]:
        """
        Atomically claim up to `batch_size` due pending deliveries.

        Claimed rows move to processing in the same operation. Oldest due
        first. Deliveries of disabled or deleted subscriptions are skipped.
        """

    @abstractmethod
    async def reset_stuck_deliveries(self) -> int:
        """Move every processing delivery back to pending; returns the count."""

    @abstractmethod
    async def mark_deliveries_delivered(self, delivery_ids: List[str]) -> None:
        """Mark deliveries delivered (terminal)."""

    @abstractmethod
    async def schedule_retry_without_attempt_increment(
        self,
        delivery_ids: List[str],
        retry_after_seconds: float,
    ) -> None:
        """Soft defer: back to pending after `retry_after_seconds`, attempts unchanged."""

    @abstractmethod
    async def mark_deliveries_failed(
        self,
        delivery_ids: List[str],
        error: str,
        max_attempts: int,
        retry_delay_ms: int,
        max_delay_ms: int,
    ) -> None:
        """Record a failed attempt and apply the backoff / permanent failure policy."""

    @abstractmethod
    async def ack_delivery(self, event_id: str, connection_id: str) -> bool:
        """
        Acknowledge out-of-band processing of an event by a connection.

        Marks that connection's open, unclaimed deliveries of the event
        delivered. Returns whether any delivery was acknowledged.
        """
