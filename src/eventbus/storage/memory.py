"""
Module: memory.py
Description: In-process delivery store.

Keeps events, subscriptions and deliveries in dictionaries guarded by a
single asyncio.Lock. Every mutation runs under the lock without awaiting
anything else, so a claim is atomic with respect to every other caller
sharing the instance (several workers in one process included).

Suitable for tests and single-process deployments; state does not survive
a restart.

Key Components:
- InMemoryDeliveryStore: DeliveryStore implementation
- Injectable clock for deterministic scheduling in tests

Author: Event Bus Team
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from eventbus.delivery.retry import plan_failure
from eventbus.models.delivery import Delivery, DeliveryStatus, PendingDelivery
from eventbus.models.event import Event, EventStatus
from eventbus.models.subscription import Subscription, SubscriptionSpec, SyncResult
from eventbus.storage.base import DeliveryStore, derive_event_status
from eventbus.utils.logger import get_logger
from eventbus.utils.timeutils import Clock, ensure_utc, utc_now

logger = get_logger(__name__)


class InMemoryDeliveryStore(DeliveryStore):
    """
    Dictionary-backed delivery store.

    Attributes:
        events: Event records by id
        subscriptions: Subscriptions by id
        deliveries: Deliveries by id

    Example:
        >>> store = InMemoryDeliveryStore()
        >>> sub = await store.subscribe("conn_1", "order.created")
        >>> await store.publish_event(Event(id="evt_1", source="shop", type="order.created"))
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utc_now
        self._lock = asyncio.Lock()
        self.events: Dict[str, Event] = {}
        self.subscriptions: Dict[str, Subscription] = {}
        self.deliveries: Dict[str, Delivery] = {}

    def _now(self):
        return ensure_utc(self._clock())

    # --- events -----------------------------------------------------------

    async def publish_event(self, event: Event) -> Event:
        async with self._lock:
            if event.id in self.events:
                raise ValueError(f"Event {event.id} already exists")
            stored = event.model_copy(deep=True)
            self.events[stored.id] = stored

        logger.info("Event stored", event_id=event.id, event_type=event.type, cron=event.cron)
        return stored.model_copy(deep=True)

    async def get_event(self, event_id: str) -> Optional[Event]:
        event = self.events.get(event_id)
        return event.model_copy(deep=True) if event else None

    async def find_active_cron_event(self, event_type: str, source: str, cron: str) -> Optional[Event]:
        for event in self.events.values():
            if event.type == event_type and event.source == source and event.cron == cron and not event.cancelled:
                return event.model_copy(deep=True)
        return None

    async def list_active_cron_events(self, event_type: str) -> List[Event]:
        return [
            event.model_copy(deep=True)
            for event in self.events.values()
            if event.type == event_type and event.cron and not event.cancelled
        ]

    async def cancel_event(self, event_id: str, source: str) -> bool:
        async with self._lock:
            event = self.events.get(event_id)
            if event is None or event.source != source:
                return False

            event.cancelled = True
            event.updated_at = self._now()
            dropped = [
                delivery_id
                for delivery_id, delivery in self.deliveries.items()
                if delivery.event_id == event_id and delivery.status == DeliveryStatus.PENDING
            ]
            for delivery_id in dropped:
                del self.deliveries[delivery_id]

        logger.info("Event cancelled", event_id=event_id, dropped_deliveries=len(dropped))
        return True

    async def update_event_status(self, event_id: str) -> Optional[EventStatus]:
        async with self._lock:
            event = self.events.get(event_id)
            if event is None:
                return None

            statuses = [d.status for d in self.deliveries.values() if d.event_id == event_id]
            status = derive_event_status(statuses, cancelled=event.cancelled)
            if status is None:
                return None

            if event.status != status:
                event.status = status
                event.updated_at = self._now()
            return status

    # --- subscriptions ----------------------------------------------------

    async def subscribe(
        self,
        connection_id: str,
        event_type: str,
        publisher: Optional[str] = None,
        filter_spec: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        async with self._lock:
            for existing in self.subscriptions.values():
                if existing.same_registration(connection_id, event_type, publisher, filter_spec):
                    return existing.model_copy(deep=True)

            now = self._now()
            subscription = Subscription(
                id=str(uuid4()),
                connection_id=connection_id,
                event_type=event_type,
                publisher=publisher,
                filter=filter_spec,
                created_at=now,
                updated_at=now,
            )
            self.subscriptions[subscription.id] = subscription

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            connection_id=connection_id,
            event_type=event_type
        )
        return subscription.model_copy(deep=True)

    async def unsubscribe(self, subscription_id: str) -> bool:
        async with self._lock:
            return self.subscriptions.pop(subscription_id, None) is not None

    async def sync_subscriptions(self, connection_id: str, desired: List[SubscriptionSpec]) -> SyncResult:
        result = SyncResult()
        wanted = {spec.sync_key: spec for spec in desired}

        async with self._lock:
            now = self._now()
            seen = set()
            for subscription in list(self.subscriptions.values()):
                if subscription.connection_id != connection_id:
                    continue
                key = subscription.sync_key
                if key not in wanted or key in seen:
                    del self.subscriptions[subscription.id]
                    result.deleted_ids.append(subscription.id)
                    continue

                seen.add(key)
                new_filter = wanted[key].filter
                if (subscription.filter or None) != new_filter:
                    subscription.filter = new_filter
                    subscription.updated_at = now
                    result.updated += 1
                else:
                    result.unchanged += 1

            for key, spec in wanted.items():
                if key in seen:
                    continue
                subscription = Subscription(
                    id=str(uuid4()),
                    connection_id=connection_id,
                    event_type=spec.event_type,
                    publisher=spec.publisher,
                    filter=spec.filter,
                    created_at=now,
                    updated_at=now,
                )
                self.subscriptions[subscription.id] = subscription
                result.created += 1

            result.deleted = len(result.deleted_ids)
            result.subscriptions = [
                s.model_copy(deep=True) for s in self.subscriptions.values() if s.connection_id == connection_id
            ]

        logger.info(
            "Subscriptions synced",
            connection_id=connection_id,
            created=result.created,
            updated=result.updated,
            deleted=result.deleted
        )
        return result

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        subscription = self.subscriptions.get(subscription_id)
        return subscription.model_copy(deep=True) if subscription else None

    async def list_subscriptions(self, connection_id: Optional[str] = None) -> List[Subscription]:
        return [
            s.model_copy(deep=True)
            for s in self.subscriptions.values()
            if connection_id is None or s.connection_id == connection_id
        ]

    async def get_matching_subscriptions(self, event: Event) -> List[Subscription]:
        return [s.model_copy(deep=True) for s in self.subscriptions.values() if s.matches(event)]

    # --- deliveries -------------------------------------------------------

    async def create_deliveries(
        self,
        event_id: str,
        subscription_ids: List[str],
        deliver_at: Optional[datetime] = None,
    ) -> List[Delivery]:
        if not subscription_ids:
            return []

        async with self._lock:
            now = self._now()
            due = ensure_utc(deliver_at) if deliver_at else now
            created = []
            for subscription_id in subscription_ids:
                delivery = Delivery(
                    id=str(uuid4()),
                    event_id=event_id,
                    subscription_id=subscription_id,
                    next_attempt_at=due,
                    created_at=now,
                )
                self.deliveries[delivery.id] = delivery
                created.append(delivery.model_copy())

        logger.debug("Deliveries created", event_id=event_id, count=len(created), due=str(due))
        return created

    async def release_subscription_deliveries(self, subscription_id: str) -> List[str]:
        async with self._lock:
            released = [
                delivery
                for delivery in self.deliveries.values()
                if delivery.subscription_id == subscription_id and delivery.status == DeliveryStatus.PENDING
            ]
            for delivery in released:
                del self.deliveries[delivery.id]

        event_ids = list(dict.fromkeys(d.event_id for d in released))
        if released:
            logger.info(
                "Released pending deliveries of removed subscription",
                subscription_id=subscription_id,
                count=len(released)
            )
        return event_ids

    async def get_deliveries(self, event_id: str) -> List[Delivery]:
        return [d.model_copy() for d in self.deliveries.values() if d.event_id == event_id]

    async def has_open_deliveries(self, event_id: str) -> bool:
        return any(d.event_id == event_id and d.is_open for d in self.deliveries.values())

    async def claim_pending_deliveries(self, batch_size: int) -> List[PendingDelivery]:
        if batch_size <= 0:
            return []

        async with self._lock:
            now = self._now()
            due = []
            for delivery in self.deliveries.values():
                if delivery.status != DeliveryStatus.PENDING or delivery.next_attempt_at > now:
                    continue
                subscription = self.subscriptions.get(delivery.subscription_id)
                event = self.events.get(delivery.event_id)
                if subscription is None or not subscription.enabled or event is None:
                    continue
                due.append(delivery)

            due.sort(key=lambda d: (d.next_attempt_at, d.created_at))

            claimed = []
            for delivery in due[:batch_size]:
                delivery.status = DeliveryStatus.PROCESSING
                claimed.append(PendingDelivery(
                    delivery=delivery.model_copy(),
                    event=self.events[delivery.event_id].model_copy(deep=True),
                    subscription=self.subscriptions[delivery.subscription_id].model_copy(deep=True),
                ))

        return claimed

    async def reset_stuck_deliveries(self) -> int:
        async with self._lock:
            count = 0
            for delivery in self.deliveries.values():
                if delivery.status == DeliveryStatus.PROCESSING:
                    delivery.status = DeliveryStatus.PENDING
                    count += 1
        return count

    async def mark_deliveries_delivered(self, delivery_ids: List[str]) -> None:
        if not delivery_ids:
            return

        async with self._lock:
            now = self._now()
            for delivery_id in delivery_ids:
                delivery = self.deliveries.get(delivery_id)
                if delivery is None:
                    continue
                delivery.status = DeliveryStatus.DELIVERED
                delivery.delivered_at = now

    async def schedule_retry_without_attempt_increment(
        self,
        delivery_ids: List[str],
        retry_after_seconds: float,
    ) -> None:
        if not delivery_ids:
            return

        async with self._lock:
            next_attempt_at = self._now() + timedelta(seconds=retry_after_seconds)
            for delivery_id in delivery_ids:
                delivery = self.deliveries.get(delivery_id)
                if delivery is None:
                    continue
                delivery.status = DeliveryStatus.PENDING
                delivery.next_attempt_at = next_attempt_at

    async def mark_deliveries_failed(
        self,
        delivery_ids: List[str],
        error: str,
        max_attempts: int,
        retry_delay_ms: int,
        max_delay_ms: int,
    ) -> None:
        if not delivery_ids:
            return

        async with self._lock:
            now = self._now()
            for delivery_id in delivery_ids:
                delivery = self.deliveries.get(delivery_id)
                # Only rows still claimed by this cycle
                if delivery is None or delivery.status != DeliveryStatus.PROCESSING:
                    continue

                plan = plan_failure(
                    delivery.attempts, error, now, max_attempts, retry_delay_ms, max_delay_ms
                )
                delivery.attempts = plan.attempts
                delivery.last_error = plan.last_error
                delivery.status = plan.status
                if plan.next_attempt_at is not None:
                    delivery.next_attempt_at = plan.next_attempt_at

    async def ack_delivery(self, event_id: str, connection_id: str) -> bool:
        async with self._lock:
            now = self._now()
            acked = 0
            for delivery in self.deliveries.values():
                if delivery.event_id != event_id or delivery.status != DeliveryStatus.PENDING:
                    continue
                subscription = self.subscriptions.get(delivery.subscription_id)
                if subscription is None or subscription.connection_id != connection_id:
                    continue
                delivery.status = DeliveryStatus.DELIVERED
                delivery.delivered_at = now
                acked += 1

        if acked:
            logger.info("Deliveries acknowledged", event_id=event_id, connection_id=connection_id, count=acked)
        return acked > 0
