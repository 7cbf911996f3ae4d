"""
Module: bus.py
Description: Event bus facade.

Single entry point for publishers and subscribers. Owns one delivery
worker, created explicitly in the constructor, and exposes:

- publish(): store an event and fan it out to current subscriptions,
  immediately, at a given instant, or on a cron schedule
- subscribe() / unsubscribe() / sync_subscriptions() / list_subscriptions()
  / get_subscription()
- ack(): out-of-band confirmation of a deferred delivery
- cancel(): stop a (recurring) event
- start() / stop(): worker lifecycle

Key Components:
- EventBus: Facade over a DeliveryStore, a Notifier and a DeliveryWorker

Dependencies: asyncio, croniter (through delivery.schedule)
Author: Event Bus Team
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from eventbus.config.settings import DeliveryConfig
from eventbus.delivery.notifier import Notifier
from eventbus.delivery.schedule import next_cron_run, validate_cron
from eventbus.delivery.worker import DeliveryWorker
from eventbus.exceptions import DuplicateEventError, InvalidCronExpression, ValidationError
from eventbus.models.delivery import Delivery
from eventbus.models.event import Event
from eventbus.models.subscription import Subscription, SubscriptionSpec, SyncResult
from eventbus.storage.base import DeliveryStore
from eventbus.utils.logger import get_logger
from eventbus.utils.timeutils import Clock, ensure_utc, utc_now

logger = get_logger(__name__)


class EventBus:
    """
    Publish/subscribe facade with background delivery.

    Attributes:
        store: Delivery store
        worker: Delivery worker owned by this bus

    Example:
        >>> bus = EventBus(InMemoryDeliveryStore(), notifier)
        >>> await bus.start()
        >>> await bus.subscribe("conn_billing", "order.created")
        >>> await bus.publish("conn_shop", "order.created", data={"order_id": 42})
        >>> await bus.stop()
    """

    def __init__(
        self,
        store: DeliveryStore,
        notifier: Notifier,
        config: Optional[DeliveryConfig] = None,
        clock: Optional[Clock] = None,
        wake_on_publish: bool = True,
    ):
        """
        Initialize the event bus.

        Args:
            store: Delivery store shared with the worker
            notifier: Transport used to reach subscribers
            config: Worker configuration (defaults when omitted)
            clock: Time source, defaults to the system UTC clock
            wake_on_publish: Run a delivery cycle right after an immediate publish
        """
        self.store = store
        self.worker = DeliveryWorker(store, notifier, config, clock=clock)
        self.wake_on_publish = wake_on_publish
        self._clock = clock or utc_now
        self._running = False
        self._wake_tasks: Set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    # --- lifecycle --------------------------------------------------------

    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start background delivery.

        Resets deliveries stuck in processing, then runs one cycle right
        away so work queued before startup does not wait a poll interval.
        """
        if self._running:
            return

        await self.worker.start()
        self._running = True
        await self.worker.process_now()

        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop background delivery, letting in-flight work finish."""
        if not self._running:
            return
        self._running = False

        await self.worker.stop()
        if self._wake_tasks:
            await asyncio.gather(*self._wake_tasks, return_exceptions=True)

        logger.info("Event bus stopped")

    def _wake_worker(self) -> None:
        task = asyncio.get_running_loop().create_task(self.worker.process_now())
        self._wake_tasks.add(task)
        task.add_done_callback(self._wake_tasks.discard)

    # --- events -----------------------------------------------------------

    async def publish(
        self,
        source: str,
        event_type: str,
        data: Optional[Any] = None,
        subject: Optional[str] = None,
        dataschema: Optional[str] = None,
        deliver_at: Optional[datetime] = None,
        cron: Optional[str] = None,
        event_id: Optional[str] = None,
        target: Optional[str] = None,
    ) -> Event:
        """
        Publish an event to every matching subscription.

        Args:
            source: Publisher connection id
            event_type: Event type
            data: Optional payload
            subject: Optional resource identifier
            dataschema: Optional schema URI
            deliver_at: Deliver no earlier than this instant
            cron: Deliver on this schedule, one wave per run
            event_id: Explicit id (generated when omitted)
            target: Deliver only to this connection id

        Returns:
            The stored event, or the existing one for a repeated cron publish

        Raises:
            ValidationError: If both deliver_at and cron are given
            InvalidCronExpression: If cron is malformed or never fires
            DuplicateEventError: If event_id is already taken
        """
        if deliver_at is not None and cron:
            raise ValidationError("Cannot set both deliver_at and cron. Use one or the other.")

        now = self._now()
        first_run: Optional[datetime] = None

        if cron:
            validate_cron(cron)
            first_run = next_cron_run(cron, now)
            if first_run is None:
                raise InvalidCronExpression(f"Cron expression {cron!r} does not produce a next run time")

            existing = await self.store.find_active_cron_event(event_type, source, cron)
            if existing is not None:
                logger.info(
                    "Recurring event already scheduled",
                    event_id=existing.id,
                    event_type=event_type,
                    cron=cron
                )
                return existing

        try:
            event = Event(
                id=event_id or str(uuid4()),
                source=source,
                type=event_type,
                time=now,
                subject=subject,
                dataschema=dataschema,
                data=data,
                cron=cron or None,
                target=target,
                created_at=now,
                updated_at=now,
            )
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e

        try:
            event = await self.store.publish_event(event)
        except ValueError as e:
            raise DuplicateEventError(str(e)) from e

        subscriptions = await self.store.get_matching_subscriptions(event)
        if not subscriptions:
            logger.info("Event published without subscribers", event_id=event.id, event_type=event.type)
            return event

        due = deliver_at if deliver_at is not None else first_run
        await self.store.create_deliveries(event.id, [s.id for s in subscriptions], due)

        logger.info(
            "Event published",
            event_id=event.id,
            event_type=event.type,
            source=source,
            subscribers=len(subscriptions),
            deliver_at=str(due) if due else None
        )

        # Scheduled deliveries are left to the poll loop
        if due is None and self.wake_on_publish and self._running:
            self._wake_worker()

        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        return await self.store.get_event(event_id)

    async def get_deliveries(self, event_id: str) -> List[Delivery]:
        return await self.store.get_deliveries(event_id)

    async def cancel(self, event_id: str, source: str) -> bool:
        """
        Cancel an event on behalf of its publisher.

        Pending deliveries are dropped and a recurring event schedules no
        further waves.

        Returns:
            False if the event does not exist or belongs to another publisher
        """
        cancelled = await self.store.cancel_event(event_id, source)
        if cancelled:
            await self.store.update_event_status(event_id)
        return cancelled

    async def ack(self, event_id: str, connection_id: str) -> bool:
        """
        Acknowledge an event processed out-of-band by a subscriber.

        Resolves the connection's pending (e.g. deferred) deliveries of
        the event as delivered.
        For a recurring event this can resolve the current wave, in which
        case the next wave is scheduled.

        Returns:
            Whether any delivery was acknowledged
        """
        acked = await self.store.ack_delivery(event_id, connection_id)
        if acked:
            await self.worker.settle_event(event_id)
        return acked

    # --- subscriptions ----------------------------------------------------

    async def subscribe(
        self,
        connection_id: str,
        event_type: str,
        publisher: Optional[str] = None,
        filter_spec: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """
        Subscribe a connection to an event type.

        Subscribing twice with the same arguments returns the existing
        subscription. Recurring events of the type that went idle for
        lack of subscribers get their next wave.

        Raises:
            ValidationError: If the filter cannot be parsed
        """
        try:
            subscription = await self.store.subscribe(connection_id, event_type, publisher, filter_spec or None)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        await self.worker.resume_recurring_events(event_type)
        return subscription

    async def unsubscribe(self, subscription_id: str) -> bool:
        """
        Remove a subscription.

        Its pending deliveries are dropped and the affected events are
        settled, so a recurring event moves on to its next wave instead of
        waiting on a subscriber that is gone. Deliveries already in flight
        finish normally.
        """
        removed = await self.store.unsubscribe(subscription_id)
        if removed:
            logger.info("Subscription removed", subscription_id=subscription_id)
            await self._release_removed([subscription_id])
        return removed

    async def sync_subscriptions(
        self,
        connection_id: str,
        desired: List[SubscriptionSpec],
    ) -> SyncResult:
        """
        Make a connection's subscriptions match a desired list.

        Subscriptions are keyed by (event_type, publisher): missing keys
        are created, keys no longer listed are removed, and a changed
        filter is updated in place.

        Raises:
            ValidationError: If two specs share a key
        """
        keys = [spec.sync_key for spec in desired]
        if len(keys) != len(set(keys)):
            raise ValidationError("subscriptions must be unique by (event_type, publisher)")

        result = await self.store.sync_subscriptions(connection_id, desired)
        await self._release_removed(result.deleted_ids)

        if result.created or result.updated:
            for event_type in dict.fromkeys(spec.event_type for spec in desired):
                await self.worker.resume_recurring_events(event_type)
        return result

    async def _release_removed(self, subscription_ids: List[str]) -> None:
        for subscription_id in subscription_ids:
            event_ids = await self.store.release_subscription_deliveries(subscription_id)
            for event_id in event_ids:
                await self.worker.settle_event(event_id)

    async def list_subscriptions(self, connection_id: Optional[str] = None) -> List[Subscription]:
        return await self.store.list_subscriptions(connection_id)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return await self.store.get_subscription(subscription_id)
