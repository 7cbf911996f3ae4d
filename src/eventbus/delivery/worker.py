"""
Module: delivery/worker.py
Description: Polling delivery worker.

Claims due deliveries from the store, groups them by subscriber
connection, notifies each subscriber once per cycle and applies the
outcome back to the store: delivered, soft defer, or failure with
exponential backoff. Afterwards it reconciles the aggregate status of
every touched event and schedules the next wave of recurring (cron)
events. The same settling is exposed for changes made outside a cycle,
such as acks and subscription changes.

The worker is an explicitly owned object: construct it, start() it,
stop() it. It holds no cross-instance locks; several workers may share a
store because the store's claim is atomic.
"""

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from eventbus.config.settings import DeliveryConfig
from eventbus.delivery.notifier import Notifier
from eventbus.delivery.schedule import InvalidCronExpression, next_cron_run
from eventbus.models.delivery import PendingDelivery
from eventbus.models.event import CloudEvent, Event
from eventbus.models.notify import NotifyResult
from eventbus.storage.base import DeliveryStore
from eventbus.utils.logger import get_logger
from eventbus.utils.timeutils import Clock, ensure_utc, utc_now

logger = get_logger(__name__)

DEFAULT_FAILURE_MESSAGE = "Subscriber returned success=false"


@dataclass
class SubscriberBatch:
    """Claimed work for one subscriber connection within a cycle."""

    connection_id: str
    delivery_ids: List[str] = field(default_factory=list)
    events: List[CloudEvent] = field(default_factory=list)
    delivery_ids_by_event: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class CycleSummary:
    """Counters describing what one cycle did."""

    claimed: int = 0
    groups: int = 0
    delivered: int = 0
    deferred: int = 0
    failed: int = 0
    rescheduled: int = 0


def group_by_subscriber(pending: List[PendingDelivery]) -> "OrderedDict[str, SubscriberBatch]":
    """
    Partition claimed deliveries by subscriber connection.

    Claim order is preserved within each group. An event matched by two
    subscriptions of the same connection is sent once; both delivery ids
    follow its outcome.

    Args:
        pending: Claimed deliveries

    Returns:
        Ordered mapping of connection id to its batch
    """
    grouped: "OrderedDict[str, SubscriberBatch]" = OrderedDict()

    for item in pending:
        key = item.subscription.connection_id
        batch = grouped.get(key)
        if batch is None:
            batch = SubscriberBatch(connection_id=key)
            grouped[key] = batch

        batch.delivery_ids.append(item.delivery.id)

        event_id = item.event.id
        if event_id not in batch.delivery_ids_by_event:
            batch.delivery_ids_by_event[event_id] = []
            batch.events.append(item.event.to_cloud_event())
        batch.delivery_ids_by_event[event_id].append(item.delivery.id)

    return grouped


class DeliveryWorker:
    """
    Background worker driving event delivery.

    Attributes:
        store: Delivery store shared with the rest of the event bus
        notifier: Transport used to reach subscribers
        config: Poll cadence, batch size and retry policy

    Example:
        >>> worker = DeliveryWorker(store, notifier, DeliveryConfig(poll_interval_ms=1000))
        >>> await worker.start()
        >>> await worker.process_now()
        >>> await worker.stop()
    """

    def __init__(
        self,
        store: DeliveryStore,
        notifier: Notifier,
        config: Optional[DeliveryConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.config = config or DeliveryConfig()
        self._clock = clock or utc_now

        self._running = False
        self._processing = False
        self._lifecycle_lock = asyncio.Lock()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tick_task: Optional[asyncio.Task] = None

    # --- lifecycle --------------------------------------------------------

    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start polling.

        Deliveries left in processing by a previous process are reset to
        pending before the first cycle. Calling start() on a running worker
        does nothing.
        """
        async with self._lifecycle_lock:
            if self._running:
                return

            reset_count = await self.store.reset_stuck_deliveries()
            if reset_count > 0:
                logger.warning(
                    "Reset stuck deliveries from previous shutdown",
                    count=reset_count
                )

            self._running = True
            self._schedule_next(0)

        logger.info(
            "Delivery worker started",
            poll_interval_ms=self.config.poll_interval_ms,
            batch_size=self.config.batch_size,
            max_attempts=self.config.max_attempts
        )

    async def stop(self) -> None:
        """Stop polling; a cycle already in flight runs to completion."""
        async with self._lifecycle_lock:
            if not self._running:
                return

            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

            task = self._tick_task
            if task is not None and not task.done() and task is not asyncio.current_task():
                await task

        logger.info("Delivery worker stopped")

    async def process_now(self) -> Optional[CycleSummary]:
        """
        Run a cycle immediately, independent of the poll timer.

        No-op when the worker is stopped or a cycle is already in flight.
        """
        if not self._running:
            return None
        return await self._run_cycle_safely()

    def _schedule_next(self, delay_seconds: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay_seconds, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if not self._running:
            return
        self._tick_task = asyncio.get_running_loop().create_task(self._tick())

    async def _tick(self) -> None:
        try:
            await self._run_cycle_safely()
        finally:
            if self._running:
                self._schedule_next(self.config.poll_interval_ms / 1000)

    async def _run_cycle_safely(self) -> Optional[CycleSummary]:
        if self._processing:
            logger.debug("Delivery cycle already in progress, skipping trigger")
            return None

        self._processing = True
        try:
            return await self.run_cycle()
        except Exception as e:
            logger.error(
                "Delivery cycle failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True
            )
            return None
        finally:
            self._processing = False

    # --- cycle ------------------------------------------------------------

    def _now(self):
        return ensure_utc(self._clock())

    async def run_cycle(self) -> CycleSummary:
        """
        Claim, group, dispatch, reconcile and reschedule once.

        A claim failure propagates (nothing was claimed, the next tick
        retries). Every later failure is logged per item and never aborts
        the rest of the cycle.

        Returns:
            CycleSummary with per-outcome delivery counts
        """
        summary = CycleSummary()

        pending = await self.store.claim_pending_deliveries(self.config.batch_size)
        if not pending:
            return summary

        summary.claimed = len(pending)
        batches = group_by_subscriber(pending)
        summary.groups = len(batches)

        logger.info("Deliveries claimed", count=summary.claimed, subscribers=summary.groups)

        results = await asyncio.gather(
            *(self._dispatch(batch, summary) for batch in batches.values()),
            return_exceptions=True
        )
        for batch, result in zip(batches.values(), results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                logger.error(
                    "Dispatch to subscriber failed",
                    connection_id=batch.connection_id,
                    error=str(result),
                    error_type=type(result).__name__
                )

        touched: "OrderedDict[str, Event]" = OrderedDict()
        for item in pending:
            touched.setdefault(item.event.id, item.event)

        for event in touched.values():
            await self._reconcile_event(event.id)
            if event.cron:
                if await self.schedule_next_wave(event):
                    summary.rescheduled += 1

        logger.info(
            "Delivery cycle completed",
            claimed=summary.claimed,
            delivered=summary.delivered,
            deferred=summary.deferred,
            failed=summary.failed,
            rescheduled=summary.rescheduled
        )
        return summary

    async def _dispatch(self, batch: SubscriberBatch, summary: CycleSummary) -> None:
        """Notify one subscriber and apply the outcome to its deliveries."""
        timeout = self.config.notify_timeout_seconds
        try:
            result = await asyncio.wait_for(
                self.notifier.notify(batch.connection_id, batch.events),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Subscriber notification timed out",
                connection_id=batch.connection_id,
                timeout_seconds=timeout
            )
            result = NotifyResult(success=False, error=f"Notification timed out after {timeout}s")
        except Exception as e:
            logger.warning(
                "Subscriber notification raised",
                connection_id=batch.connection_id,
                error=str(e),
                error_type=type(e).__name__
            )
            result = NotifyResult(success=False, error=str(e) or type(e).__name__)

        if result is None:
            result = NotifyResult(success=False, error="Notifier returned no result")

        await self._apply_result(batch, result, summary)

    async def _apply_result(self, batch: SubscriberBatch, result: NotifyResult, summary: CycleSummary) -> None:
        delivered: List[str] = []
        deferred: Dict[float, List[str]] = {}
        failed: Dict[str, List[str]] = {}

        for cloud_event in batch.events:
            delivery_ids = batch.delivery_ids_by_event[cloud_event.id]
            outcome = result.outcome_for(cloud_event.id)

            if outcome.success:
                delivered.extend(delivery_ids)
            elif outcome.is_deferred:
                deferred.setdefault(outcome.retry_after, []).extend(delivery_ids)
            else:
                failed.setdefault(outcome.error or DEFAULT_FAILURE_MESSAGE, []).extend(delivery_ids)

        if delivered:
            try:
                await self.store.mark_deliveries_delivered(delivered)
                summary.delivered += len(delivered)
            except Exception as e:
                logger.error(
                    "Failed to mark deliveries delivered",
                    connection_id=batch.connection_id,
                    delivery_ids=delivered,
                    error=str(e)
                )

        for retry_after, delivery_ids in deferred.items():
            try:
                await self.store.schedule_retry_without_attempt_increment(delivery_ids, retry_after)
                summary.deferred += len(delivery_ids)
                logger.info(
                    "Subscriber deferred delivery",
                    connection_id=batch.connection_id,
                    retry_after_seconds=retry_after,
                    count=len(delivery_ids)
                )
            except Exception as e:
                logger.error(
                    "Failed to defer deliveries",
                    connection_id=batch.connection_id,
                    delivery_ids=delivery_ids,
                    error=str(e)
                )

        for error, delivery_ids in failed.items():
            try:
                await self.store.mark_deliveries_failed(
                    delivery_ids,
                    error,
                    self.config.max_attempts,
                    self.config.retry_delay_ms,
                    self.config.max_delay_ms,
                )
                summary.failed += len(delivery_ids)
                logger.warning(
                    "Delivery attempt failed",
                    connection_id=batch.connection_id,
                    error=error,
                    count=len(delivery_ids)
                )
            except Exception as e:
                logger.error(
                    "Failed to record delivery failure",
                    connection_id=batch.connection_id,
                    delivery_ids=delivery_ids,
                    error=str(e)
                )

    async def _reconcile_event(self, event_id: str) -> None:
        try:
            await self.store.update_event_status(event_id)
        except Exception as e:
            logger.error("Failed to update event status", event_id=event_id, error=str(e))

    async def settle_event(self, event_id: str) -> bool:
        """
        Bring an event up to date after its deliveries changed outside a cycle.

        Used after an ack or after a removed subscription released its
        pending deliveries: reconciles the status and, for a recurring
        event whose wave is now resolved, creates the next wave.

        Returns:
            True if a new wave was created
        """
        await self._reconcile_event(event_id)

        try:
            event = await self.store.get_event(event_id)
        except Exception as e:
            logger.error("Failed to load event for settling", event_id=event_id, error=str(e))
            return False
        if event is None or event.cancelled or not event.cron:
            return False
        return await self.schedule_next_wave(event)

    async def resume_recurring_events(self, event_type: str) -> int:
        """
        Start a wave for idle recurring events of a type.

        A recurring event whose last wave found no subscriber has no open
        deliveries and no later wave; a new matching subscription picks
        the schedule up again from the next run.

        Returns:
            Number of events that got a new wave
        """
        try:
            events = await self.store.list_active_cron_events(event_type)
        except Exception as e:
            logger.error("Failed to list recurring events", event_type=event_type, error=str(e))
            return 0

        resumed = 0
        for event in events:
            if await self.schedule_next_wave(event):
                resumed += 1
        if resumed:
            logger.info("Recurring events resumed", event_type=event_type, count=resumed)
        return resumed

    async def schedule_next_wave(self, event: Event) -> bool:
        """
        Create the next wave of deliveries for a recurring event.

        Only runs once none of the event's deliveries is pending or
        processing. Subscriptions are re-fetched, so the next wave goes to
        whoever matches now.

        Returns:
            True if a new wave was created
        """
        try:
            if await self.store.has_open_deliveries(event.id):
                return False

            current = await self.store.get_event(event.id)
            if current is None or current.cancelled or not current.cron:
                logger.info("Recurring event no longer active", event_id=event.id)
                return False

            try:
                next_run = next_cron_run(current.cron, self._now())
            except InvalidCronExpression as e:
                logger.warning(
                    "Invalid cron expression, recurring schedule halted",
                    event_id=event.id,
                    cron=current.cron,
                    error=str(e)
                )
                return False

            if next_run is None:
                logger.info("Cron expression has no more runs", event_id=event.id, cron=current.cron)
                return False

            subscriptions = await self.store.get_matching_subscriptions(current)
            if not subscriptions:
                logger.info(
                    "No subscriptions for recurring event, skipping next delivery",
                    event_id=event.id,
                    next_run=next_run.isoformat()
                )
                return False

            await self.store.create_deliveries(
                current.id,
                [subscription.id for subscription in subscriptions],
                next_run
            )
            await self.store.update_event_status(current.id)

            logger.info(
                "Scheduled next cron delivery",
                event_id=event.id,
                next_run=next_run.isoformat(),
                subscriptions=len(subscriptions)
            )
            return True

        except Exception as e:
            logger.error(
                "Failed to schedule next cron delivery",
                event_id=event.id,
                error=str(e),
                error_type=type(e).__name__
            )
            return False
