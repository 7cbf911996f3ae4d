"""
Module: dynamodb.py
Description: DynamoDB-backed delivery store.

Persists events, subscriptions and deliveries in three DynamoDB tables
and implements the DeliveryStore contract on top of them.

Table layout:
- events: hash key 'id'; 'data' stored as a JSON string to preserve types
- subscriptions: hash key 'id'; EventTypeIndex (event_type) GSI;
  'filter' stored as a JSON string
- deliveries: hash key 'id'; StatusIndex (status, next_attempt_at) GSI
  used by the claim, EventIndex (event_id) GSI used by reconciliation,
  SubscriptionIndex (subscription_id) GSI used when a subscription is removed

Claims are made per delivery with a conditional update
('#status = :pending'), so two workers racing for the same row cannot
both win. Timestamps are stored as fixed-width ISO 8601 UTC strings, so
range-key comparisons on next_attempt_at follow chronological order.

boto3 calls are synchronous; throttling errors are retried with
tenacity before being logged and re-raised.

Key Components:
- DynamoDBDeliveryStore: DeliveryStore implementation
- create_tables(): Table provisioning for local runs and tests

Dependencies: boto3, botocore, tenacity
Author: Event Bus Team
"""

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional
from uuid import uuid4

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from eventbus.delivery.retry import plan_failure, storage_retry
from eventbus.models.delivery import Delivery, DeliveryStatus, PendingDelivery
from eventbus.models.event import Event, EventStatus
from eventbus.models.subscription import Subscription, SubscriptionSpec, SyncResult
from eventbus.storage.base import DeliveryStore, derive_event_status
from eventbus.utils.logger import get_logger
from eventbus.utils.timeutils import Clock, ensure_utc, to_iso, utc_now

logger = get_logger(__name__)

STATUS_INDEX = 'StatusIndex'
EVENT_INDEX = 'EventIndex'
EVENT_TYPE_INDEX = 'EventTypeIndex'
SUBSCRIPTION_INDEX = 'SubscriptionIndex'

# Extra candidates read per claim page, covering rows lost to races
CLAIM_OVERSCAN = 2


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _is_conditional_failure(error: ClientError) -> bool:
    return _error_code(error) == 'ConditionalCheckFailedException'


def _strip_none(item: Dict[str, Any]) -> Dict[str, Any]:
    # DynamoDB doesn't allow None/null values
    return {k: v for k, v in item.items() if v is not None}


def _event_to_item(event: Event) -> Dict[str, Any]:
    item = event.model_dump(mode='json')
    item['data'] = json.dumps(item.get('data'))
    return _strip_none(item)


def _item_to_event(item: Dict[str, Any]) -> Event:
    item = dict(item)
    if isinstance(item.get('data'), str):
        item['data'] = json.loads(item['data'])
    return Event(**item)


def _subscription_to_item(subscription: Subscription) -> Dict[str, Any]:
    item = subscription.model_dump(mode='json')
    if item.get('filter') is not None:
        item['filter'] = json.dumps(item['filter'])
    return _strip_none(item)


def _item_to_subscription(item: Dict[str, Any]) -> Subscription:
    item = dict(item)
    if isinstance(item.get('filter'), str):
        item['filter'] = json.loads(item['filter'])
    return Subscription(**item)


def _delivery_to_item(delivery: Delivery) -> Dict[str, Any]:
    return _strip_none(delivery.model_dump(mode='json'))


def _item_to_delivery(item: Dict[str, Any]) -> Delivery:
    item = dict(item)
    # Numbers come back from DynamoDB as Decimal
    item['attempts'] = int(item.get('attempts', 0))
    return Delivery(**item)


class DynamoDBDeliveryStore(DeliveryStore):
    """
    DynamoDB delivery store.

    Attributes:
        events_table: boto3 Table for events
        subscriptions_table: boto3 Table for subscriptions
        deliveries_table: boto3 Table for deliveries

    Example:
        >>> store = DynamoDBDeliveryStore(
        ...     events_table_name="eventbus-events",
        ...     subscriptions_table_name="eventbus-subscriptions",
        ...     deliveries_table_name="eventbus-deliveries",
        ... )
        >>> claimed = await store.claim_pending_deliveries(100)
    """

    def __init__(
        self,
        events_table_name: str,
        subscriptions_table_name: str,
        deliveries_table_name: str,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        """
        Initialize the DynamoDB store.

        Args:
            events_table_name: Events table
            subscriptions_table_name: Subscriptions table
            deliveries_table_name: Deliveries table
            region_name: AWS region (boto3 default chain when omitted)
            endpoint_url: Endpoint override, e.g. DynamoDB Local
            clock: Time source, defaults to the system UTC clock

        Raises:
            ValueError: If a table name is empty
        """
        for name in (events_table_name, subscriptions_table_name, deliveries_table_name):
            if not name or not isinstance(name, str):
                raise ValueError("table names must be non-empty strings")

        self._clock = clock or utc_now
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name, endpoint_url=endpoint_url)
        self.events_table = self.dynamodb.Table(events_table_name)
        self.subscriptions_table = self.dynamodb.Table(subscriptions_table_name)
        self.deliveries_table = self.dynamodb.Table(deliveries_table_name)

        logger.info(
            "DynamoDB delivery store initialized",
            events_table=events_table_name,
            subscriptions_table=subscriptions_table_name,
            deliveries_table=deliveries_table_name
        )

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    @storage_retry
    def _call(self, operation: Callable[..., Dict[str, Any]], **kwargs: Any) -> Dict[str, Any]:
        return operation(**kwargs)

    def _query_pages(self, table: Any, **kwargs: Any) -> Iterator[Dict[str, Any]]:
        """Yield every item of a query, following LastEvaluatedKey."""
        while True:
            response = self._call(table.query, **kwargs)
            for item in response.get('Items', []):
                yield item
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return
            kwargs['ExclusiveStartKey'] = last_key

    def _scan_pages(self, table: Any, **kwargs: Any) -> Iterator[Dict[str, Any]]:
        while True:
            response = self._call(table.scan, **kwargs)
            for item in response.get('Items', []):
                yield item
            last_key = response.get('LastEvaluatedKey')
            if not last_key:
                return
            kwargs['ExclusiveStartKey'] = last_key

    def _log_client_error(self, message: str, error: ClientError, **fields: Any) -> None:
        logger.error(
            message,
            error_code=_error_code(error),
            error_message=error.response.get('Error', {}).get('Message'),
            **fields
        )

    def _event_deliveries(self, event_id: str) -> List[Delivery]:
        return [
            _item_to_delivery(item)
            for item in self._query_pages(
                self.deliveries_table,
                IndexName=EVENT_INDEX,
                KeyConditionExpression=Key('event_id').eq(event_id)
            )
        ]

    def _fetch_event(self, event_id: str) -> Optional[Event]:
        response = self._call(self.events_table.get_item, Key={'id': event_id}, ConsistentRead=True)
        item = response.get('Item')
        return _item_to_event(item) if item else None

    def _fetch_subscription(self, subscription_id: str) -> Optional[Subscription]:
        response = self._call(
            self.subscriptions_table.get_item,
            Key={'id': subscription_id},
            ConsistentRead=True
        )
        item = response.get('Item')
        return _item_to_subscription(item) if item else None

    # --- events -----------------------------------------------------------

    async def publish_event(self, event: Event) -> Event:
        try:
            self._call(
                self.events_table.put_item,
                Item=_event_to_item(event),
                ConditionExpression='attribute_not_exists(#id)',
                ExpressionAttributeNames={'#id': 'id'}
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise ValueError(f"Event {event.id} already exists") from e
            self._log_client_error("Failed to store event in DynamoDB", e, event_id=event.id)
            raise

        logger.info("Event stored in DynamoDB", event_id=event.id, event_type=event.type, cron=event.cron)
        return event

    async def get_event(self, event_id: str) -> Optional[Event]:
        if not event_id or not isinstance(event_id, str):
            raise ValueError("event_id must be a non-empty string")

        try:
            return self._fetch_event(event_id)
        except ClientError as e:
            self._log_client_error("Failed to retrieve event from DynamoDB", e, event_id=event_id)
            raise

    async def find_active_cron_event(self, event_type: str, source: str, cron: str) -> Optional[Event]:
        # No index covers (type, source, cron)
        try:
            for item in self._scan_pages(
                self.events_table,
                FilterExpression=(
                    Attr('type').eq(event_type)
                    & Attr('source').eq(source)
                    & Attr('cron').eq(cron)
                    & Attr('cancelled').eq(False)
                )
            ):
                return _item_to_event(item)
        except ClientError as e:
            self._log_client_error("Failed to look up recurring event", e, event_type=event_type, source=source)
            raise
        return None

    async def list_active_cron_events(self, event_type: str) -> List[Event]:
        try:
            return [
                _item_to_event(item)
                for item in self._scan_pages(
                    self.events_table,
                    FilterExpression=(
                        Attr('type').eq(event_type)
                        & Attr('cron').exists()
                        & Attr('cancelled').eq(False)
                    )
                )
            ]
        except ClientError as e:
            self._log_client_error("Failed to list recurring events", e, event_type=event_type)
            raise

    async def cancel_event(self, event_id: str, source: str) -> bool:
        try:
            event = self._fetch_event(event_id)
            if event is None or event.source != source:
                return False

            self._call(
                self.events_table.update_item,
                Key={'id': event_id},
                UpdateExpression='SET #cancelled = :true, updated_at = :now',
                ExpressionAttributeNames={'#cancelled': 'cancelled'},
                ExpressionAttributeValues={':true': True, ':now': to_iso(self._now())}
            )

            dropped = 0
            for delivery in self._event_deliveries(event_id):
                if delivery.status != DeliveryStatus.PENDING:
                    continue
                try:
                    self._call(
                        self.deliveries_table.delete_item,
                        Key={'id': delivery.id},
                        ConditionExpression='#status = :pending',
                        ExpressionAttributeNames={'#status': 'status'},
                        ExpressionAttributeValues={':pending': DeliveryStatus.PENDING.value}
                    )
                    dropped += 1
                except ClientError as e:
                    # Claimed concurrently; the worker will see the cancelled flag
                    if not _is_conditional_failure(e):
                        raise

        except ClientError as e:
            self._log_client_error("Failed to cancel event", e, event_id=event_id)
            raise

        logger.info("Event cancelled", event_id=event_id, dropped_deliveries=dropped)
        return True

    async def update_event_status(self, event_id: str) -> Optional[EventStatus]:
        try:
            event = self._fetch_event(event_id)
            if event is None:
                return None

            status = derive_event_status(
                [d.status for d in self._event_deliveries(event_id)],
                cancelled=event.cancelled
            )
            if status is None:
                return None

            self._call(
                self.events_table.update_item,
                Key={'id': event_id},
                UpdateExpression='SET #status = :status, updated_at = :now',
                ConditionExpression='attribute_exists(#id) AND #status <> :status',
                ExpressionAttributeNames={'#id': 'id', '#status': 'status'},
                ExpressionAttributeValues={':status': status.value, ':now': to_iso(self._now())}
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                # Already up to date, or deleted meanwhile
                return status
            self._log_client_error("Failed to update event status", e, event_id=event_id)
            raise

        logger.debug("Event status updated", event_id=event_id, status=status.value)
        return status

    # --- subscriptions ----------------------------------------------------

    async def subscribe(
        self,
        connection_id: str,
        event_type: str,
        publisher: Optional[str] = None,
        filter_spec: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        try:
            for item in self._query_pages(
                self.subscriptions_table,
                IndexName=EVENT_TYPE_INDEX,
                KeyConditionExpression=Key('event_type').eq(event_type)
            ):
                existing = _item_to_subscription(item)
                if existing.same_registration(connection_id, event_type, publisher, filter_spec):
                    return existing

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
            self._call(self.subscriptions_table.put_item, Item=_subscription_to_item(subscription))

        except ClientError as e:
            self._log_client_error(
                "Failed to store subscription",
                e,
                connection_id=connection_id,
                event_type=event_type
            )
            raise

        logger.info(
            "Subscription created",
            subscription_id=subscription.id,
            connection_id=connection_id,
            event_type=event_type
        )
        return subscription

    async def unsubscribe(self, subscription_id: str) -> bool:
        try:
            response = self._call(
                self.subscriptions_table.delete_item,
                Key={'id': subscription_id},
                ReturnValues='ALL_OLD'
            )
        except ClientError as e:
            self._log_client_error("Failed to delete subscription", e, subscription_id=subscription_id)
            raise
        return 'Attributes' in response

    async def sync_subscriptions(self, connection_id: str, desired: List[SubscriptionSpec]) -> SyncResult:
        result = SyncResult()
        wanted = {spec.sync_key: spec for spec in desired}
        now = self._now()

        try:
            existing = [
                _item_to_subscription(item)
                for item in self._scan_pages(
                    self.subscriptions_table,
                    FilterExpression=Attr('connection_id').eq(connection_id)
                )
            ]
            existing.sort(key=lambda s: s.created_at)

            kept: List[Subscription] = []
            seen = set()
            for subscription in existing:
                key = subscription.sync_key
                if key not in wanted or key in seen:
                    self._call(self.subscriptions_table.delete_item, Key={'id': subscription.id})
                    result.deleted_ids.append(subscription.id)
                    continue

                seen.add(key)
                new_filter = wanted[key].filter
                if (subscription.filter or None) != new_filter:
                    if new_filter is None:
                        self._call(
                            self.subscriptions_table.update_item,
                            Key={'id': subscription.id},
                            UpdateExpression='SET updated_at = :now REMOVE #filter',
                            ExpressionAttributeNames={'#filter': 'filter'},
                            ExpressionAttributeValues={':now': to_iso(now)}
                        )
                    else:
                        self._call(
                            self.subscriptions_table.update_item,
                            Key={'id': subscription.id},
                            UpdateExpression='SET #filter = :filter, updated_at = :now',
                            ExpressionAttributeNames={'#filter': 'filter'},
                            ExpressionAttributeValues={':filter': json.dumps(new_filter), ':now': to_iso(now)}
                        )
                    subscription.filter = new_filter
                    subscription.updated_at = now
                    result.updated += 1
                else:
                    result.unchanged += 1
                kept.append(subscription)

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
                self._call(self.subscriptions_table.put_item, Item=_subscription_to_item(subscription))
                kept.append(subscription)
                result.created += 1

        except ClientError as e:
            self._log_client_error("Failed to sync subscriptions", e, connection_id=connection_id)
            raise

        result.deleted = len(result.deleted_ids)
        result.subscriptions = kept
        logger.info(
            "Subscriptions synced",
            connection_id=connection_id,
            created=result.created,
            updated=result.updated,
            deleted=result.deleted
        )
        return result

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        try:
            return self._fetch_subscription(subscription_id)
        except ClientError as e:
            self._log_client_error("Failed to retrieve subscription", e, subscription_id=subscription_id)
            raise

    async def list_subscriptions(self, connection_id: Optional[str] = None) -> List[Subscription]:
        kwargs: Dict[str, Any] = {}
        if connection_id is not None:
            kwargs['FilterExpression'] = Attr('connection_id').eq(connection_id)

        try:
            return [_item_to_subscription(item) for item in self._scan_pages(self.subscriptions_table, **kwargs)]
        except ClientError as e:
            self._log_client_error("Failed to list subscriptions", e, connection_id=connection_id)
            raise

    async def get_matching_subscriptions(self, event: Event) -> List[Subscription]:
        try:
            candidates = [
                _item_to_subscription(item)
                for item in self._query_pages(
                    self.subscriptions_table,
                    IndexName=EVENT_TYPE_INDEX,
                    KeyConditionExpression=Key('event_type').eq(event.type)
                )
            ]
        except ClientError as e:
            self._log_client_error("Failed to query subscriptions", e, event_id=event.id)
            raise
        return [s for s in candidates if s.matches(event)]

    # --- deliveries -------------------------------------------------------

    async def create_deliveries(
        self,
        event_id: str,
        subscription_ids: List[str],
        deliver_at: Optional[datetime] = None,
    ) -> List[Delivery]:
        if not subscription_ids:
            return []

        now = self._now()
        due = ensure_utc(deliver_at) if deliver_at else now
        created = [
            Delivery(
                id=str(uuid4()),
                event_id=event_id,
                subscription_id=subscription_id,
                next_attempt_at=due,
                created_at=now,
            )
            for subscription_id in subscription_ids
        ]

        try:
            # batch_writer chunks to 25 items and resends unprocessed items
            with self.deliveries_table.batch_writer() as batch:
                for delivery in created:
                    batch.put_item(Item=_delivery_to_item(delivery))
        except ClientError as e:
            self._log_client_error("Failed to create deliveries", e, event_id=event_id, count=len(created))
            raise

        logger.debug("Deliveries created", event_id=event_id, count=len(created), due=to_iso(due))
        return created

    async def release_subscription_deliveries(self, subscription_id: str) -> List[str]:
        event_ids: List[str] = []
        released = 0

        try:
            for item in list(self._query_pages(
                self.deliveries_table,
                IndexName=SUBSCRIPTION_INDEX,
                KeyConditionExpression=Key('subscription_id').eq(subscription_id)
            )):
                if item.get('status') != DeliveryStatus.PENDING.value:
                    continue
                try:
                    self._call(
                        self.deliveries_table.delete_item,
                        Key={'id': item['id']},
                        ConditionExpression='#status = :pending',
                        ExpressionAttributeNames={'#status': 'status'},
                        ExpressionAttributeValues={':pending': DeliveryStatus.PENDING.value}
                    )
                except ClientError as e:
                    # Claimed meanwhile; the cycle that owns it settles it
                    if not _is_conditional_failure(e):
                        raise
                    continue
                released += 1
                if item['event_id'] not in event_ids:
                    event_ids.append(item['event_id'])
        except ClientError as e:
            self._log_client_error("Failed to release deliveries", e, subscription_id=subscription_id)
            raise

        if released:
            logger.info(
                "Released pending deliveries of removed subscription",
                subscription_id=subscription_id,
                count=released
            )
        return event_ids

    async def get_deliveries(self, event_id: str) -> List[Delivery]:
        try:
            return self._event_deliveries(event_id)
        except ClientError as e:
            self._log_client_error("Failed to query deliveries", e, event_id=event_id)
            raise

    async def has_open_deliveries(self, event_id: str) -> bool:
        deliveries = await self.get_deliveries(event_id)
        return any(d.is_open for d in deliveries)

    async def claim_pending_deliveries(self, batch_size: int) -> List[PendingDelivery]:
        if batch_size <= 0:
            return []

        now_iso = to_iso(self._now())
        claimed: List[PendingDelivery] = []
        events: Dict[str, Optional[Event]] = {}
        subscriptions: Dict[str, Optional[Subscription]] = {}

        try:
            for item in self._query_pages(
                self.deliveries_table,
                IndexName=STATUS_INDEX,
                KeyConditionExpression=(
                    Key('status').eq(DeliveryStatus.PENDING.value) & Key('next_attempt_at').lte(now_iso)
                ),
                ScanIndexForward=True,
                Limit=batch_size * CLAIM_OVERSCAN
            ):
                if len(claimed) >= batch_size:
                    break

                delivery = _item_to_delivery(item)

                if delivery.subscription_id not in subscriptions:
                    subscriptions[delivery.subscription_id] = self._fetch_subscription(delivery.subscription_id)
                subscription = subscriptions[delivery.subscription_id]
                if subscription is None or not subscription.enabled:
                    continue

                if delivery.event_id not in events:
                    events[delivery.event_id] = self._fetch_event(delivery.event_id)
                event = events[delivery.event_id]
                if event is None:
                    continue

                try:
                    self._call(
                        self.deliveries_table.update_item,
                        Key={'id': delivery.id},
                        UpdateExpression='SET #status = :processing',
                        ConditionExpression='#status = :pending AND next_attempt_at <= :now',
                        ExpressionAttributeNames={'#status': 'status'},
                        ExpressionAttributeValues={
                            ':processing': DeliveryStatus.PROCESSING.value,
                            ':pending': DeliveryStatus.PENDING.value,
                            ':now': now_iso,
                        }
                    )
                except ClientError as e:
                    if _is_conditional_failure(e):
                        # Another worker won the row
                        continue
                    raise

                delivery.status = DeliveryStatus.PROCESSING
                claimed.append(PendingDelivery(delivery=delivery, event=event, subscription=subscription))

        except ClientError as e:
            self._log_client_error("Failed to claim deliveries", e, batch_size=batch_size)
            raise

        if claimed:
            logger.debug("Deliveries claimed", count=len(claimed))
        return claimed

    async def reset_stuck_deliveries(self) -> int:
        count = 0
        try:
            stuck = list(self._query_pages(
                self.deliveries_table,
                IndexName=STATUS_INDEX,
                KeyConditionExpression=Key('status').eq(DeliveryStatus.PROCESSING.value)
            ))
            for item in stuck:
                try:
                    self._call(
                        self.deliveries_table.update_item,
                        Key={'id': item['id']},
                        UpdateExpression='SET #status = :pending',
                        ConditionExpression='#status = :processing',
                        ExpressionAttributeNames={'#status': 'status'},
                        ExpressionAttributeValues={
                            ':pending': DeliveryStatus.PENDING.value,
                            ':processing': DeliveryStatus.PROCESSING.value,
                        }
                    )
                    count += 1
                except ClientError as e:
                    if not _is_conditional_failure(e):
                        raise
        except ClientError as e:
            self._log_client_error("Failed to reset stuck deliveries", e)
            raise

        return count

    def _update_existing(self, delivery_id: str, update_expression: str, values: Dict[str, Any]) -> bool:
        """Update a delivery row only if it still exists; False if it is gone."""
        try:
            self._call(
                self.deliveries_table.update_item,
                Key={'id': delivery_id},
                UpdateExpression=update_expression,
                ConditionExpression='attribute_exists(#id)',
                ExpressionAttributeNames={'#id': 'id', '#status': 'status'},
                ExpressionAttributeValues=values
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise
        return True

    async def mark_deliveries_delivered(self, delivery_ids: List[str]) -> None:
        if not delivery_ids:
            return

        now_iso = to_iso(self._now())
        try:
            for delivery_id in delivery_ids:
                self._update_existing(
                    delivery_id,
                    'SET #status = :delivered, delivered_at = :now',
                    {':delivered': DeliveryStatus.DELIVERED.value, ':now': now_iso}
                )
        except ClientError as e:
            self._log_client_error("Failed to mark deliveries delivered", e, count=len(delivery_ids))
            raise

    async def schedule_retry_without_attempt_increment(
        self,
        delivery_ids: List[str],
        retry_after_seconds: float,
    ) -> None:
        if not delivery_ids:
            return

        next_attempt_at = to_iso(self._now() + timedelta(seconds=retry_after_seconds))
        try:
            for delivery_id in delivery_ids:
                self._update_existing(
                    delivery_id,
                    'SET #status = :pending, next_attempt_at = :next',
                    {':pending': DeliveryStatus.PENDING.value, ':next': next_attempt_at}
                )
        except ClientError as e:
            self._log_client_error("Failed to defer deliveries", e, count=len(delivery_ids))
            raise

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

        now = self._now()
        try:
            for delivery_id in delivery_ids:
                response = self._call(
                    self.deliveries_table.get_item,
                    Key={'id': delivery_id},
                    ConsistentRead=True
                )
                item = response.get('Item')
                if item is None or item.get('status') != DeliveryStatus.PROCESSING.value:
                    continue

                previous = int(item.get('attempts', 0))
                plan = plan_failure(previous, error, now, max_attempts, retry_delay_ms, max_delay_ms)
                values: Dict[str, Any] = {
                    ':status': plan.status.value,
                    ':attempts': plan.attempts,
                    ':error': plan.last_error,
                    ':previous': previous,
                    ':processing': DeliveryStatus.PROCESSING.value,
                }
                update = 'SET #status = :status, attempts = :attempts, last_error = :error'
                if plan.next_attempt_at is not None:
                    update += ', next_attempt_at = :next'
                    values[':next'] = to_iso(plan.next_attempt_at)

                try:
                    # Applies only if nobody touched the row since the read
                    self._call(
                        self.deliveries_table.update_item,
                        Key={'id': delivery_id},
                        UpdateExpression=update,
                        ConditionExpression='attempts = :previous AND #status = :processing',
                        ExpressionAttributeNames={'#status': 'status'},
                        ExpressionAttributeValues=values
                    )
                except ClientError as e:
                    if _is_conditional_failure(e):
                        logger.debug("Delivery changed since it was read, failure not applied", delivery_id=delivery_id)
                        continue
                    raise

                if plan.is_permanent:
                    logger.warning(
                        "Delivery permanently failed",
                        delivery_id=delivery_id,
                        attempts=plan.attempts,
                        error=error
                    )
        except ClientError as e:
            self._log_client_error("Failed to mark deliveries failed", e, count=len(delivery_ids))
            raise

    async def ack_delivery(self, event_id: str, connection_id: str) -> bool:
        now_iso = to_iso(self._now())
        acked = 0

        try:
            for delivery in self._event_deliveries(event_id):
                if delivery.status != DeliveryStatus.PENDING:
                    continue
                subscription = self._fetch_subscription(delivery.subscription_id)
                if subscription is None or subscription.connection_id != connection_id:
                    continue
                try:
                    self._call(
                        self.deliveries_table.update_item,
                        Key={'id': delivery.id},
                        UpdateExpression='SET #status = :delivered, delivered_at = :now',
                        ConditionExpression='#status = :pending',
                        ExpressionAttributeNames={'#status': 'status'},
                        ExpressionAttributeValues={
                            ':delivered': DeliveryStatus.DELIVERED.value,
                            ':pending': DeliveryStatus.PENDING.value,
                            ':now': now_iso,
                        }
                    )
                    acked += 1
                except ClientError as e:
                    if not _is_conditional_failure(e):
                        raise
        except ClientError as e:
            self._log_client_error("Failed to acknowledge deliveries", e, event_id=event_id)
            raise

        if acked:
            logger.info("Deliveries acknowledged", event_id=event_id, connection_id=connection_id, count=acked)
        return acked > 0


def create_tables(
    dynamodb: Any,
    events_table_name: str,
    subscriptions_table_name: str,
    deliveries_table_name: str,
) -> None:
    """
    Create the three event bus tables with their indexes.

    Args:
        dynamodb: boto3 DynamoDB service resource
        events_table_name: Events table
        subscriptions_table_name: Subscriptions table
        deliveries_table_name: Deliveries table
    """
    all_projection = {'ProjectionType': 'ALL'}

    dynamodb.create_table(
        TableName=events_table_name,
        KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[{'AttributeName': 'id', 'AttributeType': 'S'}],
        BillingMode='PAY_PER_REQUEST'
    )

    dynamodb.create_table(
        TableName=subscriptions_table_name,
        KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[
            {'AttributeName': 'id', 'AttributeType': 'S'},
            {'AttributeName': 'event_type', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': EVENT_TYPE_INDEX,
                'KeySchema': [{'AttributeName': 'event_type', 'KeyType': 'HASH'}],
                'Projection': all_projection,
            },
        ],
        BillingMode='PAY_PER_REQUEST'
    )

    dynamodb.create_table(
        TableName=deliveries_table_name,
        KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
        AttributeDefinitions=[
            {'AttributeName': 'id', 'AttributeType': 'S'},
            {'AttributeName': 'status', 'AttributeType': 'S'},
            {'AttributeName': 'next_attempt_at', 'AttributeType': 'S'},
            {'AttributeName': 'event_id', 'AttributeType': 'S'},
            {'AttributeName': 'subscription_id', 'AttributeType': 'S'},
        ],
        GlobalSecondaryIndexes=[
            {
                'IndexName': STATUS_INDEX,
                'KeySchema': [
                    {'AttributeName': 'status', 'KeyType': 'HASH'},
                    {'AttributeName': 'next_attempt_at', 'KeyType': 'RANGE'},
                ],
                'Projection': all_projection,
            },
            {
                'IndexName': EVENT_INDEX,
                'KeySchema': [{'AttributeName': 'event_id', 'KeyType': 'HASH'}],
                'Projection': all_projection,
            },
            {
                'IndexName': SUBSCRIPTION_INDEX,
                'KeySchema': [{'AttributeName': 'subscription_id', 'KeyType': 'HASH'}],
                'Projection': all_projection,
            },
        ],
        BillingMode='PAY_PER_REQUEST'
    )

    logger.info(
        "DynamoDB tables created",
        events_table=events_table_name,
        subscriptions_table=subscriptions_table_name,
        deliveries_table=deliveries_table_name
    )
