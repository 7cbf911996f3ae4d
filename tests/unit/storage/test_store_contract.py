"""
Module: test_store_contract.py
Description: Behavior shared by every DeliveryStore implementation.

Each test runs against the in-memory store and the DynamoDB store
(moto), through the parametrized `store` fixture.
"""

from datetime import timedelta

import pytest

from eventbus.models.delivery import DeliveryStatus
from eventbus.models.event import Event, EventStatus
from eventbus.models.subscription import SubscriptionSpec


async def _publish_with_deliveries(store, event, connection_ids, deliver_at=None):
    await store.publish_event(event)
    subscription_ids = []
    for connection_id in connection_ids:
        subscription = await store.subscribe(connection_id, event.type)
        subscription_ids.append(subscription.id)
    return await store.create_deliveries(event.id, subscription_ids, deliver_at)


class TestEvents:

    @pytest.mark.asyncio
    async def test_publish_and_get(self, store, sample_event):
        await store.publish_event(sample_event)

        stored = await store.get_event(sample_event.id)

        assert stored is not None
        assert stored.type == "order.created"
        assert stored.data == {"order_id": "1", "amount": 99.99, "currency": "USD"}
        assert stored.time == sample_event.time
        assert stored.status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_get_unknown_event(self, store):
        assert await store.get_event("evt_missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store, sample_event):
        await store.publish_event(sample_event)

        with pytest.raises(ValueError, match="already exists"):
            await store.publish_event(sample_event)

    @pytest.mark.asyncio
    async def test_cancel_by_publisher_drops_pending_deliveries(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b"])

        assert not await store.cancel_event(sample_event.id, "conn_intruder")
        assert await store.cancel_event(sample_event.id, "conn_shop")

        stored = await store.get_event(sample_event.id)
        assert stored.cancelled is True
        assert await store.get_deliveries(sample_event.id) == []

    @pytest.mark.asyncio
    async def test_cancel_unknown_event(self, store):
        assert not await store.cancel_event("evt_missing", "conn_shop")

    @pytest.mark.asyncio
    async def test_find_active_cron_event(self, store, clock):
        recurring = Event(id="evt_cron", source="conn_shop", type="report.tick", cron="*/5 * * * *", time=clock())
        await store.publish_event(recurring)

        found = await store.find_active_cron_event("report.tick", "conn_shop", "*/5 * * * *")
        assert found is not None and found.id == "evt_cron"

        assert await store.find_active_cron_event("report.tick", "conn_other", "*/5 * * * *") is None
        assert await store.find_active_cron_event("report.tick", "conn_shop", "0 * * * *") is None

        await store.cancel_event("evt_cron", "conn_shop")
        assert await store.find_active_cron_event("report.tick", "conn_shop", "*/5 * * * *") is None

    @pytest.mark.asyncio
    async def test_list_active_cron_events(self, store, clock):
        for event_id, source, event_type, cron in [
            ("evt_a", "conn_shop", "report.tick", "*/5 * * * *"),
            ("evt_b", "conn_other", "report.tick", "0 * * * *"),
            ("evt_c", "conn_shop", "report.daily", "0 9 * * *"),
            ("evt_d", "conn_shop", "report.tick", None),
        ]:
            await store.publish_event(Event(id=event_id, source=source, type=event_type, cron=cron, time=clock()))
        await store.cancel_event("evt_b", "conn_other")

        found = await store.list_active_cron_events("report.tick")

        assert [e.id for e in found] == ["evt_a"]

    @pytest.mark.asyncio
    async def test_cancelled_event_without_deliveries_is_terminal(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b"])
        await store.cancel_event(sample_event.id, "conn_shop")

        assert await store.update_event_status(sample_event.id) == EventStatus.CANCELLED
        assert (await store.get_event(sample_event.id)).status == EventStatus.CANCELLED


class TestSubscriptions:

    @pytest.mark.asyncio
    async def test_subscribe_is_idempotent(self, store):
        first = await store.subscribe("conn_b", "order.created", filter_spec={"data.amount[gte]": 10})
        second = await store.subscribe("conn_b", "order.created", filter_spec={"data.amount[gte]": 10})
        other = await store.subscribe("conn_b", "order.created")

        assert first.id == second.id
        assert other.id != first.id
        assert len(await store.list_subscriptions("conn_b")) == 2

    @pytest.mark.asyncio
    async def test_list_and_unsubscribe(self, store):
        sub_b = await store.subscribe("conn_b", "order.created")
        await store.subscribe("conn_c", "order.created")

        assert [s.id for s in await store.list_subscriptions("conn_b")] == [sub_b.id]
        assert len(await store.list_subscriptions()) == 2

        assert await store.unsubscribe(sub_b.id)
        assert not await store.unsubscribe(sub_b.id)
        assert await store.get_subscription(sub_b.id) is None

    @pytest.mark.asyncio
    async def test_matching_subscriptions(self, store, sample_event):
        wanted = await store.subscribe("conn_b", "order.created")
        from_shop = await store.subscribe("conn_c", "order.created", publisher="conn_shop")
        await store.subscribe("conn_d", "order.created", publisher="conn_other")
        await store.subscribe("conn_e", "order.cancelled")
        await store.subscribe("conn_f", "order.created", filter_spec={"data.amount[gt]": 1000})

        matching = await store.get_matching_subscriptions(sample_event)

        assert {s.id for s in matching} == {wanted.id, from_shop.id}

    @pytest.mark.asyncio
    async def test_target_restricts_matching(self, store, sample_event):
        await store.subscribe("conn_b", "order.created")
        targeted = await store.subscribe("conn_c", "order.created")
        event = sample_event.model_copy(update={"target": "conn_c"})

        matching = await store.get_matching_subscriptions(event)

        assert [s.id for s in matching] == [targeted.id]

    @pytest.mark.asyncio
    async def test_sync_subscriptions(self, store):
        kept = await store.subscribe("conn_b", "order.created")
        refiltered = await store.subscribe("conn_b", "order.paid", filter_spec={"data.amount[gte]": 10})
        dropped = await store.subscribe("conn_b", "order.cancelled", publisher="conn_shop")
        other = await store.subscribe("conn_c", "order.cancelled", publisher="conn_shop")

        result = await store.sync_subscriptions("conn_b", [
            SubscriptionSpec(event_type="order.created"),
            SubscriptionSpec(event_type="order.paid", filter={"data.amount[gte]": 50}),
            SubscriptionSpec(event_type="order.cancelled", publisher="conn_other"),
        ])

        assert (result.created, result.updated, result.deleted, result.unchanged) == (1, 1, 1, 1)
        assert result.deleted_ids == [dropped.id]
        assert {s.sync_key for s in result.subscriptions} == {
            ("order.created", None), ("order.paid", None), ("order.cancelled", "conn_other"),
        }

        assert (await store.get_subscription(kept.id)).filter is None
        assert (await store.get_subscription(refiltered.id)).filter == {"data.amount[gte]": 50}
        assert await store.get_subscription(dropped.id) is None
        assert await store.get_subscription(other.id) is not None
        assert len(await store.list_subscriptions("conn_b")) == 3

    @pytest.mark.asyncio
    async def test_sync_clears_filter(self, store):
        filtered = await store.subscribe("conn_b", "order.paid", filter_spec={"data.amount[gte]": 10})

        result = await store.sync_subscriptions("conn_b", [SubscriptionSpec(event_type="order.paid")])

        assert result.updated == 1
        assert (await store.get_subscription(filtered.id)).filter is None

    @pytest.mark.asyncio
    async def test_sync_collapses_duplicate_keys(self, store):
        await store.subscribe("conn_b", "order.paid")
        await store.subscribe("conn_b", "order.paid", filter_spec={"data.amount[gte]": 10})

        result = await store.sync_subscriptions("conn_b", [SubscriptionSpec(event_type="order.paid")])

        assert result.deleted == 1
        assert len(await store.list_subscriptions("conn_b")) == 1

    @pytest.mark.asyncio
    async def test_release_subscription_deliveries(self, store, sample_event, clock):
        leaving = await store.subscribe("conn_c", "order.created")
        staying = await store.subscribe("conn_b", "order.created")
        second = Event(id="evt_order_2", source="conn_shop", type="order.created", time=clock())
        await store.publish_event(second)
        await store.create_deliveries(second.id, [leaving.id])
        # The leaving subscriber's older row is in flight
        assert len(await store.claim_pending_deliveries(10)) == 1
        await store.publish_event(sample_event)
        await store.create_deliveries(sample_event.id, [staying.id, leaving.id])

        released = await store.release_subscription_deliveries(leaving.id)

        assert released == [sample_event.id]
        assert [d.subscription_id for d in await store.get_deliveries(sample_event.id)] == [staying.id]
        assert [d.status for d in await store.get_deliveries(second.id)] == [DeliveryStatus.PROCESSING]
        assert await store.release_subscription_deliveries(leaving.id) == []


class TestClaim:

    @pytest.mark.asyncio
    async def test_claim_moves_due_deliveries_to_processing(self, store, sample_event):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b"])

        claimed = await store.claim_pending_deliveries(10)

        assert [p.delivery.id for p in claimed] == [created[0].id]
        assert claimed[0].delivery.status == DeliveryStatus.PROCESSING
        assert claimed[0].event.id == sample_event.id
        assert claimed[0].subscription.connection_id == "conn_b"

        deliveries = await store.get_deliveries(sample_event.id)
        assert deliveries[0].status == DeliveryStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_claimed_rows_are_not_claimed_again(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b", "conn_c"])

        first = await store.claim_pending_deliveries(10)
        second = await store.claim_pending_deliveries(10)

        assert len(first) == 2
        assert second == []

    @pytest.mark.asyncio
    async def test_future_deliveries_not_claimed(self, store, sample_event, clock):
        await _publish_with_deliveries(store, sample_event, ["conn_b"], deliver_at=clock() + timedelta(minutes=5))

        assert await store.claim_pending_deliveries(10) == []

        clock.advance(minutes=5)
        assert len(await store.claim_pending_deliveries(10)) == 1

    @pytest.mark.asyncio
    async def test_batch_size_limits_claim(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, [f"conn_{i}" for i in range(5)])

        claimed = await store.claim_pending_deliveries(2)

        assert len(claimed) == 2
        statuses = sorted(d.status.value for d in await store.get_deliveries(sample_event.id))
        assert statuses == ["pending", "pending", "pending", "processing", "processing"]

    @pytest.mark.asyncio
    async def test_oldest_due_first(self, store, clock):
        late = Event(id="evt_late", source="conn_shop", type="t", time=clock())
        early = Event(id="evt_early", source="conn_shop", type="t", time=clock())
        await _publish_with_deliveries(store, late, ["conn_b"], deliver_at=clock() - timedelta(seconds=1))
        await store.publish_event(early)
        subscription = await store.subscribe("conn_b", "t")
        await store.create_deliveries(early.id, [subscription.id], clock() - timedelta(seconds=30))

        claimed = await store.claim_pending_deliveries(1)

        assert claimed[0].event.id == "evt_early"

    @pytest.mark.asyncio
    async def test_deleted_subscription_skipped(self, store, sample_event):
        await store.publish_event(sample_event)
        subscription = await store.subscribe("conn_b", sample_event.type)
        await store.create_deliveries(sample_event.id, [subscription.id])
        await store.unsubscribe(subscription.id)

        assert await store.claim_pending_deliveries(10) == []

    @pytest.mark.asyncio
    async def test_reset_stuck_deliveries(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b", "conn_c"])
        await store.claim_pending_deliveries(10)

        assert await store.reset_stuck_deliveries() == 2
        assert await store.reset_stuck_deliveries() == 0
        assert len(await store.claim_pending_deliveries(10)) == 2

    @pytest.mark.asyncio
    async def test_zero_batch(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b"])

        assert await store.claim_pending_deliveries(0) == []


class TestOutcomes:

    @pytest.mark.asyncio
    async def test_mark_delivered(self, store, sample_event, clock):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b"])
        await store.claim_pending_deliveries(10)

        await store.mark_deliveries_delivered([created[0].id])

        delivery = (await store.get_deliveries(sample_event.id))[0]
        assert delivery.status == DeliveryStatus.DELIVERED
        assert delivery.delivered_at == clock()
        assert not await store.has_open_deliveries(sample_event.id)

    @pytest.mark.asyncio
    async def test_defer_keeps_attempts(self, store, sample_event, clock):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b"])
        await store.claim_pending_deliveries(10)

        await store.schedule_retry_without_attempt_increment([created[0].id], 30)

        delivery = (await store.get_deliveries(sample_event.id))[0]
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 0
        assert delivery.next_attempt_at == clock() + timedelta(seconds=30)

    @pytest.mark.asyncio
    async def test_failure_backoff_then_permanent(self, store, sample_event, clock):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b"])
        delivery_id = created[0].id

        await store.claim_pending_deliveries(10)
        await store.mark_deliveries_failed([delivery_id], "HTTP 500", 2, 1000, 10_000)

        delivery = (await store.get_deliveries(sample_event.id))[0]
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 1
        assert delivery.last_error == "HTTP 500"
        assert delivery.next_attempt_at == clock() + timedelta(seconds=1)

        clock.advance(seconds=1)
        await store.claim_pending_deliveries(10)
        await store.mark_deliveries_failed([delivery_id], "HTTP 502", 2, 1000, 10_000)

        delivery = (await store.get_deliveries(sample_event.id))[0]
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 2
        assert delivery.last_error == "HTTP 502"

    @pytest.mark.asyncio
    async def test_mark_failed_ignores_rows_not_in_processing(self, store, sample_event):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b"])
        await store.claim_pending_deliveries(10)
        # A restart put the row back before the failure was recorded
        await store.reset_stuck_deliveries()

        await store.mark_deliveries_failed([created[0].id], "late", 3, 1000, 10_000)

        delivery = (await store.get_deliveries(sample_event.id))[0]
        assert delivery.status == DeliveryStatus.PENDING
        assert delivery.attempts == 0
        assert delivery.last_error is None

    @pytest.mark.asyncio
    async def test_update_event_status_is_idempotent(self, store, sample_event):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b", "conn_c"])
        await store.claim_pending_deliveries(10)
        await store.mark_deliveries_delivered([created[0].id])

        assert await store.update_event_status(sample_event.id) == EventStatus.PENDING

        await store.mark_deliveries_failed([created[1].id], "boom", 1, 1000, 10_000)

        assert await store.update_event_status(sample_event.id) == EventStatus.FAILED
        assert await store.update_event_status(sample_event.id) == EventStatus.FAILED
        assert (await store.get_event(sample_event.id)).status == EventStatus.FAILED

    @pytest.mark.asyncio
    async def test_update_event_status_all_delivered(self, store, sample_event):
        created = await _publish_with_deliveries(store, sample_event, ["conn_b", "conn_c"])
        await store.claim_pending_deliveries(10)
        await store.mark_deliveries_delivered([d.id for d in created])

        assert await store.update_event_status(sample_event.id) == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_update_event_status_without_deliveries(self, store, sample_event):
        await store.publish_event(sample_event)

        assert await store.update_event_status(sample_event.id) is None
        assert (await store.get_event(sample_event.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_ack_resolves_only_callers_pending_deliveries(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b", "conn_c"])

        assert await store.ack_delivery(sample_event.id, "conn_b")
        assert not await store.ack_delivery(sample_event.id, "conn_b")
        assert not await store.ack_delivery(sample_event.id, "conn_unknown")

        by_status = {d.status for d in await store.get_deliveries(sample_event.id)}
        assert by_status == {DeliveryStatus.DELIVERED, DeliveryStatus.PENDING}

    @pytest.mark.asyncio
    async def test_ack_ignores_claimed_deliveries(self, store, sample_event):
        await _publish_with_deliveries(store, sample_event, ["conn_b"])
        await store.claim_pending_deliveries(10)

        assert not await store.ack_delivery(sample_event.id, "conn_b")
