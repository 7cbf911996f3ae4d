"""
Module: test_delivery_flow.py
Description: End-to-end delivery scenarios through EventBus and the
delivery worker, run against both store implementations.

Covers exclusive claims between workers, backoff growth and
termination, soft defers, crash recovery on start, recurring waves
(including subscriber turnover and acked waves) and batch-sized
claiming.
"""

from datetime import datetime, timedelta, timezone

import pytest

from eventbus.bus import EventBus
from eventbus.delivery.worker import DeliveryWorker
from eventbus.models.delivery import DeliveryStatus
from eventbus.models.event import EventStatus
from eventbus.models.notify import NotifyResult


@pytest.fixture
def bus(store, notifier, delivery_config, clock):
    return EventBus(store, notifier, delivery_config, clock=clock, wake_on_publish=False)


class TestDeliveryFlow:

    @pytest.mark.asyncio
    async def test_two_workers_never_share_a_delivery(self, bus, store, notifier, delivery_config, clock):
        other_notifier_calls = []

        class OtherNotifier:
            async def notify(self, connection_id, events):
                other_notifier_calls.append((connection_id, [e.id for e in events]))
                return NotifyResult(success=True)

        other = DeliveryWorker(store, OtherNotifier(), delivery_config, clock=clock)
        for connection_id in ("conn_b", "conn_c", "conn_d"):
            await bus.subscribe(connection_id, "order.created")
        event = await bus.publish("conn_shop", "order.created")

        first = await bus.worker.run_cycle()
        second = await other.run_cycle()

        assert first.claimed == 3
        assert second.claimed == 0
        assert other_notifier_calls == []
        assert (await bus.get_event(event.id)).status == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_backoff_grows_then_terminates(self, bus, notifier, clock):
        await bus.subscribe("conn_b", "order.created")
        event = await bus.publish("conn_shop", "order.created")
        notifier.responses["conn_b"] = NotifyResult(success=False, error="HTTP 500: down")

        delays = []
        for _ in range(3):
            started = clock()
            summary = await bus.worker.run_cycle()
            assert summary.claimed == 1
            delivery = (await bus.get_deliveries(event.id))[0]
            if delivery.status == DeliveryStatus.PENDING:
                delays.append(delivery.next_attempt_at - started)
                # Not due before the backoff elapses
                assert (await bus.worker.run_cycle()).claimed == 0
                clock.now = delivery.next_attempt_at

        assert delays == [timedelta(seconds=1), timedelta(seconds=2)]
        delivery = (await bus.get_deliveries(event.id))[0]
        assert delivery.status == DeliveryStatus.FAILED
        assert delivery.attempts == 3
        assert (await bus.get_event(event.id)).status == EventStatus.FAILED

    @pytest.mark.asyncio
    async def test_defers_never_exhaust_the_budget(self, bus, notifier, clock):
        await bus.subscribe("conn_b", "order.created")
        event = await bus.publish("conn_shop", "order.created")
        notifier.responses["conn_b"] = NotifyResult(success=False, retry_after=10)

        for _ in range(10):
            await bus.worker.run_cycle()
            clock.advance(seconds=10)

        delivery = (await bus.get_deliveries(event.id))[0]
        assert delivery.attempts == 0
        assert delivery.status == DeliveryStatus.PENDING
        assert len(notifier.calls) == 10

        notifier.responses["conn_b"] = NotifyResult(success=True)
        await bus.worker.run_cycle()

        assert (await bus.get_event(event.id)).status == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_restart_recovers_claimed_deliveries(self, store, notifier, delivery_config, clock):
        crashed = EventBus(store, notifier, delivery_config, clock=clock, wake_on_publish=False)
        await crashed.subscribe("conn_b", "order.created")
        event = await crashed.publish("conn_shop", "order.created")
        # Claimed, then the process died before notifying
        await store.claim_pending_deliveries(10)

        restarted = EventBus(store, notifier, delivery_config, clock=clock, wake_on_publish=False)
        await restarted.start()
        await restarted.stop()

        assert notifier.events_sent_to("conn_b") == [event.id]
        assert (await restarted.get_event(event.id)).status == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_recurring_event_waves(self, bus, notifier, clock):
        await bus.subscribe("conn_b", "report.tick")
        event = await bus.publish("conn_shop", "report.tick", cron="*/5 * * * *")

        # First wave is due at the next boundary
        assert (await bus.worker.run_cycle()).claimed == 0
        clock.now = datetime(2024, 1, 15, 10, 5, tzinfo=timezone.utc)

        summary = await bus.worker.run_cycle()

        assert summary.delivered == 1
        assert summary.rescheduled == 1
        pending = [d for d in await bus.get_deliveries(event.id) if d.status == DeliveryStatus.PENDING]
        assert [d.next_attempt_at for d in pending] == [datetime(2024, 1, 15, 10, 10, tzinfo=timezone.utc)]

    @pytest.mark.asyncio
    async def test_new_subscriber_receives_waves_after_old_one_leaves(self, bus, notifier, clock):
        await bus.subscribe("conn_b", "report.tick")
        event = await bus.publish("conn_shop", "report.tick", cron="*/5 * * * *")
        clock.now = datetime(2024, 1, 15, 10, 5, tzinfo=timezone.utc)
        await bus.worker.run_cycle()

        # Leaving drops conn_b's queued 10:10 wave instead of leaving it stuck
        await bus.unsubscribe((await bus.list_subscriptions("conn_b"))[0].id)
        assert all(d.status == DeliveryStatus.DELIVERED for d in await bus.get_deliveries(event.id))

        await bus.subscribe("conn_c", "report.tick")
        for minute in (10, 15, 20, 25, 30):
            clock.now = datetime(2024, 1, 15, 10, minute, tzinfo=timezone.utc)
            summary = await bus.worker.run_cycle()
            assert summary.delivered == 1
            assert summary.rescheduled == 1

        assert notifier.events_sent_to("conn_b") == [event.id]
        assert notifier.events_sent_to("conn_c") == [event.id] * 5
        assert (await bus.get_event(event.id)).status == EventStatus.PENDING

    @pytest.mark.asyncio
    async def test_unsubscribe_settles_one_off_event(self, bus, notifier):
        await bus.subscribe("conn_b", "order.created")
        await bus.subscribe("conn_c", "order.created")
        notifier.responses["conn_c"] = NotifyResult(success=False, retry_after=60)
        event = await bus.publish("conn_shop", "order.created")
        await bus.worker.run_cycle()
        assert (await bus.get_event(event.id)).status == EventStatus.PENDING

        await bus.unsubscribe((await bus.list_subscriptions("conn_c"))[0].id)

        deliveries = await bus.get_deliveries(event.id)
        assert [d.status for d in deliveries] == [DeliveryStatus.DELIVERED]
        assert (await bus.get_event(event.id)).status == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_ack_of_deferred_wave_keeps_schedule_running(self, bus, notifier, clock):
        await bus.subscribe("conn_b", "report.tick")
        event = await bus.publish("conn_shop", "report.tick", cron="*/5 * * * *")
        notifier.responses["conn_b"] = NotifyResult(success=False, retry_after=60)
        clock.now = datetime(2024, 1, 15, 10, 5, tzinfo=timezone.utc)

        summary = await bus.worker.run_cycle()
        assert (summary.deferred, summary.rescheduled) == (1, 0)

        # Handled out-of-band; the ack resolves the wave
        notifier.responses["conn_b"] = NotifyResult(success=True)
        assert await bus.ack(event.id, "conn_b")

        pending = [d for d in await bus.get_deliveries(event.id) if d.status == DeliveryStatus.PENDING]
        assert [d.next_attempt_at for d in pending] == [datetime(2024, 1, 15, 10, 10, tzinfo=timezone.utc)]

        for minute in (10, 15, 20, 25):
            clock.now = datetime(2024, 1, 15, 10, minute, tzinfo=timezone.utc)
            assert (await bus.worker.run_cycle()).delivered == 1

        assert notifier.events_sent_to("conn_b") == [event.id] * 5

    @pytest.mark.asyncio
    async def test_batch_size_bounds_each_cycle(self, store, notifier, delivery_config, clock):
        config = delivery_config.model_copy(update={"batch_size": 2})
        bus = EventBus(store, notifier, config, clock=clock, wake_on_publish=False)
        for i in range(5):
            await bus.subscribe(f"conn_{i}", "order.created")
        event = await bus.publish("conn_shop", "order.created")

        claimed = [(await bus.worker.run_cycle()).claimed for _ in range(4)]

        assert claimed == [2, 2, 1, 0]
        assert (await bus.get_event(event.id)).status == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_reconcile_is_idempotent(self, bus, store, notifier):
        await bus.subscribe("conn_b", "order.created")
        event = await bus.publish("conn_shop", "order.created")
        await bus.worker.run_cycle()

        for _ in range(3):
            assert await store.update_event_status(event.id) == EventStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_batch_of_two_for_one_subscriber(self, store, notifier, delivery_config, clock):
        config = delivery_config.model_copy(update={"batch_size": 2})
        bus = EventBus(store, notifier, config, clock=clock, wake_on_publish=False)
        await bus.subscribe("conn_b", "order.created")
        events = []
        for i in range(5):
            events.append(await bus.publish("conn_shop", "order.created", data={"n": i}))
            clock.advance(seconds=1)

        summary = await bus.worker.run_cycle()

        assert (summary.claimed, summary.groups) == (2, 1)
        assert notifier.calls == [("conn_b", [events[0].id, events[1].id])]
        untouched = [
            (await bus.get_deliveries(e.id))[0] for e in events[2:]
        ]
        assert all(d.status == DeliveryStatus.PENDING and d.attempts == 0 for d in untouched)
