import asyncio
from datetime import timedelta

import pytest

from conftest import T0, FakeClock, ScriptedAdapter
from core.exceptions import NotCancellableError
from models.notification import Notification
from services.notification_scheduler import NotificationScheduler
from services.notification_service import NotificationService


def sms_notification(id="n1", **fields):
    data = dict(
        id=id,
        user_id="u1",
        type="sms",
        delivery_channel="sms",
        recipient="+15550000001",
        content="hello",
        status="pending",
        scheduled_at=T0 - timedelta(seconds=1),
        attempts=0,
        created_at=T0 - timedelta(minutes=1),
        updated_at=T0 - timedelta(minutes=1),
    )
    data.update(fields)
    return Notification(**data)


@pytest.fixture
def scheduler(store, adapters, clock):
    return NotificationScheduler(
        store, adapters, instance_id="sch_test", max_attempts=3, lease_seconds=60, dispatch_timeout=1, clock=clock,
    )


async def insert(store, notification):
    await store.insert("notifications", notification.to_doc())


async def test_dispatches_due_sms(scheduler, store, adapters):
    await insert(store, sms_notification())

    assert await scheduler.tick() == 1
    doc = await store.get("notifications", "n1")
    assert doc["status"] == "sent"
    assert doc["sent_at"] == T0
    assert doc["sent_at"] >= doc["scheduled_at"]
    assert doc["attempts"] == 1
    assert doc["lease_holder"] is None
    assert adapters["sms"].calls == [("+15550000001", "hello")]

    assert await scheduler.tick() == 0
    assert len(adapters["sms"].calls) == 1


async def test_retries_then_succeeds(store, clock):
    sms = ScriptedAdapter("retry", "retry", "ok")
    scheduler = NotificationScheduler(store, {"sms": sms}, instance_id="sch_test", clock=clock)
    await insert(store, sms_notification("n2"))

    await scheduler.tick()
    doc = await store.get("notifications", "n2")
    assert (doc["status"], doc["attempts"]) == ("pending", 1)
    assert doc["last_error"] == "service indisponible"

    clock.advance(minutes=1)
    await scheduler.tick()
    doc = await store.get("notifications", "n2")
    assert (doc["status"], doc["attempts"]) == ("pending", 2)

    clock.advance(minutes=1)
    await scheduler.tick()
    doc = await store.get("notifications", "n2")
    assert (doc["status"], doc["attempts"]) == ("sent", 3)
    assert doc["sent_at"] == clock.now
    assert doc["last_error"] is None


async def test_retryable_failures_exhaust_into_failed(store, clock):
    sms = ScriptedAdapter("retry", "retry", "retry", "ok")
    scheduler = NotificationScheduler(store, {"sms": sms}, instance_id="sch_test", max_attempts=3, clock=clock)
    await insert(store, sms_notification())
    for _ in range(4):
        await scheduler.tick()
        clock.advance(minutes=1)
    doc = await store.get("notifications", "n1")
    assert (doc["status"], doc["attempts"]) == ("failed", 3)
    assert doc["sent_at"] is None
    assert len(sms.calls) == 3


async def test_permanent_failure(store, clock):
    sms = ScriptedAdapter("fail")
    scheduler = NotificationScheduler(store, {"sms": sms}, instance_id="sch_test", clock=clock)
    await insert(store, sms_notification())
    await scheduler.tick()
    doc = await store.get("notifications", "n1")
    assert doc["status"] == "failed"
    assert doc["last_error"] == "destinataire refusé"


async def test_future_notification_is_not_dispatched(scheduler, store, adapters, clock):
    await insert(store, sms_notification(scheduled_at=T0 + timedelta(minutes=5)))
    assert await scheduler.tick() == 0
    assert adapters["sms"].calls == []
    clock.advance(minutes=5)
    assert await scheduler.tick() == 1
    assert (await store.get("notifications", "n1"))["status"] == "sent"


async def test_expired_notification_is_cancelled_without_dispatch(scheduler, store, adapters):
    await insert(store, sms_notification(expires_at=T0))
    await scheduler.tick()
    doc = await store.get("notifications", "n1")
    assert doc["status"] == "cancelled"
    assert doc["sent_at"] is None
    assert adapters["sms"].calls == []


async def test_cancelled_notification_is_never_dispatched(scheduler, store, adapters, clock):
    await insert(store, sms_notification())
    await NotificationService(store, clock=clock).cancel("n1")
    assert await scheduler.tick() == 0
    assert adapters["sms"].calls == []


async def test_cancel_after_send_is_refused(scheduler, store, clock):
    await insert(store, sms_notification())
    await scheduler.tick()
    with pytest.raises(NotCancellableError):
        await NotificationService(store, clock=clock).cancel("n1")


async def test_lease_held_by_another_scheduler_is_respected(store, clock):
    await insert(store, sms_notification(
        status="sending", lease_holder="sch_other", lease_expires_at=T0 + timedelta(seconds=30),
    ))
    sms = ScriptedAdapter()
    scheduler = NotificationScheduler(store, {"sms": sms}, instance_id="sch_test", clock=clock)

    assert await scheduler.tick() == 0
    assert sms.calls == []

    # Bail expiré : la notification est reprise
    clock.advance(seconds=31)
    assert await scheduler.tick() == 1
    doc = await store.get("notifications", "n1")
    assert doc["status"] == "sent"
    assert len(sms.calls) == 1


async def test_two_schedulers_dispatch_once(store, clock):
    sms = ScriptedAdapter()
    first = NotificationScheduler(store, {"sms": sms}, instance_id="sch_a", clock=clock)
    second = NotificationScheduler(store, {"sms": sms}, instance_id="sch_b", clock=clock)
    for i in range(5):
        await insert(store, sms_notification(f"n{i}"))

    await asyncio.gather(first.tick(), second.tick())
    assert len(sms.calls) == 5
    assert await store.count("notifications", {"status": "sent"}) == 5


async def test_dispatch_timeout_is_retryable(store, clock):
    class SlowAdapter:
        async def send(self, to, body):
            await asyncio.sleep(5)

    scheduler = NotificationScheduler(
        store, {"sms": SlowAdapter()}, instance_id="sch_test", dispatch_timeout=0.01, clock=clock,
    )
    await insert(store, sms_notification())
    await scheduler.tick()
    doc = await store.get("notifications", "n1")
    assert (doc["status"], doc["attempts"]) == ("pending", 1)
    assert "dépassé" in doc["last_error"]


async def test_missing_adapter_is_permanent(store, clock):
    scheduler = NotificationScheduler(store, {}, instance_id="sch_test", clock=clock)
    await insert(store, sms_notification())
    await scheduler.tick()
    assert (await store.get("notifications", "n1"))["status"] == "failed"


async def test_email_dispatch_renders_html(scheduler, store, adapters):
    await insert(store, sms_notification(
        type="welcome", delivery_channel="email", recipient="alice@example.com", title="Welcome", content="Hi Alice",
    ))
    await scheduler.tick()
    to, subject, body, html = adapters["email"].calls[0]
    assert (to, subject, body) == ("alice@example.com", "Welcome", "Hi Alice")
    assert "<h1" in html and "Hi Alice" in html


async def test_push_fans_out_per_recipient(scheduler, store, adapters):
    await insert(store, sms_notification(
        type="message",
        delivery_channel="push",
        recipient=None,
        title="New message from Alice",
        targeted_users=["u2", "u3", "u1"],
        read_status={"u2": False, "u3": False, "u1": True},
    ))
    await scheduler.tick()
    channels = [call[0] for call in adapters["push"].calls]
    # L'acteur (déjà lu) n'est pas notifié
    assert channels == ["user_u2", "user_u3"]
    assert adapters["push"].calls[0][2]["title"] == "New message from Alice"
    doc = await store.get("notifications", "n1")
    assert doc["status"] == "sent"
    assert doc["delivered_to"] == ["u2", "u3"]


async def test_push_retry_skips_already_delivered(store, clock):
    push = ScriptedAdapter("ok", "retry")
    scheduler = NotificationScheduler(store, {"push": push}, instance_id="sch_test", clock=clock)
    await insert(store, sms_notification(
        type="new_user",
        delivery_channel="push",
        recipient=None,
        targeted_users=["u1", "u2", "u3"],
        read_status={"u1": False, "u2": False, "u3": False},
    ))
    await scheduler.tick()
    doc = await store.get("notifications", "n1")
    assert (doc["status"], doc["delivered_to"]) == ("pending", ["u1"])

    clock.advance(minutes=1)
    await scheduler.tick()
    channels = [call[0] for call in push.calls]
    assert channels == ["user_u1", "user_u2", "user_u2", "user_u3"]
    assert (await store.get("notifications", "n1"))["status"] == "sent"


async def test_batch_size_and_oldest_first(store, clock):
    sms = ScriptedAdapter()
    scheduler = NotificationScheduler(store, {"sms": sms}, instance_id="sch_test", batch_size=2, clock=clock)
    for i, minutes in enumerate((3, 1, 2)):
        await insert(store, sms_notification(f"n{i}", recipient=f"+1555000000{i}", scheduled_at=T0 - timedelta(minutes=minutes)))
    assert await scheduler.tick() == 2
    assert [call[0] for call in sms.calls] == ["+15550000000", "+15550000002"]


async def test_start_and_stop(store):
    clock = FakeClock()
    sms = ScriptedAdapter()
    scheduler = NotificationScheduler(
        store, {"sms": sms}, instance_id="sch_test", interval_seconds=0.01, clock=clock,
    )
    await insert(store, sms_notification())
    scheduler.start()
    assert scheduler.running
    for _ in range(100):
        if sms.calls:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()
    assert not scheduler.running
    assert len(sms.calls) == 1
    assert (await store.get("notifications", "n1"))["status"] == "sent"


class SlowPush:
    """Publication qui réussit toujours, en `delay` secondes."""

    def __init__(self, delay: float):
        self.delay = delay
        self.channels = []

    async def publish(self, channel, event, payload):
        await asyncio.sleep(self.delay)
        self.channels.append(channel)


def broadcast(size: int) -> Notification:
    targets = [f"m{i:03d}" for i in range(size)]
    return sms_notification(
        type="new_user",
        delivery_channel="push",
        recipient=None,
        targeted_users=targets,
        read_status={uid: False for uid in targets},
    )


async def test_large_broadcast_is_sent_in_batches(store, clock):
    push = SlowPush(0.005)
    scheduler = NotificationScheduler(
        store, {"push": push}, instance_id="sch_test", dispatch_timeout=0.2, push_batch_size=4, clock=clock,
    )
    await insert(store, broadcast(60))

    assert await scheduler.tick() == 1
    doc = await store.get("notifications", "n1")
    assert (doc["status"], doc["attempts"]) == ("sent", 1)
    assert len(doc["delivered_to"]) == 60
    assert len(push.channels) == 60


async def test_timed_out_broadcast_keeps_progress_without_spending_attempts(store, clock):
    push = SlowPush(0.01)
    scheduler = NotificationScheduler(
        store, {"push": push}, instance_id="sch_test", max_attempts=3, dispatch_timeout=0.1,
        push_batch_size=60, clock=clock,
    )
    await insert(store, broadcast(60))

    await scheduler.tick()
    doc = await store.get("notifications", "n1")
    assert (doc["status"], doc["attempts"]) == ("pending", 0)
    assert 0 < len(doc["delivered_to"]) < 60

    for _ in range(30):
        if doc["status"] != "pending":
            break
        clock.advance(minutes=1)
        await scheduler.tick()
        doc = await store.get("notifications", "n1")

    assert (doc["status"], doc["attempts"]) == ("sent", 1)
    # Chaque membre reçoit exactement un message
    assert sorted(push.channels) == [f"user_m{i:03d}" for i in range(60)]


async def test_single_recipient_read_before_dispatch_ends_read(scheduler, store, adapters, clock):
    await insert(store, sms_notification(
        type="connection_request",
        delivery_channel="push",
        recipient=None,
        targeted_users=["u2"],
        read_status={"u2": False},
    ))
    await NotificationService(store, clock=clock).mark_read("n1", "u2")
    assert (await store.get("notifications", "n1"))["status"] == "pending"

    await scheduler.tick()
    doc = await store.get("notifications", "n1")
    assert doc["status"] == "read"
    assert doc["sent_at"] == T0
    assert adapters["push"].calls == []
