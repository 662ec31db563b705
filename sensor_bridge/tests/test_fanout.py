"""Tests for sensor_bridge.fanout -- publish, isolation, command ingress."""

from __future__ import annotations

import asyncio
from typing import List

import pytest
import pytest_asyncio

from sensor_bridge.errors import SubscriberGone
from sensor_bridge.fanout import EventFanout, LoggingSubscriber, Subscriber
from sensor_bridge.schemas import BridgeEvent, EventKind
from sensor_bridge.tests.fakes import RecordingSubscriber, wait_until


class _Exploding(Subscriber):
    async def deliver(self, event: BridgeEvent) -> None:
        raise ValueError("boom")


class _Slow(Subscriber):
    def __init__(self, delay: float = 10) -> None:
        self.delay = delay
        self.cancelled = 0

    async def deliver(self, event: BridgeEvent) -> None:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled += 1
            raise


class _Departed(Subscriber):
    async def deliver(self, event: BridgeEvent) -> None:
        raise SubscriberGone("peer closed")


class _Joiner(Subscriber):
    """Subscribes another subscriber while an event is being delivered."""

    def __init__(self, fanout: EventFanout, newcomer: Subscriber) -> None:
        self._fanout = fanout
        self._newcomer = newcomer

    async def deliver(self, event: BridgeEvent) -> None:
        self._fanout.subscribe(self._newcomer)


@pytest_asyncio.fixture()
async def fanouts():
    """Factory for ``EventFanout`` instances closed after the test."""
    created: List[EventFanout] = []

    def _make(**kwargs) -> EventFanout:
        fanout = EventFanout(**kwargs)
        created.append(fanout)
        return fanout

    yield _make
    for fanout in created:
        await fanout.close()


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber(fanouts) -> None:
    fanout = fanouts()
    subs = [RecordingSubscriber() for _ in range(3)]
    for sub in subs:
        fanout.subscribe(sub)

    await fanout.publish(EventKind.CONNECTED, {"port": "/dev/ttyACM0"})
    await fanout.flush()

    for sub in subs:
        assert sub.kinds == ["connected"]
        assert sub.events[0].to_message() == {"event": "connected", "port": "/dev/ttyACM0"}


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_noop() -> None:
    fanout = EventFanout()
    await fanout.publish(EventKind.DISCONNECTED)
    await fanout.flush()


def test_subscribe_is_idempotent() -> None:
    fanout = EventFanout()
    sub = RecordingSubscriber()
    fanout.subscribe(sub)
    fanout.subscribe(sub)
    assert fanout.subscriber_count == 1
    fanout.unsubscribe(sub)
    fanout.unsubscribe(sub)
    assert fanout.subscriber_count == 0


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_affect_others(fanouts) -> None:
    fanout = fanouts()
    good = RecordingSubscriber()
    fanout.subscribe(_Exploding())
    fanout.subscribe(good)

    await fanout.publish(EventKind.ERROR, {"message": "x"})
    await fanout.flush()

    assert good.kinds == ["error"]
    assert fanout.subscriber_count == 2


@pytest.mark.asyncio
async def test_publish_returns_without_waiting_on_subscribers(fanouts) -> None:
    fanout = fanouts(delivery_timeout=5.0)
    slow = _Slow()
    fast = RecordingSubscriber()
    fanout.subscribe(slow)
    fanout.subscribe(fast)

    loop = asyncio.get_running_loop()
    started = loop.time()
    for toucher in range(5):
        await fanout.publish(EventKind.DATA, {"toucher": toucher})
    assert loop.time() - started < 0.1

    await wait_until(lambda: len(fast.events) == 5, timeout=0.3)
    assert [e.payload["toucher"] for e in fast.events] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_slow_delivery_times_out_and_moves_on(fanouts) -> None:
    fanout = fanouts(delivery_timeout=0.02)
    slow = _Slow()
    fanout.subscribe(slow)

    await fanout.publish(EventKind.DATA, {"toucher": 1})
    await fanout.publish(EventKind.DATA, {"toucher": 0})
    await asyncio.wait_for(fanout.flush(), timeout=1.0)

    assert slow.cancelled == 2
    assert fanout.subscriber_count == 1


@pytest.mark.asyncio
async def test_full_backlog_drops_oldest(fanouts) -> None:
    fanout = fanouts(max_backlog=2)
    sub = RecordingSubscriber()
    fanout.subscribe(sub)

    # publish never yields, so nothing is delivered until the flush
    for voltage in (1.0, 2.0, 3.0):
        await fanout.publish(EventKind.DATA, {"voltage": voltage})
    await fanout.flush()

    assert [e.payload["voltage"] for e in sub.events] == [2.0, 3.0]


@pytest.mark.asyncio
async def test_departed_subscriber_is_removed(fanouts) -> None:
    fanout = fanouts()
    fanout.subscribe(_Departed())
    keeper = RecordingSubscriber()
    fanout.subscribe(keeper)

    await fanout.publish(EventKind.DISCONNECTED)
    await fanout.flush()

    assert fanout.subscriber_count == 1
    assert keeper.kinds == ["disconnected"]


@pytest.mark.asyncio
async def test_unsubscribe_discards_pending_events(fanouts) -> None:
    fanout = fanouts()
    sub = RecordingSubscriber()
    fanout.subscribe(sub)

    await fanout.publish(EventKind.CONNECTED, {"port": "p"})
    fanout.unsubscribe(sub)
    await fanout.flush()
    await asyncio.sleep(0.01)

    assert sub.events == []


@pytest.mark.asyncio
async def test_subscriber_added_mid_broadcast_misses_current_round(fanouts) -> None:
    fanout = fanouts()
    newcomer = RecordingSubscriber()
    fanout.subscribe(_Joiner(fanout, newcomer))

    await fanout.publish(EventKind.CONNECTED, {"port": "p"})
    await fanout.flush()
    assert fanout.subscriber_count == 2
    assert newcomer.kinds == []

    await fanout.publish(EventKind.DISCONNECTED)
    await fanout.flush()
    assert newcomer.kinds == ["disconnected"]


@pytest.mark.asyncio
async def test_submit_command_forwards_verbatim() -> None:
    sent: List[str] = []

    def _sink(command: str) -> bool:
        sent.append(command)
        return True

    fanout = EventFanout(command_sink=_sink)
    sub = RecordingSubscriber()
    other = RecordingSubscriber()
    fanout.subscribe(sub)
    fanout.subscribe(other)

    assert await fanout.submit_command(sub, "LED_ON") is True
    assert sent == ["LED_ON"]
    assert sub.rejections == []
    assert other.events == []


@pytest.mark.asyncio
async def test_rejected_command_reported_to_submitter_only() -> None:
    fanout = EventFanout(command_sink=lambda command: False)
    sub = RecordingSubscriber()
    other = RecordingSubscriber()
    fanout.subscribe(sub)
    fanout.subscribe(other)

    assert await fanout.submit_command(sub, "LED_ON") is False
    assert sub.rejections == [("LED_ON", "device not connected")]
    assert other.rejections == []
    assert other.events == []


@pytest.mark.asyncio
async def test_submit_without_sink_is_rejected() -> None:
    sub = RecordingSubscriber()
    assert await EventFanout().submit_command(sub, "PING") is False
    assert sub.rejections == [("PING", "device not connected")]


@pytest.mark.asyncio
async def test_close_stops_drain_tasks() -> None:
    fanout = EventFanout(delivery_timeout=5.0)
    slow = _Slow()
    fanout.subscribe(slow)
    await fanout.publish(EventKind.DATA, {"toucher": 1})
    await asyncio.sleep(0.01)

    await asyncio.wait_for(fanout.close(), timeout=1.0)

    assert slow.cancelled == 1


@pytest.mark.asyncio
async def test_logging_subscriber_accepts_all_kinds() -> None:
    sub = LoggingSubscriber()
    await sub.deliver(BridgeEvent(kind=EventKind.CONNECTED, payload={"port": "p"}))
    await sub.deliver(
        BridgeEvent(
            kind=EventKind.DATA,
            payload={"toucher": 1, "voltage": 3.3, "timestamp": 1, "raw": "r"},
        )
    )
    await sub.deliver(BridgeEvent(kind=EventKind.ERROR, payload={"message": "m"}))
