"""Tests for the log broadcaster ring buffer and subscriber fan-out."""
import asyncio
import threading

import pytest

from arsm.websocket import LogBroadcaster, LogLine


def test_log_line_message_format():
    line = LogLine(text="hello", stream="stderr")
    message = line.to_message()
    assert message["type"] == "log"
    assert message["data"] == {"text": "hello", "stream": "stderr"}
    assert message["timestamp"]


def test_ring_buffer_keeps_newest_lines():
    broadcaster = LogBroadcaster(buffer_size=500)
    for i in range(600):
        broadcaster.publish(f"line {i}")

    recent = broadcaster.recent()
    assert len(recent) == 500
    assert recent[0].text == "line 100"
    assert recent[-1].text == "line 599"


def test_recent_with_limit():
    broadcaster = LogBroadcaster()
    for i in range(10):
        broadcaster.publish(str(i))
    assert [line.text for line in broadcaster.recent(3)] == ["7", "8", "9"]
    assert broadcaster.recent(0) == []


def test_publish_without_subscribers_outside_event_loop():
    broadcaster = LogBroadcaster()
    line = broadcaster.publish("no one listening", stream="system")
    assert line.stream == "system"
    assert broadcaster.client_count == 0


@pytest.mark.asyncio
async def test_subscribe_replays_buffer_in_order():
    broadcaster = LogBroadcaster(buffer_size=500)
    for i in range(600):
        broadcaster.publish(f"line {i}")

    subscription = broadcaster.subscribe()
    assert [line.text for line in subscription.replay] == [f"line {i}" for i in range(100, 600)]
    # Replayed lines are not delivered a second time
    assert subscription.pending == 0

    broadcaster.publish("live")
    line = await asyncio.wait_for(subscription.get(), timeout=1)
    assert line.text == "live"


@pytest.mark.asyncio
async def test_every_subscriber_receives_every_line():
    broadcaster = LogBroadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()
    assert broadcaster.client_count == 2

    for i in range(5):
        broadcaster.publish(str(i))

    for subscription in (first, second):
        texts = [(await subscription.get()).text for _ in range(5)]
        assert texts == ["0", "1", "2", "3", "4"]


@pytest.mark.asyncio
async def test_full_queue_drops_only_for_slow_subscriber():
    broadcaster = LogBroadcaster(queue_size=2)
    slow = broadcaster.subscribe()

    for i in range(5):
        broadcaster.publish(str(i))

    assert slow.pending == 2
    assert slow.dropped == 3
    assert [slow.get_nowait().text, slow.get_nowait().text] == ["0", "1"]
    assert slow.get_nowait() is None

    # The buffer and later subscribers are unaffected
    assert len(broadcaster.recent()) == 5
    fresh = broadcaster.subscribe()
    assert len(fresh.replay) == 5


@pytest.mark.asyncio
async def test_publish_from_other_threads():
    broadcaster = LogBroadcaster()
    subscription = broadcaster.subscribe()

    def producer():
        for i in range(50):
            broadcaster.publish(f"t{i}")

    thread = threading.Thread(target=producer)
    thread.start()
    thread.join()

    received = [
        (await asyncio.wait_for(subscription.get(), timeout=1)).text
        for _ in range(50)
    ]
    assert received == [f"t{i}" for i in range(50)]


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent():
    broadcaster = LogBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.unsubscribe(subscription)
    broadcaster.unsubscribe(subscription)
    assert broadcaster.client_count == 0

    broadcaster.publish("after")
    assert subscription.pending == 0


def test_subscriber_on_closed_loop_is_removed():
    broadcaster = LogBroadcaster()
    loop = asyncio.new_event_loop()

    async def register():
        return broadcaster.subscribe()

    loop.run_until_complete(register())
    loop.close()
    assert broadcaster.client_count == 1

    broadcaster.publish("nobody home")
    assert broadcaster.client_count == 0
