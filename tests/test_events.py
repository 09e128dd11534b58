"""Tests for the push event broadcaster."""

from __future__ import annotations

from stream_status.events import EventBroadcaster


class TestEventBroadcaster:
	async def test_publish_reaches_all_listeners(self) -> None:
		events = EventBroadcaster()
		first = events.subscribe()
		second = events.subscribe()

		assert events.publish("streams") == 2
		for queue in (first, second):
			message = queue.get_nowait()
			assert message["type"] == "streams"
			assert message["timestamp"]

	async def test_no_listeners(self) -> None:
		assert EventBroadcaster().publish("all") == 0

	async def test_unsubscribe(self) -> None:
		events = EventBroadcaster()
		queue = events.subscribe()
		events.unsubscribe(queue)
		assert events.listener_count == 0
		assert events.publish("stats") == 0
		assert queue.empty()

	async def test_slow_listener_dropped(self) -> None:
		events = EventBroadcaster(queue_size=1)
		slow = events.subscribe()
		fast = events.subscribe()

		assert events.publish("commits") == 2
		fast.get_nowait()
		assert events.publish("commits") == 1
		assert events.listener_count == 1
		assert slow.qsize() == 1

	async def test_close_drops_everyone(self) -> None:
		events = EventBroadcaster()
		events.subscribe()
		events.close()
		assert events.listener_count == 0
