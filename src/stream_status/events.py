"""Best-effort push notifications to connected dashboard listeners."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Literal

from stream_status.models import _now_iso

logger = logging.getLogger(__name__)

EventKind = Literal["streams", "commits", "stats", "all", "connected"]

LISTENER_QUEUE_SIZE = 100


class EventBroadcaster:
	"""Fan-out channel with one bounded queue per listener.

	Delivery is fire-and-forget: nothing is replayed, and a listener whose
	queue is full or closed is dropped. Reconnecting clients re-fetch state.
	"""

	def __init__(self, queue_size: int = LISTENER_QUEUE_SIZE) -> None:
		self._queue_size = queue_size
		self._listeners: set[asyncio.Queue[dict[str, Any]]] = set()

	@property
	def listener_count(self) -> int:
		return len(self._listeners)

	def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
		queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
		self._listeners.add(queue)
		logger.debug("Listener subscribed (%d total)", len(self._listeners))
		return queue

	def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
		self._listeners.discard(queue)
		logger.debug("Listener unsubscribed (%d total)", len(self._listeners))

	def publish(self, kind: EventKind) -> int:
		"""Queue {type, timestamp} for every listener. Returns how many received it."""
		message = {"type": kind, "timestamp": _now_iso()}
		delivered = 0
		for queue in list(self._listeners):
			try:
				queue.put_nowait(message)
				delivered += 1
			except asyncio.QueueFull:
				logger.debug("Dropping slow listener")
				self._listeners.discard(queue)
		return delivered

	def close(self) -> None:
		self._listeners.clear()
