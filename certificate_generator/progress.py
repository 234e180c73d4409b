"""Publish/subscribe fan-out of job progress events."""

from __future__ import annotations

import json
import logging
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Union

from .config import HEARTBEAT_INTERVAL_MS
from .models import ProgressEvent

LOGGER = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 256
_CLOSED = object()


@dataclass(frozen=True)
class Heartbeat:
    job_id: str
    timestamp: float = field(default_factory=time.time)


StreamItem = Union[ProgressEvent, Heartbeat]


class Subscription:
    """One subscriber's ordered view of a job's events."""

    def __init__(self, bus: "ProgressBus", job_id: str, maxsize: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.bus = bus
        self.job_id = job_id
        self.closed = False
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)

    def offer(self, event: ProgressEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            return False
        return True

    def events(self, heartbeat_interval: float = HEARTBEAT_INTERVAL_MS / 1000.0) -> Iterator[StreamItem]:
        """Yield events in emission order, a heartbeat per idle interval, until a terminal event."""
        while not self.closed:
            try:
                item = self._queue.get(timeout=heartbeat_interval)
            except queue.Empty:
                yield Heartbeat(self.job_id)
                continue
            if item is _CLOSED:
                return
            yield item
            if item.stage.terminal:
                return

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.bus._remove(self)
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ProgressBus:
    def __init__(self, subscriber_queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self.subscriber_queue_size = subscriber_queue_size
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._last: Dict[str, ProgressEvent] = {}

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id, self.subscriber_queue_size)
        with self._lock:
            last = self._last.get(job_id)
            if last is not None:
                subscription.offer(last)
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def publish(self, job_id: str, event: ProgressEvent) -> None:
        # Offer under the lock so a concurrent subscribe sees this event either replayed or queued, never both.
        with self._lock:
            self._last[job_id] = event
            dropped = [
                subscription
                for subscription in self._subscribers.get(job_id, ())
                if not subscription.offer(event)
            ]

        for subscription in dropped:
            LOGGER.info("Dropping stalled progress subscriber for job %s", job_id)
            subscription.close()

    def last_event(self, job_id: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._last.get(job_id)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._last.pop(job_id, None)
            subscribers = self._subscribers.pop(job_id, [])
        for subscription in subscribers:
            subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id)
            if not subscribers:
                return
            try:
                subscribers.remove(subscription)
            except ValueError:
                return
            if not subscribers:
                del self._subscribers[subscription.job_id]


def format_sse(item: StreamItem) -> bytes:
    if isinstance(item, Heartbeat):
        payload = {"jobId": item.job_id, "timestamp": item.timestamp}
        return f"event: heartbeat\ndata: {json.dumps(payload)}\n\n".encode("utf-8")
    return f"event: progress\ndata: {json.dumps(item.to_dict())}\n\n".encode("utf-8")
