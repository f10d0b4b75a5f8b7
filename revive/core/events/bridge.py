"""Event delivery bridge: push with poll fallback.

Observers prefer an in-process push subscription keyed by project id.
If the subscription cannot be created or is dropped (slow consumer,
broadcaster shutdown), the stream falls back to polling the event log
every ``poll_interval`` seconds. Delivery is at-least-once underneath;
the stream dedupes by event_id before yielding.
"""

import json
import logging
import queue
import threading
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from ..constants import EVENT_PAGE_SIZE
from ..utils import clamp_unit
from .log import parse_cursor

logger = logging.getLogger(__name__)


class SubscriptionDropped(Exception):
    """The push channel is gone; the consumer must fall back to polling."""


class Subscription:
    """Bounded per-consumer queue of pushed events."""

    def __init__(self, broadcaster: "EventBroadcaster", project_id: str, maxsize: int = 1000):
        self._broadcaster = broadcaster
        self.project_id = project_id
        self._queue: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self.dropped = False

    def offer(self, event: Dict[str, Any]):
        if self.dropped:
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.warning(f"Subscriber for project {self.project_id} overflowed, dropping")
            self.drop()

    def get(self, timeout: float) -> Optional[Dict[str, Any]]:
        """Next pushed event, or None on timeout.

        Raises:
            SubscriptionDropped: The channel was closed or overflowed.
        """
        if self.dropped:
            raise SubscriptionDropped(self.project_id)
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            if self.dropped:
                raise SubscriptionDropped(self.project_id)
            return None

    def drop(self):
        self.dropped = True
        self._broadcaster.unsubscribe(self)

    def close(self):
        self.drop()


class EventBroadcaster:
    """In-process pub/sub of appended events, keyed by project id."""

    def __init__(self, max_queue: int = 1000):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Subscription]] = defaultdict(list)
        self._max_queue = max_queue
        self._closed = False

    def subscribe(self, project_id) -> Subscription:
        with self._lock:
            if self._closed:
                raise SubscriptionDropped(str(project_id))
            sub = Subscription(self, str(project_id), maxsize=self._max_queue)
            self._subscribers[str(project_id)].append(sub)
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            subs = self._subscribers.get(sub.project_id)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.project_id]

    def publish(self, event: Dict[str, Any]):
        with self._lock:
            targets = list(self._subscribers.get(str(event["project_id"]), ()))
        for sub in targets:
            sub.offer(event)

    def subscriber_count(self, project_id) -> int:
        with self._lock:
            return len(self._subscribers.get(str(project_id), ()))

    def close(self):
        """Drop every subscriber; they fall back to polling."""
        with self._lock:
            self._closed = True
            subs = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        for sub in subs:
            sub.dropped = True


def _position(event: Dict[str, Any]) -> Tuple[datetime, int]:
    return parse_cursor(event["created_at"]), event["event_id"]


class DeliveredEvents:
    """Which events a stream has yielded, bounded by the poll cursor.

    Everything at or below the cursor was covered by an ordered log read,
    so only ids above it (seen first through push) are remembered.
    """

    def __init__(self):
        self.cursor: Optional[Tuple[datetime, int]] = None
        self._above: Dict[int, Tuple[datetime, int]] = {}

    def __len__(self) -> int:
        return len(self._above)

    def first_time(self, event: Dict[str, Any]) -> bool:
        """Record the event; False when it was already yielded."""
        position = _position(event)
        if self.cursor is not None and position <= self.cursor:
            return False
        if event["event_id"] in self._above:
            return False
        self._above[event["event_id"]] = position
        return True

    def advance(self, event: Dict[str, Any]):
        """Move the cursor to an event just read from the log."""
        self.cursor = _position(event)

    def prune(self):
        if self.cursor is None:
            return
        self._above = {i: p for i, p in self._above.items() if p > self.cursor}


class EventStream:
    """Ordered, deduplicated event iterator over push + polling."""

    def __init__(self, event_log, broadcaster: Optional[EventBroadcaster] = None, poll_interval: float = 1.0):
        self._log = event_log
        self._broadcaster = broadcaster
        self.poll_interval = poll_interval

    def iter_events(
        self,
        project_id,
        cursor: Optional[str] = None,
        stop: Optional[Callable[[], bool]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield each event for the project once, backlog first."""
        stop = stop or (lambda: False)
        delivered = DeliveredEvents()
        # Poll cursor only advances on ordered log reads, never on pushes
        position: List[Any] = [cursor, None]

        sub: Optional[Subscription] = None
        if self._broadcaster is not None:
            try:
                sub = self._broadcaster.subscribe(project_id)
            except Exception as e:
                logger.warning(f"Push subscription failed for project {project_id}, polling: {e}")
                sub = None

        try:
            # Backlog read after subscribing so nothing falls in between
            while True:
                page_size, fresh = self._read_log(project_id, position, delivered)
                yield from fresh
                if page_size < EVENT_PAGE_SIZE:
                    break

            while not stop():
                if sub is not None:
                    try:
                        event = sub.get(timeout=self.poll_interval)
                    except SubscriptionDropped:
                        logger.info(f"Push channel dropped for project {project_id}, polling")
                        sub = None
                        continue
                    if event is not None and delivered.first_time(event):
                        yield event
                    if len(delivered) >= EVENT_PAGE_SIZE:
                        # Catch the cursor up so pushed ids can be forgotten
                        _, fresh = self._read_log(project_id, position, delivered)
                        yield from fresh
                    continue

                page_size, fresh = self._read_log(project_id, position, delivered)
                yield from fresh
                if not page_size:
                    time.sleep(self.poll_interval)
        finally:
            if sub is not None:
                sub.close()

    def _read_log(self, project_id, position: List[Any], delivered: DeliveredEvents):
        """One ordered page after ``position``; returns (page size, unseen events)."""
        page = self._log.list_events(project_id, after=position[0], after_id=position[1])
        fresh = []
        for event in page:
            if delivered.first_time(event):
                fresh.append(event)
            delivered.advance(event)
            position[0], position[1] = event["created_at"], event["event_id"]
        delivered.prune()
        return len(page), fresh


class ConfidenceAccumulator:
    """Client-side running confidence, applying each event id exactly once."""

    def __init__(self, initial: float = 0.0):
        self.score = clamp_unit(initial)
        self._seen: Set[int] = set()

    def apply(self, event: Dict[str, Any]) -> bool:
        """Apply the event's delta; False when the event was already seen."""
        event_id = event["event_id"]
        if event_id in self._seen:
            return False
        self._seen.add(event_id)
        delta = event.get("confidence_delta")
        if delta:
            self.score = clamp_unit(self.score + delta)
        return True


def to_sse(event: Dict[str, Any]) -> str:
    """Serialize to Server-Sent Events format."""
    return f"id: {event['event_id']}\ndata: {json.dumps(event, default=str)}\n\n"
