"""
Event Channel - Fan-out of daemon-pushed notifications
Every subscriber sees every matching event once, in the order the daemon sent them.
"""

import fnmatch
import queue
import sys
import threading
from typing import Callable, Iterable, Iterator, List, Optional

from protocol import Event

# Placed on a subscription queue to end iteration
_CANCELLED = object()


class Subscription:
    """
    Registered interest in events whose topic matches one of `topics`
    (glob patterns such as "player.*"; None matches everything).

    With a `target` the event is handed to the callable on the I/O thread.
    Otherwise events are buffered and read by iterating the subscription,
    which blocks until the next event and ends only when cancelled.
    """

    def __init__(self, channel: "EventChannel", topics: Optional[Iterable[str]] = None,
                 target: Optional[Callable[[Event], None]] = None):
        self._channel = channel
        self.topics = tuple(topics) if topics is not None else None
        self.target = target
        self._queue = queue.Queue()
        self.cancelled = False

    def matches(self, topic: str) -> bool:
        if self.topics is None:
            return True
        return any(fnmatch.fnmatchcase(topic, pattern) for pattern in self.topics)

    def deliver(self, event: Event, generation: int):
        if self.target is not None:
            self.target(event)
        else:
            self._queue.put((generation, event))

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """
        Next event of the current generation, or None on timeout or cancel.
        """
        while True:
            try:
                item = self._queue.get(timeout=timeout)
            except queue.Empty:
                return None
            if item is _CANCELLED:
                return None
            generation, event = item
            if generation == self._channel.generation:
                return event
            # Undelivered event from before a reconnect; drop it

    def __iter__(self) -> Iterator[Event]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def cancel(self):
        if self.cancelled:
            return
        self.cancelled = True
        self._channel._remove(self)
        self._queue.put(_CANCELLED)


class EventChannel:
    """
    Dispatches Event frames to subscribers.

    `publish` and `reset` are called from the I/O thread; `subscribe` and
    `Subscription.cancel` may be called from anywhere.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Subscription] = []
        self.generation = 0

    def subscribe(self, topics: Optional[Iterable[str]] = None,
                  target: Optional[Callable[[Event], None]] = None) -> Subscription:
        sub = Subscription(self, topics=topics, target=target)
        with self._lock:
            self._subscribers.append(sub)
        return sub

    def _remove(self, sub: Subscription):
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def publish(self, event: Event) -> int:
        """Deliver `event` to every matching subscriber; returns how many received it."""
        with self._lock:
            subscribers = list(self._subscribers)
            generation = self.generation

        delivered = 0
        for sub in subscribers:
            if sub.cancelled or not sub.matches(event.topic):
                continue
            try:
                sub.deliver(event, generation)
            except Exception as e:
                # One broken subscriber must not starve the others
                print(f"Event subscriber failed on {event.topic}: {e}", file=sys.stderr)
                continue
            delivered += 1
        return delivered

    def reset(self):
        """
        Start a new connection generation.
        Buffered events from the previous connection are no longer delivered.
        """
        with self._lock:
            self.generation += 1

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)
