"""Publish/subscribe topic tree with batched, per-subscriber delivery."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntFlag
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple


class _DeliveryFlag(IntFlag):
    LAST = 1
    FIRST = 2


LAST = _DeliveryFlag.LAST
FIRST = _DeliveryFlag.FIRST

# A subscriber holds at most this many undelivered messages before it is drained.
MAX_PENDING_PER_SUBSCRIBER = 32
# The shared outgoing queue is drained entirely when it reaches this size.
MAX_OUTGOING_MESSAGES = 0xFFFF


@dataclass(eq=False)
class Subscriber:
    """Something that subscribes to topics, such as a WebSocket."""

    user: Any = None
    topics: Dict["Topic", None] = field(default_factory=dict)
    _pending: List[int] = field(default_factory=list, repr=False)


class Topic:
    """A named set of subscribers."""

    __slots__ = ("name", "_subscribers")

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: Dict[Subscriber, None] = {}

    def __len__(self) -> int:
        return len(self._subscribers)

    def __contains__(self, subscriber: object) -> bool:
        return subscriber in self._subscribers

    def __iter__(self) -> Iterator[Subscriber]:
        return iter(self._subscribers)

    def __repr__(self) -> str:
        return f"Topic({self.name!r}, subscribers={len(self)})"


DeliveryCallback = Callable[[Subscriber, Any, int], Any]


class TopicTree:
    """Routes published messages to subscribers of a topic.

    Messages are queued and handed to ``callback(subscriber, message, flags)``
    when drained. ``flags`` carries ``FIRST`` and ``LAST`` for the first and
    last message of a batch. A truthy return stops delivering the rest of
    that subscriber's batch.
    """

    def __init__(self, callback: DeliveryCallback) -> None:
        self._callback = callback
        self._topics: Dict[str, Topic] = {}
        self._drainable: Dict[Subscriber, None] = {}
        self._outgoing: List[Any] = []
        self.iterating_subscriber: Optional[Subscriber] = None

    def _check_iterating(self, subscriber: Subscriber) -> None:
        if self.iterating_subscriber is subscriber:
            raise RuntimeError(
                "a subscriber must not subscribe or unsubscribe while iterating its topics"
            )

    def _remove_if_empty(self, topic: Topic) -> None:
        if not len(topic):
            self._topics.pop(topic.name, None)

    def create_subscriber(self) -> Subscriber:
        """Make a new subscriber with no topics."""
        return Subscriber()

    def free_subscriber(self, subscriber: Optional[Subscriber]) -> None:
        """Remove a subscriber from every topic and drop its pending messages."""
        if subscriber is None:
            return
        for topic in subscriber.topics:
            topic._subscribers.pop(subscriber, None)
            self._remove_if_empty(topic)
        subscriber.topics.clear()
        subscriber._pending.clear()
        self._drainable.pop(subscriber, None)

    def lookup_topic(self, topic: str) -> Optional[Topic]:
        """The topic of that name, if anyone is subscribed to it."""
        return self._topics.get(topic)

    def subscribe(self, subscriber: Subscriber, topic: str) -> Optional[Topic]:
        """Subscribe; return the topic if this was a new subscription, else None."""
        self._check_iterating(subscriber)
        topic_obj = self._topics.get(topic)
        if topic_obj is None:
            topic_obj = self._topics[topic] = Topic(topic)
        if subscriber in topic_obj:
            return None
        subscriber.topics[topic_obj] = None
        topic_obj._subscribers[subscriber] = None
        return topic_obj

    def unsubscribe(self, subscriber: Subscriber, topic: str) -> Tuple[bool, bool, int]:
        """Unsubscribe; return (was subscribed, no topics left, new subscriber count)."""
        self._check_iterating(subscriber)
        topic_obj = self._topics.get(topic)
        if topic_obj is None or topic_obj not in subscriber.topics:
            return False, False, -1
        del subscriber.topics[topic_obj]
        topic_obj._subscribers.pop(subscriber, None)
        new_count = len(topic_obj)
        self._remove_if_empty(topic_obj)
        return True, not subscriber.topics, new_count

    def _deliver(self, subscriber: Subscriber) -> None:
        # Clear first so that re-entrant drains from the callback are no-ops.
        indices, subscriber._pending = subscriber._pending, []
        last = len(indices) - 1
        for position, index in enumerate(indices):
            flags = _DeliveryFlag(0)
            if position == 0:
                flags |= FIRST
            if position == last:
                flags |= LAST
            if self._callback(subscriber, self._outgoing[index], flags):
                break

    def drain(self, subscriber: Optional[Subscriber] = None) -> None:
        """Deliver pending messages to one subscriber, or to all of them."""
        if subscriber is None:
            while self._drainable:
                current = next(iter(self._drainable))
                del self._drainable[current]
                self._deliver(current)
            self._outgoing.clear()
            return
        if subscriber._pending:
            self._drainable.pop(subscriber, None)
            self._deliver(subscriber)
            if not self._drainable:
                self._outgoing.clear()

    def publish(self, sender: Optional[Subscriber], topic: str, message: Any) -> bool:
        """Queue ``message`` for every subscriber of ``topic`` except ``sender``.

        Returns False if the topic has no subscribers at all.
        """
        topic_obj = self._topics.get(topic)
        if topic_obj is None:
            return False
        if len(self._outgoing) == MAX_OUTGOING_MESSAGES:
            self.drain()
        referenced = False
        for subscriber in list(topic_obj):
            if subscriber is sender:
                continue
            if len(subscriber._pending) == MAX_PENDING_PER_SUBSCRIBER:
                self.drain(subscriber)
            subscriber._pending.append(len(self._outgoing))
            self._drainable.setdefault(subscriber, None)
            referenced = True
        if referenced:
            self._outgoing.append(message)
        return True