"""Push-style change notifications.

``ChangeFeed`` is the upstream: services publish an event for a topic after
their transaction commits. ``SubscriptionHub`` multiplexes it: the first local
listener on a topic attaches one upstream subscription, further listeners share
it, and removing the last listener detaches it again.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

logger = logging.getLogger("leaveflow.subscriptions")

Listener = Callable[[dict[str, Any]], None]
Unsubscribe = Callable[[], None]
Upstream = Callable[[str, Listener], Unsubscribe]


def team_requests_topic(team_id: int) -> str:
    return f"team:{team_id}:requests"


def user_requests_topic(uid: str) -> str:
    return f"user:{uid}:requests"


def request_logs_topic(request_id: int) -> str:
    return f"request:{request_id}:logs"


def user_balances_topic(uid: str) -> str:
    return f"user:{uid}:balances"


APPROVED_REQUESTS_TOPIC = "requests:approved"


class ChangeFeed:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sinks: dict[str, dict[int, Listener]] = {}
        self._next_id = 0

    def attach(self, topic: str, sink: Listener) -> Unsubscribe:
        with self._lock:
            self._next_id += 1
            sink_id = self._next_id
            self._sinks.setdefault(topic, {})[sink_id] = sink

        def _detach() -> None:
            with self._lock:
                sinks = self._sinks.get(topic)
                if not sinks:
                    return
                sinks.pop(sink_id, None)
                if not sinks:
                    self._sinks.pop(topic, None)

        return _detach

    def publish(self, topic: str, event: dict[str, Any]) -> None:
        with self._lock:
            sinks = list(self._sinks.get(topic, {}).values())
        for sink in sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("change_feed_sink_failed", extra={"topic": topic})

    def publish_many(self, topics: list[str], event: dict[str, Any]) -> None:
        for topic in dict.fromkeys(topics):
            self.publish(topic, {**event, "topic": topic})

    def attached_topics(self) -> list[str]:
        with self._lock:
            return sorted(self._sinks)


class SubscriptionHub:
    def __init__(self, upstream: Upstream) -> None:
        self._upstream = upstream
        self._lock = threading.Lock()
        self._listeners: dict[str, dict[object, Listener]] = {}
        self._detach: dict[str, Unsubscribe] = {}

    def subscribe(self, topic: str, listener: Listener) -> Unsubscribe:
        token = object()
        with self._lock:
            listeners = self._listeners.setdefault(topic, {})
            listeners[token] = listener
            if topic not in self._detach:
                self._detach[topic] = self._upstream(topic, lambda event: self._fan_out(topic, event))

        def _unsubscribe() -> None:
            detach: Unsubscribe | None = None
            with self._lock:
                listeners = self._listeners.get(topic)
                if listeners is None or token not in listeners:
                    return
                del listeners[token]
                if not listeners:
                    self._listeners.pop(topic, None)
                    detach = self._detach.pop(topic, None)
            if detach is not None:
                detach()

        return _unsubscribe

    def listener_count(self, topic: str) -> int:
        with self._lock:
            return len(self._listeners.get(topic, {}))

    def _fan_out(self, topic: str, event: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners.get(topic, {}).values())
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("subscription_listener_failed", extra={"topic": topic})
