"""Synchronous fan-out of snapshots and notices to subscribers."""

import logging
from typing import Callable

from ._types import MetricsSnapshot, Notice

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[MetricsSnapshot], None]
NoticeCallback = Callable[[Notice], None]


class MetricsBus:
    """Minimal typed pub/sub for MetricsSnapshot and Notice.

    Delivery is synchronous on the publisher's thread, in subscription
    order. A subscriber that raises is logged and skipped; the remaining
    subscribers still receive the value.

    Usage::

        bus = MetricsBus()
        unsubscribe = bus.subscribe(lambda snap: print(snap.wpm))
        bus.publish(snapshot)
        unsubscribe()
    """

    def __init__(self) -> None:
        self._subscribers: list[SnapshotCallback] = []
        self._notice_subscribers: list[NoticeCallback] = []

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """Register a snapshot subscriber.

        Returns:
            A function that removes the subscription; calling it again is a no-op.
        """
        self._subscribers.append(callback)
        return self._unsubscriber(self._subscribers, callback)

    def subscribe_notices(self, callback: NoticeCallback) -> Callable[[], None]:
        self._notice_subscribers.append(callback)
        return self._unsubscriber(self._notice_subscribers, callback)

    @staticmethod
    def _unsubscriber(subscribers: list, callback: Callable) -> Callable[[], None]:
        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            try:
                subscribers.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, snapshot: MetricsSnapshot) -> None:
        # Iterate over a copy so callbacks may unsubscribe during delivery.
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Metrics subscriber %r failed", callback)

    def publish_notice(self, notice: Notice) -> None:
        for callback in list(self._notice_subscribers):
            try:
                callback(notice)
            except Exception:
                logger.exception("Notice subscriber %r failed", callback)

    def clear(self) -> None:
        self._subscribers.clear()
        self._notice_subscribers.clear()

    @property
    def count(self) -> int:
        return len(self._subscribers)
