from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from leaveflow.services.notifications import DisabledNotificationSender, NotificationSender
from leaveflow.services.subscriptions import ChangeFeed


@dataclass(slots=True)
class LeaveContext:
    """Collaborators shared by the leave use cases for one unit of work."""

    db: Session
    notifier: NotificationSender = field(default_factory=DisabledNotificationSender)
    feed: ChangeFeed | None = None

    def publish(self, topics: list[str], event: dict[str, Any]) -> None:
        if self.feed is None:
            return
        self.feed.publish_many(topics, event)
