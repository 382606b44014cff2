from datetime import datetime, timezone
from typing import Iterable, Optional, Set

from .models import Notification


ELIGIBLE_REASONS = {"mention", "reply"}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")


class NotificationWatermark:
    """In-process high-water mark over notification ``indexedAt`` timestamps.

    The feed's read flag is the durable dedup state; this mark additionally
    keeps a notification from being dispatched twice within one process when
    the remote flag lags (for example after a failed ``update_seen``).
    Timestamps are compared as ISO-8601 UTC strings, which sort lexically.
    """

    def __init__(self) -> None:
        self.last_indexed_at: Optional[str] = None
        self._uris_at_mark: Set[str] = set()

    def accepts(self, notification: Notification) -> bool:
        if notification.reason not in ELIGIBLE_REASONS or notification.is_read:
            return False
        if self.last_indexed_at is None or not notification.indexed_at:
            return notification.uri not in self._uris_at_mark
        if notification.indexed_at > self.last_indexed_at:
            return True
        if notification.indexed_at == self.last_indexed_at:
            return notification.uri not in self._uris_at_mark
        return False

    def advance(self, notifications: Iterable[Notification]) -> None:
        for notification in notifications:
            stamp = notification.indexed_at
            if not stamp:
                self._uris_at_mark.add(notification.uri)
                continue
            if self.last_indexed_at is None or stamp > self.last_indexed_at:
                self.last_indexed_at = stamp
                self._uris_at_mark = {notification.uri}
            elif stamp == self.last_indexed_at:
                self._uris_at_mark.add(notification.uri)
