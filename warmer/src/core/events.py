"""
Outbound notifications for the UI / stats side.

Fire-and-forget: a failing subscriber is logged and skipped, it never breaks
the send path that emitted the notification.
"""

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

GREETING_SENT = "greeting_sent"
REPLY_SENT = "reply_sent"
REACTION_SENT = "reaction_sent"
MEDIA_SENT = "media_sent"
STICKER_SENT = "sticker_sent"
MESSAGE_RECEIVED = "message_received"
WARMING_STOPPED = "warming_stopped"
WARMING_ERROR = "warming_error"
MESSAGE_COUNT_INCREMENTED = "message_count_incremented"
SESSION_STATUS = "session_status"

Subscriber = Callable[[str, Dict[str, Any]], None]


class Notifier:
    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, fn: Subscriber):
        if fn not in self._subscribers:
            self._subscribers.append(fn)

    def unsubscribe(self, fn: Subscriber):
        if fn in self._subscribers:
            self._subscribers.remove(fn)

    def emit(self, name: str, **payload):
        for fn in list(self._subscribers):
            try:
                fn(name, payload)
            except Exception as e:
                logger.warning(f"[Notifier] Subscriber failed on {name}: {e}")
