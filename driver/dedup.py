from __future__ import annotations

import time
from collections import deque
from typing import Any, Deque, Dict, Optional, Tuple

from shared.log import get_logger

logger = get_logger(__name__)


class RecentMessageCache:
    """
    Suppresses repeated stream events for the same message revision.

    The service can emit the same room message twice (for instance when the
    session is subscribed to both a room and __my_messages__). A revision is
    identified by the message _id plus its _updatedAt/editedAt stamp, so an
    edit of an already-seen message still gets through.
    """

    def __init__(self, ttl: float = 120.0):
        """
        Args:
            ttl: Seconds a revision key is remembered (default 120s)
        """
        self.ttl = ttl
        self._seen: Dict[str, float] = {}
        self._seen_queue: Deque[Tuple[str, float]] = deque()

    @staticmethod
    def revision_key(payload: Dict[str, Any]) -> Optional[str]:
        msg_id = payload.get("_id")
        if not msg_id:
            return None
        stamp = payload.get("_updatedAt") or payload.get("editedAt") or payload.get("ts")
        if isinstance(stamp, dict):
            stamp = stamp.get("$date")
        return f"{msg_id}:{stamp}"

    def check_and_mark(self, payload: Dict[str, Any]) -> bool:
        """
        Returns True if this revision was already seen (drop it), False if new.

        Payloads without an _id cannot be checked and are let through.
        """
        self.prune_expired()
        key = self.revision_key(payload)
        if key is None:
            return False
        if key in self._seen:
            logger.debug("Duplicate message event %s", key)
            return True
        now = time.monotonic()
        self._seen[key] = now
        self._seen_queue.append((key, now))
        return False

    def prune_expired(self) -> int:
        cutoff = time.monotonic() - self.ttl
        removed = 0
        while self._seen_queue and self._seen_queue[0][1] < cutoff:
            key, _ = self._seen_queue.popleft()
            if self._seen.pop(key, None) is not None:
                removed += 1
        return removed

    def clear(self) -> None:
        self._seen.clear()
        self._seen_queue.clear()

    def __len__(self) -> int:
        return len(self._seen)
