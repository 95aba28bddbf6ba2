# ledger.py
"""
Seen-id ledger shared by every producer that folds events into the store.

One ledger per session: build it when the session starts and drop it with the
session. Entries are added once and never removed.
"""
from __future__ import annotations

import logging
import threading
from typing import Iterable, List, Set

logger = logging.getLogger(__name__)


class DedupLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._message_ids: Set[str] = set()
        self._channel_ids: Set[str] = set()

    def seen_message(self, message_id: str) -> bool:
        """Mark `message_id` seen. True if it was new and the caller should fold it."""
        with self._lock:
            if message_id in self._message_ids:
                logger.debug("Duplicate message suppressed: %s", message_id)
                return False
            self._message_ids.add(message_id)
            return True

    def seen_channel(self, channel_id: str) -> bool:
        """Mark `channel_id` seen. True if it was new."""
        with self._lock:
            if channel_id in self._channel_ids:
                return False
            self._channel_ids.add(channel_id)
            return True

    def admit_messages(self, message_ids: Iterable[str]) -> List[str]:
        """Mark a batch in one step and return the ids that were new, in input order."""
        fresh = []
        with self._lock:
            for mid in message_ids:
                if mid not in self._message_ids:
                    self._message_ids.add(mid)
                    fresh.append(mid)
        return fresh
