# cursors.py
"""
History paging for the channel that is currently open.

Only one cursor exists at a time. Switching channels discards it; reopening a
channel starts over from the newest page.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from config import settings
from errors import AlreadyActive, NoActiveCursor, TransportError
from models import RawMessage

logger = logging.getLogger(__name__)


def chronological(messages: List[RawMessage]) -> List[RawMessage]:
    return sorted(messages, key=lambda m: m.sentAt)


@dataclass
class _ActiveCursor:
    channel_id: str
    cursor: Any
    has_more: bool
    in_flight: bool = False


class CursorManager:
    def __init__(self, page_size: Optional[int] = None, history_limit: Optional[int] = None):
        self.page_size = int(page_size or settings.get("page_size", 50))
        self.history_limit = int(history_limit or settings.get("history_limit", 1000))
        self._active: Optional[_ActiveCursor] = None

    @property
    def channel_id(self) -> Optional[str]:
        return self._active.channel_id if self._active else None

    @property
    def has_more(self) -> bool:
        return bool(self._active and self._active.has_more)

    def discard(self) -> None:
        if self._active is not None:
            logger.debug("Discarding cursor for %s", self._active.channel_id)
        self._active = None

    async def open_initial_page(self, client: Any, channel_id: str, handle: Any) -> Tuple[List[RawMessage], bool]:
        """Fetch the newest page for `channel_id`, oldest first.

        Falls back to one bounded fetch when the client cannot page.
        """
        self.discard()
        paged = getattr(client, "fetch_history_paged", None)
        try:
            if callable(paged):
                cursor = await paged(handle, page_size=self.page_size)
                active = _ActiveCursor(channel_id, cursor, has_more=False, in_flight=True)
                self._active = active
                try:
                    page = await cursor.next()
                finally:
                    active.in_flight = False
                if self._active is not active:
                    raise NoActiveCursor(f"cursor for {channel_id} was discarded", channel_id=channel_id)
                batch = list(reversed(page.value or []))
                active.has_more = not page.done
                return batch, active.has_more

            raw = await client.fetch_history(handle, limit=self.history_limit)
        except (NoActiveCursor, TransportError):
            raise
        except Exception as exc:
            raise TransportError(f"history fetch failed: {exc}", channel_id=channel_id) from exc

        # keep only the newest `history_limit` entries
        batch = chronological(raw)[-self.history_limit:]
        self._active = _ActiveCursor(channel_id, cursor=None, has_more=False)
        return batch, False

    async def load_older_page(self, channel_id: Optional[str] = None) -> Tuple[List[RawMessage], bool]:
        """Fetch the page preceding everything loaded so far, oldest first.

        The caller prepends the result to the channel's timeline.
        """
        active = self._active
        if active is None or (channel_id is not None and active.channel_id != channel_id):
            raise NoActiveCursor("no open history cursor", channel_id=channel_id)
        if active.in_flight:
            raise AlreadyActive("an older page is already loading", channel_id=active.channel_id)
        if not active.has_more or active.cursor is None:
            return [], False

        active.in_flight = True
        try:
            page = await active.cursor.next()
        except Exception as exc:
            raise TransportError(f"page fetch failed: {exc}", channel_id=active.channel_id) from exc
        finally:
            active.in_flight = False

        if self._active is not active:
            # channel changed while the page was in flight; the result is stale
            raise NoActiveCursor("cursor was discarded during fetch", channel_id=active.channel_id)
        active.has_more = not page.done
        return list(reversed(page.value or [])), active.has_more
