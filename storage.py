# storage.py
"""
Small durable key/value store for chat preferences (blocked addresses,
pinned messages). Each key is one JSON file under the prefs directory.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from config import settings

logger = logging.getLogger(__name__)

BLOCKED_KEY = "blockedAddresses"
PINNED_KEY = "pinnedMessages"


class PrefsStore:
    def __init__(self, base: Optional[str] = None):
        self.base = Path(base or settings.get("prefs_storage_path", "chat_prefs"))
        self.base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.base / f"{key}.json"

    def load(self, key: str, default: Any) -> Any:
        """Read `key`; any missing or unreadable blob yields `default`."""
        path = self._path(key)
        if not path.exists():
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, using default: %s", path, e)
            return default

    def save(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_name(f".{path.name}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(value, f)
        # Atomic replace to avoid partial files
        os.replace(tmp, path)


class ChatPrefs:
    """Blocked addresses and per-channel pinned message, written after each change."""

    def __init__(self, store: Optional[PrefsStore] = None):
        self.store = store or PrefsStore()
        blocked = self.store.load(BLOCKED_KEY, [])
        pinned = self.store.load(PINNED_KEY, {})
        self.blocked = [a.lower() for a in blocked if isinstance(a, str)] if isinstance(blocked, list) else []
        self.pinned = pinned if isinstance(pinned, dict) else {}

    def block(self, address: str) -> None:
        lower = address.lower()
        if lower not in self.blocked:
            self.blocked.append(lower)
        self.store.save(BLOCKED_KEY, self.blocked)

    def unblock(self, address: str) -> None:
        lower = address.lower()
        self.blocked = [a for a in self.blocked if a != lower]
        self.store.save(BLOCKED_KEY, self.blocked)

    def is_blocked(self, address: str) -> bool:
        return address.lower() in self.blocked

    def pin(self, channel_id: str, message: dict) -> None:
        self.pinned[channel_id] = message
        self.store.save(PINNED_KEY, self.pinned)

    def unpin(self, channel_id: str) -> None:
        self.pinned.pop(channel_id, None)
        self.store.save(PINNED_KEY, self.pinned)

    def pinned_for(self, channel_id: str) -> Optional[dict]:
        return self.pinned.get(channel_id)
