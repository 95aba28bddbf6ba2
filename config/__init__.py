"""
Config loader that exposes a dict-like `settings` object.

It loads values from `settings.json` (JSON or JSONC) and falls back to sane
defaults. Supports:
- Trailing inline `//` comments and `/* ... */` block comments
- Numeric literals with underscores, e.g. 10_000

Usage:
    from config import settings
    settings["page_size"]
    settings.get("history_limit", 1000)
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

SETTINGS_PATH = Path(__file__).with_name("settings.json")


def _strip_jsonc(text: str) -> str:
    """Remove JSONC comments and numeric underscores to make it JSON-safe."""
    # Remove /* block */ comments
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.S)
    # Remove // line comments (not inside a URL scheme like http://)
    text = re.sub(r"(?<!:)//.*", "", text)
    # Remove underscores within numeric literals (e.g., 10_000 -> 10000)
    text = re.sub(r"(?<=\d)_(?=\d)", "", text)
    return text


def _read_settings_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    raw = path.read_text(encoding="utf-8")
    cleaned = _strip_jsonc(raw)
    try:
        data = json.loads(cleaned or "{}")
    except ValueError as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: top level is not an object", path)
        return {}
    return data


DEFAULTS: Dict[str, Any] = {
    "relayer_base": "http://127.0.0.1:3000",
    "http_timeout_secs": 10,
    # History paging
    "page_size": 50,
    "history_limit": 1_000,  # cap for the single fetch used when paging is unavailable
    # Live subscription
    "stream_queue_maxsize": 256,
    "stream_stop_timeout_secs": 5,
    "ws_ping_interval_secs": 20,
    "ws_ping_timeout_secs": 20,
    # Local state
    "prefs_storage_path": "chat_prefs",
    "eth_key_path": "keys/user_eth_private.key",
    "nacl_key_path": "keys/user_nacl_private.key",
    "log_level": "INFO",
}


def _merged_settings(path: Path = SETTINGS_PATH) -> Dict[str, Any]:
    data = _read_settings_file(path)
    out = DEFAULTS.copy()
    out.update(data)
    env_base = os.environ.get("RELAYER_BASE")
    if env_base:
        out["relayer_base"] = env_base
    return out


class _Settings(dict):
    """Dict subclass with a handy reload() and attribute access."""

    def __getattr__(self, key: str) -> Any:  # settings.key support
        try:
            return self[key]
        except KeyError as exc:
            raise AttributeError(key) from exc

    def reload(self, path: Path = SETTINGS_PATH) -> None:
        self.clear()
        self.update(_merged_settings(path))


# Public settings object
settings = _Settings(_merged_settings())
