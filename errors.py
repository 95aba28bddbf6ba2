# errors.py
"""
Error taxonomy for the chat sync engine.

Components raise these; the session boundary catches them, records an
``ErrorInfo`` in the store and hands the caller a ``Result``.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class SyncError(Exception):
    code = "sync_error"

    def __init__(self, message: str = "", *, channel_id: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.channel_id = channel_id


class TransportError(SyncError):
    """Network or client failure (listing, fetch, subscription open)."""
    code = "transport_error"


class NotMessageable(SyncError):
    """Peer is reachable on the network but cannot receive messages."""
    code = "not_messageable"


class InvalidIdentifier(SyncError):
    code = "invalid_identifier"


class SelfMessaging(InvalidIdentifier):
    code = "self_messaging"


class AlreadyActive(SyncError):
    code = "already_active"


class NoActiveCursor(SyncError):
    code = "no_active_cursor"


class SendFailed(SyncError):
    code = "send_failed"


class DuplicateSuppressed(SyncError):
    # Never surfaced to callers; duplicates are dropped quietly.
    code = "duplicate_suppressed"


@dataclass
class Result:
    """Outcome of a session entrypoint: either a value or a typed error."""
    ok: bool
    value: Any = None
    error: Optional[SyncError] = None

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: SyncError) -> "Result":
        return cls(ok=False, error=error)

    @property
    def code(self) -> Optional[str]:
        return self.error.code if self.error else None
