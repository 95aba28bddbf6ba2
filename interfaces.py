# interfaces.py
"""
Shapes of the external collaborators the sync engine consumes.

`network.RelayerClient` and `crypto_utils.WalletIdentity` are the concrete
implementations shipped here; tests use in-memory fakes.
"""
from __future__ import annotations

from typing import Any, AsyncIterator, List, NamedTuple, Protocol

from models import RawMessage


class IdentityProvider(Protocol):
    def current_address(self) -> str: ...

    def is_ready(self) -> bool: ...


class ConversationHandle(Protocol):
    peer_address: str


class Page(NamedTuple):
    value: List[RawMessage]
    done: bool


class PageCursor(Protocol):
    async def next(self) -> Page: ...


class EventSource(Protocol):
    def __aiter__(self) -> AsyncIterator[RawMessage]: ...

    async def close(self) -> Any: ...


class MessagingClient(Protocol):
    """Required capabilities. `fetch_history_paged(handle, page_size)` is optional
    and detected at runtime."""

    async def can_message(self, address: str) -> bool: ...

    async def list_conversations(self) -> List[ConversationHandle]: ...

    async def open_conversation(self, peer_address: str) -> ConversationHandle: ...

    async def fetch_history(self, handle: ConversationHandle, limit: int) -> List[RawMessage]: ...

    async def subscribe(self) -> EventSource: ...

    async def send(self, handle: ConversationHandle, content: str) -> RawMessage: ...
