import asyncio
from typing import Dict, List, Optional

import pytest

from interfaces import Page
from models import RawMessage
from storage import ChatPrefs, PrefsStore

ME = "0x" + "1" * 40
PEER_A = "0x" + "a" * 40
PEER_B = "0x" + "b" * 40
PEER_C = "0x" + "c" * 40


def raw(mid: str, sender: str, ts: int, peer: Optional[str] = None, content: str = "") -> RawMessage:
    return RawMessage(
        id=mid,
        senderAddress=sender,
        content=content or f"msg {mid}",
        sentAt=ts,
        conversationPeerAddress=peer or sender,
    )


async def drain(rounds: int = 20) -> None:
    """Let queued tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeIdentity:
    def __init__(self, address: str = ME, ready: bool = True):
        self.address = address
        self.ready = ready

    def current_address(self) -> str:
        return self.address

    def is_ready(self) -> bool:
        return self.ready


class FakeConversation:
    def __init__(self, peer_address: str):
        self.peer_address = peer_address


class FakeSubscription:
    _END = object()

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_hangs = False

    def push(self, message: RawMessage) -> None:
        self.queue.put_nowait(message)

    def fail(self, exc: Exception) -> None:
        self.queue.put_nowait(exc)

    def end(self) -> None:
        self.queue.put_nowait(self._END)

    def __aiter__(self):
        return self._events()

    async def _events(self):
        while True:
            item = await self.queue.get()
            if item is self._END:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        if self.close_hangs:
            await asyncio.Event().wait()
        self.closed = True
        self.queue.put_nowait(self._END)


class FakePageCursor:
    """Pages a chronological list newest-first."""

    def __init__(self, messages: List[RawMessage], page_size: int, gate: Optional[asyncio.Event] = None):
        self._remaining = list(reversed(messages))
        self._page_size = page_size
        self.gate = gate
        self.calls = 0

    async def next(self) -> Page:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        batch = self._remaining[:self._page_size]
        self._remaining = self._remaining[self._page_size:]
        return Page(batch, not self._remaining)


class FakeClient:
    """In-memory messaging client without paging support."""

    def __init__(self, history: Optional[Dict[str, List[RawMessage]]] = None,
                 unreachable: Optional[set] = None):
        self.history = history or {}
        self.unreachable = unreachable or set()
        self.calls: List[tuple] = []
        self.subscriptions: List[FakeSubscription] = []
        self.subscribe_error: Optional[Exception] = None
        self.can_message_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self._sent = 0

    async def can_message(self, address: str) -> bool:
        self.calls.append(("can_message", address))
        if self.can_message_error is not None:
            raise self.can_message_error
        return address not in self.unreachable

    async def list_conversations(self):
        self.calls.append(("list_conversations",))
        return [FakeConversation(peer) for peer in self.history]

    async def open_conversation(self, peer_address: str):
        self.calls.append(("open_conversation", peer_address))
        return FakeConversation(peer_address)

    async def fetch_history(self, handle, limit: int):
        self.calls.append(("fetch_history", handle.peer_address, limit))
        messages = self.history.get(handle.peer_address, [])
        return list(reversed(messages))[:limit]

    async def subscribe(self):
        self.calls.append(("subscribe",))
        if self.subscribe_error is not None:
            raise self.subscribe_error
        sub = FakeSubscription()
        self.subscriptions.append(sub)
        return sub

    async def send(self, handle, content: str) -> RawMessage:
        self.calls.append(("send", handle.peer_address, content))
        if self.send_error is not None:
            raise self.send_error
        self._sent += 1
        return raw(f"sent-{self._sent}", ME, 10_000 + self._sent, peer=handle.peer_address, content=content)

    def called(self, name: str) -> bool:
        return any(c[0] == name for c in self.calls)


class PagedFakeClient(FakeClient):
    def __init__(self, *args, gate: Optional[asyncio.Event] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.gate = gate
        self.cursors: List[FakePageCursor] = []

    async def fetch_history_paged(self, handle, page_size: int):
        self.calls.append(("fetch_history_paged", handle.peer_address, page_size))
        cursor = FakePageCursor(self.history.get(handle.peer_address, []), page_size, self.gate)
        self.cursors.append(cursor)
        return cursor


def timeline(peer: str, count: int, start: int = 1, prefix: str = "m") -> List[RawMessage]:
    return [raw(f"{prefix}{i}", peer, i * 10, peer=peer) for i in range(start, start + count)]


@pytest.fixture
def prefs(tmp_path):
    return ChatPrefs(PrefsStore(str(tmp_path / "prefs")))
