# store.py
"""
Reconciliation store: channels, per-channel message timelines and unread counters.

State only changes through `Store.dispatch(action)`, which runs the pure
`reduce()` under a lock and then notifies subscribers. `reduce()` never does I/O;
ledger checks and transport calls belong to the caller issuing the action.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from models import Channel, ChatState, ErrorInfo, Message

logger = logging.getLogger(__name__)


# -------------------- actions --------------------
@dataclass(frozen=True)
class SetChannels:
    channels: List[Channel]


@dataclass(frozen=True)
class SetCurrentChannel:
    channel_id: Optional[str]


@dataclass(frozen=True)
class SetMessages:
    channel_id: str
    messages: List[Message]


@dataclass(frozen=True)
class AddMessage:
    channel_id: str
    message: Message
    unread: bool = False


@dataclass(frozen=True)
class PrependMessages:
    channel_id: str
    messages: List[Message]


@dataclass(frozen=True)
class UpdateMessage:
    channel_id: str
    message_id: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConfirmMessage:
    """Swap an optimistic placeholder for the transport-confirmed message."""
    channel_id: str
    placeholder_id: str
    message: Message


@dataclass(frozen=True)
class CreateChannel:
    channel: Channel


@dataclass(frozen=True)
class ResetUnread:
    channel_id: str


@dataclass(frozen=True)
class SetLoading:
    scope: str  # "channels" | "messages" | "older"
    value: bool


@dataclass(frozen=True)
class SetError:
    error: Optional[ErrorInfo]
    channel_id: Optional[str] = None


Action = Union[
    SetChannels, SetCurrentChannel, SetMessages, AddMessage, PrependMessages,
    UpdateMessage, ConfirmMessage, CreateChannel, ResetUnread, SetLoading, SetError,
]


def sort_channels(channels: List[Channel]) -> List[Channel]:
    """Newest activity first; sorted() is stable so ties keep their prior order."""
    return sorted(channels, key=lambda c: -c.lastMessageAt)


# -------------------- transitions --------------------
def _set_channels(state: ChatState, action: SetChannels) -> ChatState:
    return state.model_copy(update={"channels": list(action.channels)})


def _set_current_channel(state: ChatState, action: SetCurrentChannel) -> ChatState:
    return state.model_copy(update={"currentChannelId": action.channel_id})


def _touch_channel(channels: List[Channel], channel_id: str, last_message_at: int) -> List[Channel]:
    return sort_channels([
        c.model_copy(update={"lastMessageAt": last_message_at}) if c.id == channel_id else c
        for c in channels
    ])


def _set_messages(state: ChatState, action: SetMessages) -> ChatState:
    messages = dict(state.messages)
    messages[action.channel_id] = list(action.messages)
    update: Dict[str, Any] = {"messages": messages}
    current = next((c for c in state.channels if c.id == action.channel_id), None)
    if current is not None and action.messages:
        newest = max(m.timestamp for m in action.messages)
        if newest > current.lastMessageAt:
            update["channels"] = _touch_channel(state.channels, action.channel_id, newest)
    return state.model_copy(update=update)


def _add_message(state: ChatState, action: AddMessage) -> ChatState:
    cid = action.channel_id
    msg = action.message
    messages = dict(state.messages)
    messages[cid] = [*messages.get(cid, []), msg]

    channels = [
        c.model_copy(update={"lastMessageAt": max(c.lastMessageAt, msg.timestamp)}) if c.id == cid else c
        for c in state.channels
    ]
    update: Dict[str, Any] = {"messages": messages, "channels": sort_channels(channels)}
    if action.unread and state.currentChannelId != cid:
        unread = dict(state.unreadCount)
        unread[cid] = unread.get(cid, 0) + 1
        update["unreadCount"] = unread
    return state.model_copy(update=update)


def _prepend_messages(state: ChatState, action: PrependMessages) -> ChatState:
    existing = state.messages.get(action.channel_id, [])
    present = {m.id for m in existing}
    older = []
    for m in action.messages:
        if m.id not in present:
            present.add(m.id)
            older.append(m)
    if not older:
        return state
    messages = dict(state.messages)
    messages[action.channel_id] = older + list(existing)
    return state.model_copy(update={"messages": messages})


def _update_message(state: ChatState, action: UpdateMessage) -> ChatState:
    existing = state.messages.get(action.channel_id)
    if existing is None:
        return state
    messages = dict(state.messages)
    messages[action.channel_id] = [
        m.model_copy(update=action.fields) if m.id == action.message_id else m
        for m in existing
    ]
    return state.model_copy(update={"messages": messages})


def _confirm_message(state: ChatState, action: ConfirmMessage) -> ChatState:
    cid = action.channel_id
    existing = state.messages.get(cid, [])
    confirmed = action.message
    if any(m.id == confirmed.id for m in existing):
        # the live feed already folded the confirmed copy
        timeline = [m for m in existing if m.id != action.placeholder_id]
    else:
        timeline = [confirmed if m.id == action.placeholder_id else m for m in existing]
        if all(m.id != action.placeholder_id for m in existing):
            timeline.append(confirmed)
    timeline.sort(key=lambda m: m.timestamp)
    messages = dict(state.messages)
    messages[cid] = timeline
    update: Dict[str, Any] = {"messages": messages}
    # the placeholder carried a local clock reading; the timeline is authoritative now
    if any(c.id == cid for c in state.channels):
        newest = max((m.timestamp for m in timeline), default=0)
        update["channels"] = _touch_channel(state.channels, cid, newest)
    return state.model_copy(update=update)


def _create_channel(state: ChatState, action: CreateChannel) -> ChatState:
    if any(c.id == action.channel.id for c in state.channels):
        return state
    return state.model_copy(update={"channels": sort_channels([*state.channels, action.channel])})


def _reset_unread(state: ChatState, action: ResetUnread) -> ChatState:
    unread = dict(state.unreadCount)
    unread[action.channel_id] = 0
    return state.model_copy(update={"unreadCount": unread})


def _set_loading(state: ChatState, action: SetLoading) -> ChatState:
    loading = state.loading.model_copy(update={action.scope: action.value})
    return state.model_copy(update={"loading": loading})


def _set_error(state: ChatState, action: SetError) -> ChatState:
    if action.channel_id is None:
        return state.model_copy(update={"error": action.error})
    errors = dict(state.channelErrors)
    if action.error is None:
        errors.pop(action.channel_id, None)
    else:
        errors[action.channel_id] = action.error
    return state.model_copy(update={"channelErrors": errors})


_REDUCERS: Dict[type, Callable[[ChatState, Any], ChatState]] = {
    SetChannels: _set_channels,
    SetCurrentChannel: _set_current_channel,
    SetMessages: _set_messages,
    AddMessage: _add_message,
    PrependMessages: _prepend_messages,
    UpdateMessage: _update_message,
    ConfirmMessage: _confirm_message,
    CreateChannel: _create_channel,
    ResetUnread: _reset_unread,
    SetLoading: _set_loading,
    SetError: _set_error,
}


def reduce(state: ChatState, action: Action) -> ChatState:
    """Apply one action. Unknown actions leave the state untouched."""
    handler = _REDUCERS.get(type(action))
    if handler is None:
        return state
    return handler(state, action)


# -------------------- store --------------------
Listener = Callable[[ChatState, Action], None]


class Store:
    def __init__(self, initial: Optional[ChatState] = None):
        self._state = initial or ChatState()
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []

    @property
    def state(self) -> ChatState:
        return self._state

    def dispatch(self, action: Action) -> ChatState:
        with self._lock:
            self._state = reduce(self._state, action)
            state = self._state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state, action)
            except Exception:
                logger.exception("Store listener failed on %s", type(action).__name__)
        return state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # read-only helpers for presentation
    def messages_for(self, channel_id: str) -> List[Message]:
        return list(self._state.messages.get(channel_id, []))

    def channel(self, channel_id: str) -> Optional[Channel]:
        for c in self._state.channels:
            if c.id == channel_id:
                return c
        return None
