# session.py
"""
Chat session: wires the identity, a messaging client, the dedup ledger, the
history cursor and the live stream into one store.

Every public coroutine returns a `Result`; failures are also recorded in the
store (globally for client-level problems, per channel otherwise).
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from crypto_utils import normalize_address
from cursors import CursorManager
from errors import (
    InvalidIdentifier, NotMessageable, Result, SelfMessaging, SendFailed, SyncError, TransportError,
)
from interfaces import IdentityProvider
from ledger import DedupLedger
from models import Channel, ChatState, ErrorInfo, Message, MessageStatus, RawMessage, can_advance
from storage import ChatPrefs
from store import (
    AddMessage, ConfirmMessage, CreateChannel, PrependMessages, ResetUnread, SetChannels,
    SetCurrentChannel, SetError, SetLoading, SetMessages, Store, UpdateMessage, sort_channels,
)
from stream import StreamManager

logger = logging.getLogger(__name__)


def _error_info(err: SyncError, channel_id: Optional[str] = None) -> ErrorInfo:
    return ErrorInfo(code=err.code, message=err.message, channelId=channel_id or err.channel_id)


class ChatSession:
    def __init__(self, identity: IdentityProvider, ledger: Optional[DedupLedger] = None,
                 store: Optional[Store] = None, prefs: Optional[ChatPrefs] = None,
                 cursors: Optional[CursorManager] = None, stream: Optional[StreamManager] = None):
        self.identity = identity
        self.ledger = ledger or DedupLedger()
        self.store = store or Store()
        self.prefs = prefs or ChatPrefs()
        self.cursors = cursors or CursorManager()
        self.stream = stream or StreamManager()
        self.stream.on_error = self._on_stream_error
        self.client: Any = None

    # -------------------- projection --------------------
    @property
    def state(self) -> ChatState:
        return self.store.state

    def view(self) -> Dict[str, Any]:
        s = self.store.state
        return {
            "channels": s.channels,
            "currentChannelId": s.currentChannelId,
            "messages": s.messages,
            "unreadCount": s.unreadCount,
            "loading": s.loading,
            "error": s.error,
            "channelErrors": s.channelErrors,
        }

    @property
    def has_more(self) -> bool:
        return self.cursors.has_more

    def _me(self) -> str:
        return self.identity.current_address().lower()

    def _fail(self, err: SyncError, channel_id: Optional[str] = None) -> Result:
        self.store.dispatch(SetError(_error_info(err, channel_id), channel_id=channel_id))
        return Result.failure(err)

    def _to_message(self, raw: RawMessage, status: Optional[MessageStatus] = None) -> Message:
        return Message(
            id=raw.id,
            sender=raw.senderAddress,
            content=raw.content,
            timestamp=raw.sentAt,
            encrypted=True,
            status=status,
        )

    def _direct_channel(self, peer: str, last_message_at: int = 0) -> Channel:
        me = self._me()
        return Channel(
            id=peer,
            name=peer,
            description="Direct Chat",
            isPrivate=True,
            createdBy=me,
            participants=[me, peer],
            lastMessageAt=last_message_at,
        )

    def _check_peer(self, address: str) -> str:
        """Normalize a recipient and reject self-messaging; no transport call."""
        peer = normalize_address(address)
        if peer == self._me():
            raise SelfMessaging("cannot message yourself", channel_id=peer)
        return peer

    # -------------------- client lifecycle --------------------
    async def attach_client(self, client: Any) -> Result:
        """Switch the session to `client`: restart the live feed, then list conversations."""
        if not self.identity.is_ready():
            return self._fail(TransportError("wallet not connected"))
        self.cursors.discard()
        self.client = client
        self.store.dispatch(SetError(None))
        try:
            await self.stream.replace(client, self._handle_incoming)
        except SyncError as err:
            return self._fail(err)
        return await self.load_conversations()

    async def close(self) -> None:
        self.cursors.discard()
        await self.stream.stop()
        self.client = None

    def _on_stream_error(self, err: SyncError) -> None:
        self.store.dispatch(SetError(_error_info(err)))

    # -------------------- bulk listing --------------------
    async def load_conversations(self) -> Result:
        if self.client is None:
            return self._fail(TransportError("messaging client not available"))
        self.store.dispatch(SetLoading("channels", True))
        try:
            handles = await self.client.list_conversations()
            listed: List[Channel] = []
            for handle in handles:
                try:
                    peer = normalize_address(handle.peer_address)
                except InvalidIdentifier:
                    logger.warning("Skipping conversation with invalid peer %r", handle.peer_address)
                    continue
                if self.prefs.is_blocked(peer):
                    continue
                latest = await self.client.fetch_history(handle, limit=1)
                last_at = max((m.sentAt for m in latest), default=0)
                listed.append(self._direct_channel(peer, last_at))
        except SyncError as err:
            return self._fail(err)
        except Exception as exc:
            logger.exception("Conversation listing failed")
            return self._fail(TransportError(f"conversation listing failed: {exc}"))
        finally:
            self.store.dispatch(SetLoading("channels", False))

        # keep channels the live feed created while the listing was running
        listed_ids = {c.id for c in listed}
        merged = listed + [c for c in self.store.state.channels if c.id not in listed_ids]
        by_id = {c.id: c for c in self.store.state.channels}
        merged = [
            c.model_copy(update={"lastMessageAt": max(c.lastMessageAt, by_id[c.id].lastMessageAt)})
            if c.id in by_id else c
            for c in merged
        ]
        channels = sort_channels(merged)
        self.store.dispatch(SetChannels(channels))
        for c in channels:
            self.ledger.seen_channel(c.id)
        return Result.success(channels)

    # -------------------- live feed --------------------
    async def _handle_incoming(self, raw: RawMessage) -> None:
        sender = raw.senderAddress.lower()
        me = self._me()
        if sender != me and self.prefs.is_blocked(sender):
            return
        if not self.ledger.seen_message(raw.id):
            return
        peer = raw.conversationPeerAddress.lower() if sender == me else sender
        if self.ledger.seen_channel(peer):
            self.store.dispatch(CreateChannel(self._direct_channel(peer, raw.sentAt)))
        self.store.dispatch(AddMessage(peer, self._to_message(raw), unread=sender != me))

    # -------------------- channel selection & history --------------------
    async def set_current_channel(self, channel_id: Optional[str]) -> Result:
        self.cursors.discard()
        if channel_id is None:
            self.store.dispatch(SetCurrentChannel(None))
            return Result.success()
        try:
            cid = normalize_address(channel_id)
        except InvalidIdentifier as err:
            return self._fail(err, channel_id)
        self.store.dispatch(SetCurrentChannel(cid))
        self.store.dispatch(ResetUnread(cid))
        return await self.fetch_messages(cid)

    async def _open(self, channel_id: str) -> Any:
        """Capability check, then conversation lookup. Raises SyncError."""
        peer = self._check_peer(channel_id)
        if self.client is None:
            raise TransportError("messaging client not available", channel_id=peer)
        try:
            reachable = await self.client.can_message(peer)
        except SyncError:
            raise
        except Exception as exc:
            raise TransportError(f"capability check failed: {exc}", channel_id=peer) from exc
        if not reachable:
            raise NotMessageable("recipient is not on the messaging network", channel_id=peer)
        try:
            return await self.client.open_conversation(peer)
        except SyncError:
            raise
        except Exception as exc:
            raise TransportError(f"could not open conversation: {exc}", channel_id=peer) from exc

    async def fetch_messages(self, channel_id: str) -> Result:
        """Load the newest page of a channel and merge it with what is already known."""
        self.store.dispatch(SetLoading("messages", True))
        try:
            peer = self._check_peer(channel_id)
            handle = await self._open(peer)
            raws, has_more = await self.cursors.open_initial_page(self.client, peer, handle)
        except SyncError as err:
            return self._fail(err, err.channel_id or channel_id)
        finally:
            self.store.dispatch(SetLoading("messages", False))

        fetched = [self._to_message(r) for r in raws]
        self.ledger.admit_messages(m.id for m in fetched)
        existing = self.store.messages_for(peer)
        known = {m.id for m in fetched}
        # the live feed may have folded messages the page does not cover
        merged = fetched + [m for m in existing if m.id not in known]
        merged.sort(key=lambda m: m.timestamp)
        if self.ledger.seen_channel(peer):
            newest = merged[-1].timestamp if merged else 0
            self.store.dispatch(CreateChannel(self._direct_channel(peer, newest)))
        self.store.dispatch(SetMessages(peer, merged))
        self.store.dispatch(SetError(None, channel_id=peer))
        return Result.success(has_more)

    async def load_older_messages(self) -> Result:
        channel_id = self.store.state.currentChannelId
        self.store.dispatch(SetLoading("older", True))
        try:
            raws, has_more = await self.cursors.load_older_page(channel_id)
        except SyncError as err:
            return self._fail(err, channel_id)
        finally:
            self.store.dispatch(SetLoading("older", False))
        if channel_id is None or self.cursors.channel_id != channel_id:
            return Result.success(False)
        older = [self._to_message(r) for r in raws]
        self.ledger.admit_messages(m.id for m in older)
        self.store.dispatch(PrependMessages(channel_id, older))
        return Result.success(has_more)

    async def create_channel(self, address: str, description: str = "Direct Chat",
                             is_private: bool = True) -> Result:
        try:
            peer = self._check_peer(address)
        except InvalidIdentifier as err:
            return self._fail(err, address)
        channel = self._direct_channel(peer).model_copy(
            update={"description": description, "isPrivate": is_private})
        self.ledger.seen_channel(peer)
        self.store.dispatch(CreateChannel(channel))
        return Result.success(self.store.channel(peer))

    # -------------------- sending --------------------
    async def send_message(self, channel_id: str, content: str) -> Result:
        """Optimistic send: a `sending` placeholder is replaced by the confirmed message."""
        if not content.strip():
            return Result.failure(SendFailed("message is empty", channel_id=channel_id))
        try:
            peer = self._check_peer(channel_id)
        except InvalidIdentifier as err:
            return self._fail(err, channel_id)
        if self.ledger.seen_channel(peer):
            self.store.dispatch(CreateChannel(self._direct_channel(peer)))

        placeholder = Message(
            id=f"local-{uuid.uuid4().hex}",
            sender=self.identity.current_address(),
            content=content,
            timestamp=int(time.time() * 1000),
            status=MessageStatus.SENDING,
        )
        self.store.dispatch(AddMessage(peer, placeholder))

        try:
            handle = await self._open(peer)
            try:
                raw = await self.client.send(handle, content)
            except SendFailed:
                raise
            except Exception as exc:
                logger.warning("Send to %s failed: %s", peer, exc)
                raise SendFailed(f"send failed: {exc}", channel_id=peer) from exc
        except SyncError as err:
            self.store.dispatch(UpdateMessage(peer, placeholder.id, {"status": MessageStatus.FAILED}))
            return self._fail(err, peer)

        if not self.ledger.seen_message(raw.id):
            logger.debug("Confirmed message %s was already folded from the live feed", raw.id)
        confirmed = self._to_message(raw, MessageStatus.SENT)
        self.store.dispatch(ConfirmMessage(peer, placeholder.id, confirmed))
        return Result.success(raw.id)

    # -------------------- message actions --------------------
    def _find(self, channel_id: str, message_id: str) -> Optional[Message]:
        for m in self.store.messages_for(channel_id):
            if m.id == message_id:
                return m
        return None

    def add_reaction(self, channel_id: str, message_id: str, emoji: str, user_address: str) -> Result:
        msg = self._find(channel_id, message_id)
        if msg is None:
            return Result.success(False)
        reactions = {k: list(v) for k, v in msg.reactions.items()}
        users = reactions.setdefault(emoji, [])
        user = user_address.lower()
        if user not in users:
            users.append(user)
        self.store.dispatch(UpdateMessage(channel_id, message_id, {"reactions": reactions}))
        return Result.success(True)

    def edit_message(self, channel_id: str, message_id: str, new_content: str) -> Result:
        self.store.dispatch(UpdateMessage(channel_id, message_id, {"editedContent": new_content}))
        return Result.success()

    def delete_message(self, channel_id: str, message_id: str) -> Result:
        self.store.dispatch(UpdateMessage(channel_id, message_id, {"deleted": True}))
        return Result.success()

    def mark_message_read(self, channel_id: str, message_id: str) -> Result:
        msg = self._find(channel_id, message_id)
        if msg is None or not can_advance(msg.status, MessageStatus.READ):
            return Result.success(False)
        self.store.dispatch(UpdateMessage(channel_id, message_id, {"status": MessageStatus.READ}))
        return Result.success(True)

    # -------------------- durable prefs --------------------
    def block_address(self, address: str) -> Result:
        try:
            self.prefs.block(normalize_address(address))
        except InvalidIdentifier as err:
            return Result.failure(err)
        return Result.success()

    def unblock_address(self, address: str) -> Result:
        try:
            self.prefs.unblock(normalize_address(address))
        except InvalidIdentifier as err:
            return Result.failure(err)
        return Result.success()

    def is_blocked(self, address: str) -> bool:
        return self.prefs.is_blocked(address)

    def pin_message(self, channel_id: str, message: Message) -> None:
        self.prefs.pin(channel_id, message.model_dump(mode="json"))

    def unpin_message(self, channel_id: str) -> None:
        self.prefs.unpin(channel_id)

    def pinned_message(self, channel_id: str) -> Optional[Message]:
        data = self.prefs.pinned_for(channel_id)
        return Message.model_validate(data) if data else None
