# models.py
from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


# forward-only lifecycle; FAILED is terminal and reachable only while sending
_STATUS_NEXT = {
    MessageStatus.SENDING: {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED, MessageStatus.READ},
    MessageStatus.DELIVERED: {MessageStatus.READ},
    MessageStatus.READ: set(),
    MessageStatus.FAILED: set(),
}


def can_advance(current: Optional[MessageStatus], new: MessageStatus) -> bool:
    """Whether a message may move from `current` to `new` status."""
    if current is None:
        # confirmed messages that never went through an optimistic phase
        return new is not MessageStatus.FAILED
    return new in _STATUS_NEXT[current]


class Channel(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = "Direct Chat"
    isPrivate: bool = True
    createdBy: str
    participants: List[str] = Field(default_factory=list)
    lastMessageAt: int = 0


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    sender: str
    content: str
    timestamp: int
    encrypted: bool = True
    signature: Optional[str] = None
    nickname: Optional[str] = None
    status: Optional[MessageStatus] = None
    reactions: Dict[str, List[str]] = Field(default_factory=dict)
    editedContent: Optional[str] = None
    deleted: bool = False


class RawMessage(BaseModel):
    """A message as handed over by the messaging network client."""
    model_config = ConfigDict(frozen=True)

    id: str
    senderAddress: str
    content: str
    sentAt: int  # milliseconds since epoch
    conversationPeerAddress: str


class ErrorInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    channelId: Optional[str] = None


class LoadingFlags(BaseModel):
    model_config = ConfigDict(frozen=True)

    channels: bool = False
    messages: bool = False
    older: bool = False


class ChatState(BaseModel):
    model_config = ConfigDict(frozen=True)

    channels: List[Channel] = Field(default_factory=list)
    currentChannelId: Optional[str] = None
    messages: Dict[str, List[Message]] = Field(default_factory=dict)
    unreadCount: Dict[str, int] = Field(default_factory=dict)
    loading: LoadingFlags = Field(default_factory=LoadingFlags)
    error: Optional[ErrorInfo] = None
    channelErrors: Dict[str, ErrorInfo] = Field(default_factory=dict)


# --- relayer wire models ---

class RegisterUser(BaseModel):
    address: str
    encPub: str
    signPub: str


class UploadPayload(BaseModel):
    payload: Dict[str, object]


class DeliverMessage(BaseModel):
    cid: str
    sender: str
    recipient: str
    timestamp: int
    ethSignature: str
    sessionId: Optional[str] = None


class ConversationMessage(BaseModel):
    id: int
    cid: str
    sender: str
    recipient: str
    timestamp: int
    rootId: str
    sessionId: str


class ConversationResponse(BaseModel):
    rootId: str
    messages: List[ConversationMessage]
