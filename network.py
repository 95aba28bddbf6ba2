# network.py
"""
Messaging network client for a relayer node.

HTTP calls go through one shared httpx.AsyncClient; the live feed is the
relayer's `/ws/{address}` push socket. Payloads are NaCl boxes stored by CID.
"""
import asyncio
import base64
import json
import logging
import time
from typing import Any, Dict, List, Optional, Set

import httpx
import websockets
from websockets.exceptions import WebSocketException
from eth_utils import to_checksum_address
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey

from config import settings
from crypto_utils import WalletIdentity, conversation_root_id
from errors import SendFailed, TransportError
from interfaces import Page
from models import (
    ConversationMessage, ConversationResponse, DeliverMessage, RawMessage, RegisterUser, UploadPayload,
)

logger = logging.getLogger(__name__)


class RelayerConversation:
    def __init__(self, peer_address: str, root_id: str):
        self.peer_address = peer_address
        self.root_id = root_id

    def __eq__(self, other):
        return isinstance(other, RelayerConversation) and other.root_id == self.root_id

    def __hash__(self):
        return hash(self.root_id)

    def __repr__(self):
        return f"RelayerConversation({self.peer_address})"


class RelayerPageCursor:
    """Walks a conversation backwards, newest page first, using `before`.

    The relayer filters on `timestamp < before` in whole seconds, so several rows
    can share the boundary second of a page. Each request re-includes that second
    and widens `limit` by the rows already yielded there, which are then skipped.
    """

    def __init__(self, client: "RelayerClient", handle: RelayerConversation, page_size: int):
        self._client = client
        self._handle = handle
        self._page_size = page_size
        self._boundary: Optional[int] = None
        self._boundary_ids: Set[int] = set()
        self._done = False

    async def next(self) -> Page:
        if self._done:
            return Page([], True)
        limit = self._page_size + len(self._boundary_ids)
        before = None if self._boundary is None else self._boundary + 1
        rows = await self._client._conversation_rows(self._handle.root_id, limit, before)
        self._done = len(rows) < limit
        fresh = [r for r in rows if r.id not in self._boundary_ids]
        if rows:
            last = rows[-1].timestamp
            if last != self._boundary:
                self._boundary_ids = set()
            self._boundary = last
            self._boundary_ids.update(r.id for r in rows if r.timestamp == last)
        return Page(await self._client._decode_rows(fresh, self._handle.peer_address), self._done)


class RelayerSubscription:
    def __init__(self, client: "RelayerClient", ws: Any):
        self._client = client
        self._ws = ws

    def __aiter__(self):
        return self._events()

    async def _events(self):
        async for frame in self._ws:
            try:
                data = json.loads(frame)
            except ValueError:
                continue
            if data.get("event") != "new_message":
                continue
            row = ConversationMessage(
                id=data["id"],
                cid=data["cid"],
                sender=data["sender"],
                recipient=data["recipient"],
                timestamp=data["timestamp"],
                rootId=data.get("rootId") or conversation_root_id(data["sender"], data["recipient"]),
                sessionId=data.get("sessionId") or "",
            )
            me = self._client.address.lower()
            peer = row.recipient if row.sender.lower() == me else row.sender
            raw = await self._client._decode(row, peer)
            if raw is not None:
                yield raw

    async def close(self):
        await self._ws.close()


class RelayerClient:
    def __init__(self, identity: WalletIdentity, nacl_key: PrivateKey, base_url: Optional[str] = None,
                 http: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.identity = identity
        self.nacl_key = nacl_key
        self.base_url = (base_url or settings.get("relayer_base")).rstrip("/")
        self.http = http or httpx.AsyncClient(timeout=timeout or settings.get("http_timeout_secs", 10))
        self._enc_pubs: Dict[str, PublicKey] = {}

    @property
    def address(self) -> str:
        return self.identity.current_address()

    async def aclose(self) -> None:
        await self.http.aclose()

    # -------------------- http helpers --------------------
    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = self.base_url + path
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

    async def _get_json(self, path: str, **kwargs) -> Any:
        r = await self._request("GET", path, **kwargs)
        if r.status_code != 200:
            raise TransportError(f"GET {path} returned {r.status_code}")
        return r.json()

    # -------------------- capabilities --------------------
    async def register(self) -> None:
        enc_pub_b64 = base64.b64encode(bytes(self.nacl_key.public_key)).decode()
        data = RegisterUser(address=self.address, encPub=enc_pub_b64, signPub=self.address)
        r = await self._request("POST", "/api/register", json=data.model_dump())
        if r.status_code != 200:
            raise TransportError(f"registration returned {r.status_code}")
        logger.info("Registered user %s", self.address)

    async def can_message(self, address: str) -> bool:
        r = await self._request("GET", f"/api/user/{to_checksum_address(address)}")
        if r.status_code == 404:
            return False
        if r.status_code != 200:
            raise TransportError(f"user lookup returned {r.status_code}")
        return True

    async def list_conversations(self) -> List[RelayerConversation]:
        data = await self._get_json("/api/users")
        me = self.address.lower()
        peers = [u["address"] for u in data.get("users", []) if u["address"].lower() != me]

        async def with_history(peer: str) -> Optional[RelayerConversation]:
            handle = await self.open_conversation(peer)
            rows = await self._conversation_rows(handle.root_id, 1)
            return handle if rows else None

        found = await asyncio.gather(*(with_history(p) for p in peers))
        return [h for h in found if h is not None]

    async def open_conversation(self, peer_address: str) -> RelayerConversation:
        peer = to_checksum_address(peer_address)
        return RelayerConversation(peer, conversation_root_id(self.address, peer))

    async def fetch_history(self, handle: RelayerConversation, limit: int) -> List[RawMessage]:
        rows = await self._conversation_rows(handle.root_id, limit)
        return await self._decode_rows(rows, handle.peer_address)

    async def fetch_history_paged(self, handle: RelayerConversation, page_size: int) -> RelayerPageCursor:
        return RelayerPageCursor(self, handle, page_size)

    async def subscribe(self) -> RelayerSubscription:
        url = self.base_url.replace("http", "ws", 1) + f"/ws/{self.address}"
        try:
            ws = await websockets.connect(
                url,
                ping_interval=settings.get("ws_ping_interval_secs", 20),
                ping_timeout=settings.get("ws_ping_timeout_secs", 20),
            )
        except (OSError, WebSocketException) as e:
            raise TransportError(f"websocket connect failed: {e}") from e
        logger.info("Connected WS %s", url)
        return RelayerSubscription(self, ws)

    async def send(self, handle: RelayerConversation, content: str) -> RawMessage:
        try:
            peer_pub = await self._peer_enc_pub(handle.peer_address)
            cipher = Box(self.nacl_key, peer_pub).encrypt(content.encode())
            payload = {
                "version": 1,
                "ciphertext": base64.b64encode(cipher).decode(),
                "senderEncPub": base64.b64encode(bytes(self.nacl_key.public_key)).decode(),
            }
            u = await self._request("POST", "/api/uploadEncrypted", json=UploadPayload(payload=payload).model_dump())
            if u.status_code != 200:
                raise SendFailed(f"upload returned {u.status_code}")
            cid = u.json()["cid"]

            timestamp = int(time.time())
            msg_str = f"{cid}|{self.address}|{handle.peer_address}|{timestamp}"
            deliver = DeliverMessage(
                cid=cid,
                sender=self.address,
                recipient=handle.peer_address,
                timestamp=timestamp,
                ethSignature=self.identity.sign_text(msg_str),
            )
            d = await self._request("POST", "/api/deliver", json=deliver.model_dump(exclude_none=True))
            if d.status_code != 200:
                raise SendFailed(f"deliver returned {d.status_code}: {d.text}")
        except SendFailed:
            raise
        except TransportError as e:
            raise SendFailed(e.message) from e

        return RawMessage(
            id=str(d.json()["id"]),
            senderAddress=self.address,
            content=content,
            sentAt=timestamp * 1000,
            conversationPeerAddress=handle.peer_address,
        )

    # -------------------- decoding --------------------
    async def _conversation_rows(self, root_id: str, limit: int, before: Optional[int] = None) -> List[ConversationMessage]:
        params = {"limit": limit}
        if before is not None:
            params["before"] = before
        data = await self._get_json(f"/api/conversation/{root_id}", params=params)
        return ConversationResponse.model_validate(data).messages

    async def _peer_enc_pub(self, peer: str) -> PublicKey:
        key = peer.lower()
        if key not in self._enc_pubs:
            data = await self._get_json(f"/api/user/{to_checksum_address(peer)}")
            self._enc_pubs[key] = PublicKey(base64.b64decode(data["encPub"]))
        return self._enc_pubs[key]

    async def _decode(self, row: ConversationMessage, peer: str) -> Optional[RawMessage]:
        pr = await self._request("GET", f"/api/fetch/{row.cid}")
        if pr.status_code != 200:
            logger.warning("Fetch failed for %s", row.cid)
            return None
        payload = pr.json()["payload"]
        try:
            box = Box(self.nacl_key, await self._peer_enc_pub(peer))
            plaintext = box.decrypt(base64.b64decode(payload["ciphertext"])).decode()
        except (CryptoError, KeyError, ValueError) as e:
            logger.warning("Decrypt failed for %s: %s", row.cid, e)
            return None
        return RawMessage(
            id=str(row.id),
            senderAddress=row.sender,
            content=plaintext,
            sentAt=row.timestamp * 1000,
            conversationPeerAddress=peer,
        )

    async def _decode_rows(self, rows: List[ConversationMessage], peer: str) -> List[RawMessage]:
        decoded = await asyncio.gather(*(self._decode(r, peer) for r in rows))
        return [m for m in decoded if m is not None]
