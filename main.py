# main.py
"""
Command-line chat client.

    python main.py                       # list chats, then print incoming messages
    python main.py --register            # publish this wallet's keys to the relayer first
    python main.py --to 0xABC... --message "hi"
    python main.py --open 0xABC... --older 2
"""
import argparse
import asyncio
import logging
from datetime import datetime

from config import settings
from crypto_utils import WalletIdentity, load_or_create_nacl_key
from ledger import DedupLedger
from models import ChatState
from network import RelayerClient
from session import ChatSession
from store import AddMessage


def _fmt_ts(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


def print_channels(state: ChatState) -> None:
    if not state.channels:
        print("No chats yet.")
        return
    print("\n📜 Chats:")
    for c in state.channels:
        unread = state.unreadCount.get(c.id, 0)
        badge = f" ({unread} unread)" if unread else ""
        last = _fmt_ts(c.lastMessageAt) if c.lastMessageAt else "-"
        print(f"  {c.id}  last {last}{badge}")


def print_history(session: ChatSession, channel_id: str) -> None:
    for m in session.store.messages_for(channel_id):
        print(f"[{_fmt_ts(m.timestamp)}] {m.sender}: {m.content}")


def print_incoming(state: ChatState, action) -> None:
    if isinstance(action, AddMessage):
        m = action.message
        print(f"\n📩 [{action.channel_id[:10]}…] From {m.sender}: {m.content}")


async def run(args) -> int:
    identity = WalletIdentity.from_key_file(settings["eth_key_path"])
    nacl_key = load_or_create_nacl_key(settings["nacl_key_path"])
    client = RelayerClient(identity, nacl_key, base_url=args.relayer)
    session = ChatSession(identity, ledger=DedupLedger())
    print(f"🔐 Loaded account: {identity.current_address()}")

    try:
        if args.register:
            await client.register()
            print(f"✅ Registered user {identity.current_address()}")

        result = await session.attach_client(client)
        if not result.ok:
            print(f"⚠️ Could not start session: {result.error.message}")
            return 1
        print_channels(session.state)

        if args.open:
            result = await session.set_current_channel(args.open)
            if not result.ok:
                print(f"⚠️ {result.error.message}")
                return 1
            for _ in range(args.older):
                if not session.has_more:
                    break
                await session.load_older_messages()
            print_history(session, session.state.currentChannelId)

        if args.to:
            result = await session.send_message(args.to, args.message or "")
            if result.ok:
                print(f"📤 Delivered: {result.value}")
            else:
                print(f"⚠️ Send failed ({result.code}): {result.error.message}")
                return 1
            return 0

        session.store.subscribe(print_incoming)
        print("\n📡 Listening for messages (Ctrl-C to quit)")
        while True:
            await asyncio.sleep(3600)
    finally:
        await session.close()
        await client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Relayer chat client")
    parser.add_argument("--relayer", default=None, help="relayer base url")
    parser.add_argument("--register", action="store_true")
    parser.add_argument("--open", metavar="ADDRESS", help="open a chat and print its history")
    parser.add_argument("--older", type=int, default=0, help="older pages to load with --open")
    parser.add_argument("--to", metavar="ADDRESS")
    parser.add_argument("--message")
    args = parser.parse_args()

    logging.basicConfig(level=settings.get("log_level", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    try:
        raise SystemExit(asyncio.run(run(args)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
