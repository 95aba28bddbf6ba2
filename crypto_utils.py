# crypto_utils.py
import hashlib
import logging
import os
from typing import Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils import is_checksum_address, is_hex_address
from nacl.public import PrivateKey

from errors import InvalidIdentifier

logger = logging.getLogger(__name__)


# --- Addresses ---
def is_valid_address(address: str) -> bool:
    """Hex address check; mixed case must carry a valid EIP-55 checksum."""
    if not isinstance(address, str):
        return False
    candidate = address.strip()
    if not is_hex_address(candidate):
        return False
    body = candidate[2:] if candidate[:2].lower() == "0x" else candidate
    if body == body.lower() or body == body.upper():
        return True
    return is_checksum_address(candidate)


def normalize_address(address: str) -> str:
    """Validate an Ethereum address and return its lower-case form."""
    if not is_valid_address(address):
        raise InvalidIdentifier(f"invalid address: {address!r}")
    return address.strip().lower()


# --- Key management ---
def load_or_create_eth_key(path: str) -> str:
    """Return the hex private key stored at `path`, creating one if absent."""
    if os.path.exists(path):
        with open(path, "r") as f:
            return f.read().strip()
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    acct = Account.create()
    key = acct.key.hex()
    with open(path, "w") as f:
        f.write(key)
    logger.info("Created new account %s", acct.address)
    return key


def load_or_create_nacl_key(path: str) -> PrivateKey:
    if os.path.exists(path):
        with open(path, "rb") as f:
            return PrivateKey(f.read())
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    key = PrivateKey.generate()
    with open(path, "wb") as f:
        f.write(bytes(key))
    logger.info("Created new NaCl encryption key")
    return key


class WalletIdentity:
    """Local participant backed by an eth-account key."""

    def __init__(self, privkey_hex: Optional[str] = None):
        self._acct = Account.from_key(privkey_hex) if privkey_hex else None

    @classmethod
    def from_key_file(cls, path: str) -> "WalletIdentity":
        return cls(load_or_create_eth_key(path))

    def is_ready(self) -> bool:
        return self._acct is not None

    def current_address(self) -> str:
        if self._acct is None:
            raise InvalidIdentifier("wallet not connected")
        return self._acct.address

    def sign_text(self, text: str) -> str:
        if self._acct is None:
            raise InvalidIdentifier("wallet not connected")
        return Account.sign_message(encode_defunct(text=text), self._acct.key).signature.hex()


# --- Conversations helpers ---
def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def conversation_root_id(a: str, b: str) -> str:
    """Deterministic root id for a 1:1 chat: sha256 of sorted addresses."""
    addrs = sorted([a.lower(), b.lower()])
    raw = (addrs[0] + '|' + addrs[1]).encode()
    return sha256_hex(raw)
