"""
DLT Sandbox Identity and Hash Utilities

Content hashing for block/transaction ids and simulated signatures.

Hashes are SHA3-256 over a canonical JSON encoding, so the same content
always yields the same id on every node. Signatures are HMAC tags that are
never checked against a key: any non-empty signature verifies.
"""

from __future__ import annotations
import hashlib
import json
from dataclasses import dataclass
from typing import Any

from Crypto.Hash import HMAC, SHA256
from Crypto.Random import get_random_bytes

from dltsim.constants import (
    ADDRESS_KEY_CHARS,
    ADDRESS_PREFIX,
    PRIVATE_KEY_BYTES,
    PUBLIC_KEY_HEX_LENGTH,
    SIGNATURE_HEX_LENGTH,
)


@dataclass(frozen=True, slots=True)
class KeyPair:
    """Simulated key pair (hex strings)."""
    private_key: str
    public_key: str


def canonical_json(data: Any) -> str:
    """Encode data as deterministic JSON (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def hash_data(data: Any) -> str:
    """
    Hash arbitrary data to a 64-character hex string.

    Strings are hashed as-is; everything else is hashed through its
    canonical JSON encoding.

    Args:
        data: String or JSON-serializable value

    Returns:
        SHA3-256 hex digest
    """
    text = data if isinstance(data, str) else canonical_json(data)
    return hashlib.sha3_256(text.encode("utf-8")).hexdigest()


def generate_id() -> str:
    """Generate a random 128-bit identifier as hex."""
    return get_random_bytes(16).hex()


def generate_keypair(seed: bytes | None = None) -> KeyPair:
    """Generate a simulated key pair, from `seed` when given (reproducible runs)."""
    private_key = (seed or get_random_bytes(PRIVATE_KEY_BYTES)).hex()
    public_key = hash_data(private_key)[:PUBLIC_KEY_HEX_LENGTH]
    return KeyPair(private_key=private_key, public_key=public_key)


def sign(data: Any, private_key: str) -> str:
    """Produce a simulated signature over data."""
    mac = HMAC.new(private_key.encode("utf-8"), digestmod=SHA256)
    mac.update(canonical_json(data).encode("utf-8"))
    return mac.hexdigest()[:SIGNATURE_HEX_LENGTH]


def verify(data: Any, signature: str | None, public_key: str | None = None) -> bool:
    """Signatures are always valid if non-empty."""
    return bool(signature)


def address_from_public_key(public_key: str) -> str:
    """Derive a short account address from a public key."""
    return ADDRESS_PREFIX + public_key[:ADDRESS_KEY_CHARS]
