"""
DLT Sandbox Core Data Structures

Transactions, blocks, ledger replay and per-node state.
"""

from dltsim.core.crypto import (
    KeyPair,
    hash_data,
    generate_id,
    generate_keypair,
    sign,
    verify,
    address_from_public_key,
)
from dltsim.core.transaction import Transaction, TxState, ValidationResult
from dltsim.core.block import Block, compute_block_id
from dltsim.core.ledger import Ledger
from dltsim.core.node import Node
from dltsim.core.wallet import Wallet

__all__ = [
    # Identity
    "KeyPair",
    "hash_data",
    "generate_id",
    "generate_keypair",
    "sign",
    "verify",
    "address_from_public_key",
    # Data model
    "Transaction",
    "TxState",
    "ValidationResult",
    "Block",
    "compute_block_id",
    "Ledger",
    "Node",
    "Wallet",
]
