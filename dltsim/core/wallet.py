"""
DLT Sandbox Wallet

User account that creates signed transactions and tracks its own nonce.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from dltsim.constants import DEFAULT_WALLET_BALANCE, KNOWN_USERS
from dltsim.core.crypto import address_from_public_key, generate_keypair
from dltsim.core.transaction import Transaction


@dataclass(eq=False)
class Wallet:
    """Simulated user wallet connected to at most one node."""
    id: int
    initial_balance: int = DEFAULT_WALLET_BALANCE
    name: str = ""
    x: float = 100.0
    y: float = 100.0

    private_key: str = ""
    public_key: str = ""
    address: str = ""

    connected_node_id: Optional[str] = None
    nonce: int = 0
    pending_txs: Dict[str, Transaction] = field(default_factory=dict)

    def __post_init__(self):
        if not self.name:
            if 0 <= self.id < len(KNOWN_USERS) and KNOWN_USERS[self.id]:
                self.name = KNOWN_USERS[self.id]
            else:
                self.name = f"User {self.id}"

        if not self.private_key or not self.public_key:
            seed = bytes.fromhex(self.private_key) if self.private_key else None
            keys = generate_keypair(seed)
            self.private_key = keys.private_key
            self.public_key = keys.public_key
        self.address = address_from_public_key(self.public_key)

    def connect(self, node_id: str) -> None:
        self.connected_node_id = node_id

    def disconnect(self) -> None:
        self.connected_node_id = None

    def create_transaction(self, to: str, amount: int, timestamp: int) -> Transaction:
        """Sign a transfer with the next local nonce."""
        tx = Transaction.create(
            sender=self.address,
            to=to,
            amount=amount,
            nonce=self.nonce,
            timestamp=timestamp,
            private_key=self.private_key,
        )
        self.nonce += 1
        self.pending_txs[tx.id] = tx
        return tx

    def confirm_transaction(self, tx_id: str) -> None:
        self.pending_txs.pop(tx_id, None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "x": self.x,
            "y": self.y,
            "connectedNodeId": self.connected_node_id,
            "pendingTxs": len(self.pending_txs),
        }
