"""
DLT Sandbox Transaction Structure

Signed value transfer with a per-sender nonce.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from dltsim.constants import SHORT_ID_LENGTH
from dltsim.core.crypto import hash_data, sign, verify


class TxState(Enum):
    """Per-node transaction lifecycle. Only ever moves forward."""
    PENDING = "PENDING"         # In mempool
    IN_BLOCK = "IN_BLOCK"       # Included in a locally stored block
    FINALIZED = "FINALIZED"     # Block is final on this node

    @property
    def rank(self) -> int:
        return _TX_STATE_ORDER[self]


_TX_STATE_ORDER = {
    TxState.PENDING: 0,
    TxState.IN_BLOCK: 1,
    TxState.FINALIZED: 2,
}


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of validating a transaction against a ledger snapshot."""
    valid: bool
    reason: str = ""


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    Transfer of `amount` from `sender` to `to`.

    Immutable once created. The id commits to
    (from, to, amount, nonce, timestamp).
    """
    id: str
    sender: str
    to: str
    amount: int
    nonce: int
    timestamp: int
    signature: Optional[str] = None

    @classmethod
    def create(
        cls,
        sender: str,
        to: str,
        amount: int,
        nonce: int,
        timestamp: int,
        private_key: Optional[str] = None
    ) -> "Transaction":
        """
        Build and sign a new transaction.

        Args:
            sender: Sending address
            to: Receiving address
            amount: Amount to transfer
            nonce: Sender's next nonce
            timestamp: Creation time (simulated ms)
            private_key: Signing key; unsigned when omitted

        Returns:
            New Transaction
        """
        tx_data = {
            "from": sender,
            "to": to,
            "amount": amount,
            "nonce": nonce,
            "timestamp": timestamp,
        }
        return cls(
            id=hash_data(tx_data),
            sender=sender,
            to=to,
            amount=amount,
            nonce=nonce,
            timestamp=timestamp,
            signature=sign(tx_data, private_key) if private_key else None,
        )

    def is_valid(
        self,
        balances: Mapping[str, int],
        nonces: Mapping[str, int]
    ) -> ValidationResult:
        """Check signature, balance and nonce against a ledger snapshot."""
        if not verify(self.id, self.signature):
            return ValidationResult(False, "Missing signature")

        balance = balances.get(self.sender, 0)
        if balance < self.amount:
            return ValidationResult(False, "Insufficient balance")

        expected_nonce = nonces.get(self.sender, 0)
        if self.nonce != expected_nonce:
            return ValidationResult(
                False,
                f"Invalid nonce: expected {expected_nonce}, got {self.nonce}"
            )

        return ValidationResult(True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.to,
            "amount": self.amount,
            "nonce": self.nonce,
            "timestamp": self.timestamp,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Transaction":
        return cls(
            id=data["id"],
            sender=data["from"],
            to=data["to"],
            amount=data["amount"],
            nonce=data["nonce"],
            timestamp=data["timestamp"],
            signature=data.get("signature"),
        )

    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]
