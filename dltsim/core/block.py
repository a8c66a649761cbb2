"""
DLT Sandbox Block Structure

Immutable header and body. The id commits to every header field,
including the timestamp, so two otherwise-identical blocks differ.

`round` carries protocol-specific meaning:
    PoW: unused (0)    PoS: slot    Raft: term    PBFT: view
"""

from __future__ import annotations
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from dltsim.constants import GENESIS_ID, GENESIS_PRODUCER, SHORT_ID_LENGTH
from dltsim.core.crypto import hash_data
from dltsim.core.transaction import Transaction


def compute_block_id(
    parent_id: str,
    height: int,
    producer_id: str,
    round: int,
    tx_ids: Iterable[str],
    proof: Mapping[str, Any],
    timestamp: int
) -> str:
    """Hash the block header fields into a block id."""
    return hash_data({
        "parentId": parent_id,
        "height": height,
        "producerId": producer_id,
        "round": round,
        "txIds": list(tx_ids),
        "proof": dict(proof),
        "timestamp": timestamp,
    })


@dataclass(frozen=True)
class Block:
    """
    Block with header fields, full transactions and a protocol proof.
    """
    id: str
    parent_id: str
    height: int
    producer_id: str
    round: int = 0
    tx_ids: Tuple[str, ...] = ()
    transactions: Tuple[Transaction, ...] = ()
    proof: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0

    @classmethod
    def create(
        cls,
        parent_id: str,
        height: int,
        producer_id: str,
        timestamp: int,
        round: int = 0,
        transactions: Iterable[Transaction] = (),
        proof: Optional[Mapping[str, Any]] = None
    ) -> "Block":
        """
        Build a block and derive its id from the header.

        Args:
            parent_id: Parent block id
            height: Parent height + 1
            producer_id: Producing node id
            timestamp: Creation time (simulated ms)
            round: Slot / term / view depending on protocol
            transactions: Included transactions
            proof: Protocol payload (nonce, stake, term, view...)

        Returns:
            New Block
        """
        txs = tuple(transactions)
        tx_ids = tuple(tx.id for tx in txs)
        proof = dict(proof or {})
        block_id = compute_block_id(
            parent_id, height, producer_id, round, tx_ids, proof, timestamp
        )
        return cls(
            id=block_id,
            parent_id=parent_id,
            height=height,
            producer_id=producer_id,
            round=round,
            tx_ids=tx_ids,
            transactions=txs,
            proof=proof,
            timestamp=timestamp,
        )

    @classmethod
    def genesis(cls) -> "Block":
        """Fixed genesis block, identical on every node."""
        return cls(
            id=GENESIS_ID,
            parent_id=GENESIS_ID[:SHORT_ID_LENGTH],
            height=0,
            producer_id=GENESIS_PRODUCER,
            round=0,
            proof={"type": "genesis"},
            timestamp=0,
        )

    @property
    def is_genesis(self) -> bool:
        return self.id == GENESIS_ID

    def has_valid_pow(self, difficulty: int) -> bool:
        """Check if the id starts with `difficulty` zero characters."""
        return self.id.startswith("0" * difficulty)

    def contains_tx(self, tx_id: str) -> bool:
        return tx_id in self.tx_ids

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "height": self.height,
            "producerId": self.producer_id,
            "round": self.round,
            "txIds": list(self.tx_ids),
            "transactions": [tx.to_dict() for tx in self.transactions],
            "proof": copy.deepcopy(self.proof),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Block":
        """Rebuild a block (and its transactions) from wire data."""
        transactions = tuple(
            tx if isinstance(tx, Transaction) else Transaction.from_dict(tx)
            for tx in data.get("transactions") or ()
        )
        return cls(
            id=data["id"],
            parent_id=data["parentId"],
            height=data["height"],
            producer_id=data["producerId"],
            round=data.get("round", 0),
            tx_ids=tuple(data.get("txIds") or ()),
            transactions=transactions,
            proof=copy.deepcopy(dict(data.get("proof") or {})),
            timestamp=data.get("timestamp", 0),
        )

    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]
