"""
DLT Sandbox Network Messages

Closed set of message types and the in-flight message record.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MessageType(str, Enum):
    """Message types. Values are the wire names."""

    # Wallet to node
    WALLET_TX = "WALLET_TX"

    # Common
    TX_GOSSIP = "TX_GOSSIP"
    BLOCK_PROPOSE = "BLOCK_PROPOSE"
    BLOCK_VOTE = "BLOCK_VOTE"

    # Raft
    RAFT_REQUEST_VOTE = "RAFT_REQUEST_VOTE"
    RAFT_VOTE = "RAFT_VOTE"
    RAFT_APPEND_ENTRIES = "RAFT_APPEND_ENTRIES"
    RAFT_APPEND_ACK = "RAFT_APPEND_ACK"
    RAFT_HEARTBEAT = "RAFT_HEARTBEAT"

    # PBFT
    PBFT_PRE_PREPARE = "PBFT_PRE_PREPARE"
    PBFT_PREPARE = "PBFT_PREPARE"
    PBFT_COMMIT = "PBFT_COMMIT"


@dataclass
class Message:
    """
    Point-to-point message in flight.

    deliver_at = created_at + total_delay, fixed at send time.
    """
    id: str
    type: MessageType
    sender: str
    to: str
    payload: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    deliver_at: float = 0.0
    total_delay: float = 0.0

    # Visualization only
    progress: float = 0.0

    def is_due(self, now: float) -> bool:
        return now >= self.deliver_at

    def update_progress(self, now: float) -> float:
        """Recompute progress in [0, 1]; never moves backwards."""
        if self.total_delay <= 0:
            progress = 1.0
        else:
            progress = min(1.0, max(0.0, (now - self.created_at) / self.total_delay))
        self.progress = max(self.progress, progress)
        return self.progress

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "from": self.sender,
            "to": self.to,
            "progress": self.progress,
            "payload": self.payload,
        }


@dataclass(frozen=True, slots=True)
class DroppedMessage:
    """Record of a message lost to packet loss."""
    type: MessageType
    sender: str
    to: str
    payload: Optional[Dict[str, Any]] = None
