"""
DLT Sandbox Simulated Network

Queues point-to-point and broadcast messages, applies random delay and
random loss at send time, and delivers due messages into the addressed
node's consensus engine on each tick.

Delivery is the only path by which one node's state can influence
another's.
"""

from __future__ import annotations
import copy
import logging
import random
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from dltsim.constants import (
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MIN_DELAY_MS,
    DEFAULT_PACKET_LOSS,
)
from dltsim.core.transaction import Transaction
from dltsim.network.message import DroppedMessage, Message, MessageType

if TYPE_CHECKING:
    from dltsim.core.node import Node

logger = logging.getLogger(__name__)


@dataclass
class NetworkStats:
    """Network counters."""
    sent: int = 0
    dropped: int = 0
    delivered: int = 0
    discarded: int = 0


class Network:
    """
    In-process message transport with delay and loss.

    The network references nodes for delivery lookup only; it does not
    own their lifetime.
    """

    def __init__(
        self,
        min_delay: float = DEFAULT_MIN_DELAY_MS,
        max_delay: float = DEFAULT_MAX_DELAY_MS,
        packet_loss: float = DEFAULT_PACKET_LOSS,
        rng: Optional[random.Random] = None
    ):
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.packet_loss = packet_loss
        self.rng = rng or random.Random()

        # Clock of the last tick (simulated ms)
        self.now: float = 0.0

        self.nodes: Dict[str, "Node"] = {}
        self._messages: List[Message] = []

        self.stats = NetworkStats()

        # Observers
        self.on_message_created: Optional[Callable[[Message], None]] = None
        self.on_message_delivered: Optional[Callable[[Message], None]] = None
        self.on_message_dropped: Optional[Callable[[DroppedMessage], None]] = None
        self.on_wallet_tx_delivery: Optional[Callable[[Transaction, str], None]] = None

    # =========================================================================
    # Registry
    # =========================================================================

    def register_node(self, node: "Node") -> None:
        self.nodes[node.id] = node

    def unregister_node(self, node_id: str) -> None:
        self.nodes.pop(node_id, None)

    def get_node(self, node_id: str) -> Optional["Node"]:
        return self.nodes.get(node_id)

    def node_ids(self) -> List[str]:
        """Registered node ids in sorted order."""
        return sorted(self.nodes)

    # =========================================================================
    # Sending
    # =========================================================================

    def get_delay(self) -> float:
        """Draw a delay uniformly from [min_delay, max_delay]."""
        return self.rng.uniform(self.min_delay, self.max_delay)

    def should_drop(self) -> bool:
        return self.rng.random() < self.packet_loss

    def _next_message_id(self) -> str:
        return f"{self.rng.getrandbits(128):032x}"

    def send(
        self,
        sender: str,
        to: str,
        msg_type: MessageType,
        payload: Dict[str, Any]
    ) -> Optional[Message]:
        """
        Send a message to one node.

        Args:
            sender: Sending node (or wallet) id
            to: Destination node id
            msg_type: Message type
            payload: Protocol payload (copied)

        Returns:
            The queued Message, or None if it was dropped
        """
        delay = self.get_delay()

        if self.should_drop():
            self.stats.dropped += 1
            logger.debug(f"Dropped {msg_type.value} {sender} -> {to}")
            if self.on_message_dropped:
                self.on_message_dropped(DroppedMessage(msg_type, sender, to, payload))
            return None

        msg = Message(
            id=self._next_message_id(),
            type=msg_type,
            sender=sender,
            to=to,
            payload=copy.deepcopy(payload),
            created_at=self.now,
            deliver_at=self.now + delay,
            total_delay=delay,
        )

        self._messages.append(msg)
        self.stats.sent += 1

        if self.on_message_created:
            self.on_message_created(msg)

        return msg

    def broadcast(
        self,
        sender: str,
        msg_type: MessageType,
        payload: Dict[str, Any],
        exclude_id: Optional[str] = None
    ) -> List[Message]:
        """
        Send individually to each of the sender's peers.

        Args:
            sender: Sending node id
            msg_type: Message type
            payload: Protocol payload
            exclude_id: Extra id to skip (e.g. the node a gossip came from)

        Returns:
            Messages that were not dropped
        """
        node = self.nodes.get(sender)
        if node is None:
            return []

        messages = []
        for peer_id in sorted(node.peers):
            if peer_id == sender or peer_id == exclude_id:
                continue
            msg = self.send(sender, peer_id, msg_type, payload)
            if msg:
                messages.append(msg)
        return messages

    def broadcast_to_all(
        self,
        sender: str,
        msg_type: MessageType,
        payload: Dict[str, Any],
        exclude_id: Optional[str] = None
    ) -> List[Message]:
        """Send to every registered node, not just peers."""
        messages = []
        for node_id in self.node_ids():
            if node_id == sender or node_id == exclude_id:
                continue
            msg = self.send(sender, node_id, msg_type, payload)
            if msg:
                messages.append(msg)
        return messages

    def send_wallet_tx(self, wallet_id: Any, node_id: str, tx: Transaction) -> Optional[Message]:
        """Queue a wallet transaction for delivery to its node."""
        return self.send(f"wallet-{wallet_id}", node_id, MessageType.WALLET_TX, {"tx": tx.to_dict()})

    # =========================================================================
    # Delivery
    # =========================================================================

    def tick(self, now: float) -> List[Message]:
        """
        Deliver every message due at `now`.

        Due messages are delivered in deliver_at order, FIFO among equal
        deliver_at. Messages to unregistered nodes are discarded.

        Returns:
            The delivered (or discarded) batch
        """
        self.now = now

        due: List[Message] = []
        remaining: List[Message] = []
        for msg in self._messages:
            msg.update_progress(now)
            if msg.is_due(now):
                due.append(msg)
            else:
                remaining.append(msg)

        self._messages = remaining
        due.sort(key=lambda m: m.deliver_at)

        for msg in due:
            self._deliver(msg)

        return due

    def _deliver(self, msg: Message) -> None:
        node = self.nodes.get(msg.to)
        if node is None:
            self.stats.discarded += 1
            logger.debug(f"Discarded {msg.type.value} for unregistered node {msg.to}")
            return

        if msg.type == MessageType.WALLET_TX:
            if self.on_wallet_tx_delivery:
                self.on_wallet_tx_delivery(Transaction.from_dict(msg.payload["tx"]), node.id)
        elif node.consensus is not None:
            node.consensus.on_message(node, msg, self)
        else:
            self.stats.discarded += 1
            return

        self.stats.delivered += 1
        if self.on_message_delivered:
            self.on_message_delivered(msg)

    # =========================================================================
    # Inspection
    # =========================================================================

    def in_flight(self) -> List[Message]:
        return list(self._messages)

    def clear_messages(self) -> None:
        self._messages = []

    def messages_for_visualization(self) -> List[Dict[str, Any]]:
        return [msg.to_dict() for msg in self._messages]

    def get_statistics(self) -> dict:
        return {
            "in_flight": len(self._messages),
            "sent": self.stats.sent,
            "dropped": self.stats.dropped,
            "delivered": self.stats.delivered,
            "discarded": self.stats.discarded,
            "min_delay": self.min_delay,
            "max_delay": self.max_delay,
            "packet_loss": self.packet_loss,
        }
