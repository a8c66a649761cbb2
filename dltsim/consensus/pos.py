"""
DLT Sandbox Proof of Stake

Slot-based leader selection weighted by stake, one vote per validator per
slot, and stake-quorum finality.

The stake table is engine-wide: every node under one engine instance
reads the same table.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Dict, List, Mapping, Optional, Set, TYPE_CHECKING

from dltsim.constants import MAX_TX_PER_BLOCK, POS_DEFAULT_STAKE, POS_SLOT_DURATION_MS
from dltsim.consensus.base import ConsensusEngine, register_engine
from dltsim.core.block import Block
from dltsim.core.crypto import hash_data
from dltsim.network.message import Message, MessageType

if TYPE_CHECKING:
    from dltsim.core.node import Node
    from dltsim.core.transaction import Transaction
    from dltsim.network.network import Network

logger = logging.getLogger(__name__)

DEFAULT_QUORUM_THRESHOLD = Fraction(2, 3)


@dataclass
class PoSState:
    """Per-node validator state."""
    is_validator: bool = True
    stake: int = POS_DEFAULT_STAKE
    votes: Dict[str, Set[str]] = field(default_factory=dict)     # block id -> voter ids
    voted_slots: Set[int] = field(default_factory=set)
    pending_blocks: Dict[str, Block] = field(default_factory=dict)
    last_slot: int = -1


@register_engine("pos")
class PoSConsensus(ConsensusEngine):
    """Proof of Stake engine."""

    name = "pos"
    state_class = PoSState

    def __init__(self):
        self.slot_duration = POS_SLOT_DURATION_MS
        self.default_stake = POS_DEFAULT_STAKE
        self.quorum_threshold = DEFAULT_QUORUM_THRESHOLD
        self.max_tx_per_block = MAX_TX_PER_BLOCK

        # node id -> stake
        self.stakes: Dict[str, int] = {}

        # Slot of the most recent tick, for display
        self.current_slot = 0

    def init(
        self,
        node: "Node",
        network: "Network",
        settings: Optional[Mapping[str, Any]] = None
    ) -> None:
        self.slot_duration = self.setting(settings, "slot_duration", self.slot_duration)
        self.default_stake = self.setting(settings, "default_stake", self.default_stake)
        self.quorum_threshold = Fraction(
            self.setting(settings, "quorum_threshold", self.quorum_threshold)
        ).limit_denominator(1000)
        self.max_tx_per_block = self.setting(settings, "max_tx_per_block", self.max_tx_per_block)

        if node.id not in self.stakes:
            self.stakes[node.id] = self.default_stake

        self.current_slot = self.slot_at(network.now)
        state = PoSState(
            stake=self.stakes[node.id],
            last_slot=self.current_slot,
        )
        self.attach(node, state)

    def remove_node(self, node_id: str) -> None:
        self.stakes.pop(node_id, None)

    # =========================================================================
    # Stake table
    # =========================================================================

    def get_total_stake(self) -> int:
        return sum(self.stakes.values())

    def get_validator_stake(self, node_id: str) -> int:
        return self.stakes.get(node_id, 0)

    def validators(self) -> List[str]:
        return sorted(self.stakes)

    def slot_at(self, now: float) -> int:
        return int(now // self.slot_duration)

    def select_leader(self, slot: int) -> Optional[str]:
        """
        Pick the slot leader by hashing the slot into [0, total stake).

        Walks cumulative stake over sorted validator ids, so every node
        with the same stake table agrees on the leader.
        """
        validators = self.validators()
        total_stake = self.get_total_stake()
        if total_stake <= 0 or not validators:
            return None

        seed = int(hash_data(f"slot-{slot}")[:8], 16)
        target = seed % total_stake

        cumulative = 0
        for node_id in validators:
            cumulative += self.stakes[node_id]
            if cumulative > target:
                return node_id
        return validators[0]

    # =========================================================================
    # Messages
    # =========================================================================

    def on_tx(self, node: "Node", tx: "Transaction", network: "Network") -> None:
        if node.add_to_mempool(tx):
            self.gossip_tx(node, tx, network)

    def on_message(self, node: "Node", msg: Message, network: "Network") -> None:
        if msg.type == MessageType.TX_GOSSIP:
            self.handle_tx_gossip(node, msg, network)
        elif msg.type == MessageType.BLOCK_PROPOSE:
            self._handle_block_propose(node, msg, network)
        elif msg.type == MessageType.BLOCK_VOTE:
            self._handle_block_vote(node, msg, network)

    def _handle_block_propose(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        block = Block.from_dict(msg.payload["block"])

        slot = self.slot_at(network.now)
        if block.round != slot:
            logger.info(
                f"{node.name}: block {block.short_id()} from wrong slot {block.round}, current {slot}"
            )
            return

        expected_leader = self.select_leader(block.round)
        if block.producer_id != expected_leader:
            logger.info(
                f"{node.name}: block {block.short_id()} from wrong leader "
                f"{block.producer_id}, expected {expected_leader}"
            )
            return

        if not node.has_block(block.parent_id):
            logger.info(f"{node.name}: missing parent for block {block.short_id()}")
            return

        if not node.append_block(block):
            return

        state.votes.setdefault(block.id, set())
        state.pending_blocks[block.id] = block
        node.set_head(block.id)

        if state.is_validator and block.round not in state.voted_slots:
            self._cast_vote(node, block, network)
        else:
            self.check_quorum(node, block.id)

        network.broadcast(node.id, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()}, msg.sender)

    def _cast_vote(self, node: "Node", block: Block, network: "Network") -> None:
        state = self.state_of(node)
        state.voted_slots.add(block.round)
        state.votes.setdefault(block.id, set()).add(node.id)

        network.broadcast(node.id, MessageType.BLOCK_VOTE, {
            "blockId": block.id,
            "slot": block.round,
            "voterId": node.id,
            "stake": state.stake,
        })

        logger.debug(f"{node.name}: voted for block {block.short_id()} in slot {block.round}")
        self.check_quorum(node, block.id)

    def _handle_block_vote(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        block_id = msg.payload["blockId"]
        voter_id = msg.payload["voterId"]

        votes = state.votes.setdefault(block_id, set())
        if voter_id in votes:
            return

        votes.add(voter_id)
        logger.debug(f"{node.name}: vote from {voter_id} for block {block_id[:8]}")

        network.broadcast(node.id, MessageType.BLOCK_VOTE, msg.payload, msg.sender)
        self.check_quorum(node, block_id)

    # =========================================================================
    # Finality
    # =========================================================================

    def voted_stake(self, node: "Node", block_id: str) -> int:
        votes = self.state_of(node).votes.get(block_id, ())
        return sum(self.stakes.get(voter_id, 0) for voter_id in votes)

    def has_quorum(self, node: "Node", block_id: str) -> bool:
        total_stake = self.get_total_stake()
        if total_stake <= 0:
            return False
        return self.voted_stake(node, block_id) >= self.quorum_threshold * total_stake

    def check_quorum(self, node: "Node", block_id: str) -> bool:
        """
        Finalize block_id once its voter stake reaches the quorum.

        Only blocks on the head chain above the current finalized height
        are finalized.

        Returns:
            True if finality advanced
        """
        state = self.state_of(node)
        block = node.get_block(block_id)
        if block is None or not self.has_quorum(node, block_id):
            return False

        if block.height <= node.get_finalized().height:
            return False
        if not node.is_ancestor(block_id, node.head_id):
            return False

        if node.set_finalized(block_id):
            logger.info(
                f"{node.name}: block {block.short_id()} finalized with "
                f"{self.voted_stake(node, block_id)}/{self.get_total_stake()} stake"
            )
            state.pending_blocks.pop(block_id, None)
            return True
        return False

    # =========================================================================
    # Proposing
    # =========================================================================

    def on_tick(self, node: "Node", now: float, network: "Network") -> None:
        state = self.state_of(node)
        slot = self.slot_at(now)
        self.current_slot = slot

        if slot == state.last_slot:
            return
        state.last_slot = slot

        if state.is_validator and self.select_leader(slot) == node.id:
            self._propose_block(node, slot, now, network)

    def _propose_block(self, node: "Node", slot: int, now: float, network: "Network") -> None:
        state = self.state_of(node)
        head = node.get_head()
        pending = node.get_pending_txs(self.max_tx_per_block)

        block = Block.create(
            parent_id=head.id,
            height=head.height + 1,
            producer_id=node.id,
            timestamp=int(now),
            round=slot,
            transactions=pending,
            proof={"type": "pos", "slot": slot, "stake": state.stake},
        )

        logger.info(
            f"{node.name}: proposing block {block.short_id()} for slot {slot} ({len(pending)} txs)"
        )

        node.append_block(block)
        state.votes.setdefault(block.id, set())
        state.pending_blocks[block.id] = block
        node.set_head(block.id)

        self._cast_vote(node, block, network)

        network.broadcast(node.id, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()})

    # =========================================================================
    # Queries
    # =========================================================================

    def get_role(self, node: "Node") -> str:
        if not self.state_of(node).is_validator:
            return "Observer"
        return "Leader" if self.select_leader(self.current_slot) == node.id else "Validator"

    def is_finalized(self, node: "Node", block_id: str) -> bool:
        return self.is_in_finalized_chain(node, block_id)

    def get_ui_state(self, node: "Node") -> Dict[str, Any]:
        state = self.state_of(node)
        leader = self.select_leader(self.current_slot)
        return {
            "isValidator": state.is_validator,
            "stake": state.stake,
            "currentSlot": self.current_slot,
            "isLeader": leader == node.id,
            "currentLeader": leader,
            "pendingBlocks": len(state.pending_blocks),
            "quorumThreshold": float(self.quorum_threshold * 100),
        }

    # =========================================================================
    # UI actions
    # =========================================================================

    def toggle_validator(self, node: "Node") -> bool:
        state = self.state_of(node)
        state.is_validator = not state.is_validator
        return state.is_validator

    def set_stake(self, node: "Node", stake: int) -> int:
        state = self.state_of(node)
        state.stake = max(0, int(stake))
        self.stakes[node.id] = state.stake
        return state.stake
