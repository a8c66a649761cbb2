"""
DLT Sandbox Proof of Work

Mining race with configurable difficulty, longest-chain fork choice and
confirmation-depth finality.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, TYPE_CHECKING

from dltsim.constants import (
    MAX_TX_PER_BLOCK,
    POW_DEFAULT_CONFIRMATIONS,
    POW_DEFAULT_DIFFICULTY,
    POW_MAX_CONFIRMATIONS,
    POW_MAX_DIFFICULTY,
    POW_MAX_HASH_POWER,
    POW_MIN_CONFIRMATIONS,
    POW_MIN_DIFFICULTY,
    POW_MINED_FLAG_MS,
    POW_NATIVE_NONCE_RANGE,
)
from dltsim.consensus.base import ConsensusEngine, register_engine
from dltsim.core.block import Block
from dltsim.network.message import Message, MessageType

if TYPE_CHECKING:
    from dltsim.core.node import Node
    from dltsim.core.transaction import Transaction
    from dltsim.network.network import Network

logger = logging.getLogger(__name__)


@dataclass
class PoWState:
    """Per-node mining state."""
    mining: bool = True
    hash_power: int = 1             # Nonce attempts per tick
    native_nonce: int = 0           # Per-node nonce offset, constant
    current_nonce: int = 0
    mining_height: int = 1
    last_block_time: float = 0.0
    block_just_mined: bool = False


@register_engine("pow")
class PoWConsensus(ConsensusEngine):
    """Proof of Work engine."""

    name = "pow"
    state_class = PoWState

    def __init__(self):
        self.difficulty = POW_DEFAULT_DIFFICULTY
        self.confirmations = POW_DEFAULT_CONFIRMATIONS
        self.max_tx_per_block = MAX_TX_PER_BLOCK

    def init(
        self,
        node: "Node",
        network: "Network",
        settings: Optional[Mapping[str, Any]] = None
    ) -> None:
        self.difficulty = self.setting(settings, "difficulty", self.difficulty)
        self.confirmations = self.setting(settings, "confirmations", self.confirmations)
        self.max_tx_per_block = self.setting(settings, "max_tx_per_block", self.max_tx_per_block)

        state = PoWState(
            hash_power=network.rng.randint(1, POW_MAX_HASH_POWER),
            native_nonce=network.rng.randrange(POW_NATIVE_NONCE_RANGE),
            mining_height=node.get_head().height + 1,
        )
        self.attach(node, state)

    # =========================================================================
    # Transactions and blocks
    # =========================================================================

    def on_tx(self, node: "Node", tx: "Transaction", network: "Network") -> None:
        if node.add_to_mempool(tx):
            self.gossip_tx(node, tx, network)

    def on_message(self, node: "Node", msg: Message, network: "Network") -> None:
        if msg.type == MessageType.TX_GOSSIP:
            self.handle_tx_gossip(node, msg, network)
        elif msg.type == MessageType.BLOCK_PROPOSE:
            self._handle_block_propose(node, msg, network)

    def _handle_block_propose(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        block = Block.from_dict(msg.payload["block"])

        if not self.is_valid_pow(block):
            logger.info(f"{node.name}: invalid PoW for block {block.short_id()}")
            return

        if not node.has_block(block.parent_id):
            logger.info(
                f"{node.name}: missing parent {block.parent_id[:8]} for block {block.short_id()}"
            )
            return

        if not node.append_block(block):
            return

        previous_head = node.get_head()
        if block.height == previous_head.height and block.parent_id == previous_head.parent_id:
            logger.info(
                f"{node.name}: competing block {block.short_id()} at height {block.height}, "
                f"keeping head {previous_head.short_id()}"
            )
        else:
            logger.debug(f"{node.name}: added block {block.short_id()} at height {block.height}")

        self.apply_fork_choice(node)

        if node.head_id != previous_head.id:
            logger.info(
                f"{node.name}: switched to longer chain, head {node.head_id[:8]} "
                f"at height {node.get_head().height}"
            )

        if block.height >= state.mining_height:
            state.current_nonce = 0
            state.mining_height = node.get_head().height + 1

        self.update_finality(node)

        network.broadcast(node.id, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()}, msg.sender)

    # =========================================================================
    # Mining
    # =========================================================================

    def on_tick(self, node: "Node", now: float, network: "Network") -> None:
        state = self.state_of(node)

        if state.block_just_mined and now - state.last_block_time > POW_MINED_FLAG_MS:
            state.block_just_mined = False

        if not state.mining:
            return

        head = node.get_head()
        if state.mining_height != head.height + 1:
            state.mining_height = head.height + 1
            state.current_nonce = 0

        pending = self._mineable_txs(node)
        if not pending and not self._has_unsettled_chain(node):
            return

        for _ in range(state.hash_power):
            nonce = state.current_nonce + state.native_nonce
            state.current_nonce += 1

            block = Block.create(
                parent_id=head.id,
                height=state.mining_height,
                producer_id=node.id,
                timestamp=int(now),
                round=0,
                transactions=pending,
                proof={"nonce": nonce, "difficulty": self.difficulty},
            )

            if not self.is_valid_pow(block):
                continue

            logger.info(
                f"{node.name}: mined block {block.short_id()} at height {block.height} "
                f"({state.current_nonce} attempts, {len(pending)} txs)"
            )

            node.append_block(block)
            self.apply_fork_choice(node)
            self.update_finality(node)

            network.broadcast(node.id, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()})

            state.current_nonce = 0
            state.mining_height += 1
            state.last_block_time = now
            state.block_just_mined = True
            break

    def _mineable_txs(self, node: "Node") -> List["Transaction"]:
        return [
            tx for tx in node.get_pending_txs(self.max_tx_per_block)
            if not self.is_tx_in_chain(node, tx.id)
        ]

    def _has_unsettled_chain(self, node: "Node") -> bool:
        """
        Check if empty blocks are still needed.

        True while a transaction-bearing block on the head chain lacks
        `confirmations` blocks on top, or while another tip ties the head.
        """
        head = node.get_head()

        for block in reversed(node.get_chain(head.id)):
            if head.height - block.height >= self.confirmations:
                break
            if block.transactions:
                return True

        return any(
            tip.id != head.id and tip.height == head.height
            for tip in node.chain_tips()
        )

    # =========================================================================
    # Fork choice and finality
    # =========================================================================

    def is_valid_pow(self, block: Block) -> bool:
        return block.has_valid_pow(self.difficulty)

    def apply_fork_choice(self, node: "Node") -> None:
        """Adopt the deepest tip, switching only on strictly greater height."""
        best = node.get_head()
        for tip in node.chain_tips():
            if tip.height > best.height:
                best = tip
        node.set_head(best.id)

    def update_finality(self, node: "Node") -> None:
        """Finalize the head-chain block `confirmations` below the head."""
        target_height = node.get_head().height - self.confirmations
        if target_height <= 0:
            return

        block = node.block_at_height(target_height)
        if block is not None and node.set_finalized(block.id):
            node.remove_from_mempool(block.tx_ids)

    @staticmethod
    def is_tx_in_chain(node: "Node", tx_id: str) -> bool:
        return any(block.contains_tx(tx_id) for block in node.block_store.values())

    # =========================================================================
    # Queries
    # =========================================================================

    def get_role(self, node: "Node") -> str:
        return "Miner" if self.state_of(node).mining else ""

    def is_finalized(self, node: "Node", block_id: str) -> bool:
        block = node.get_block(block_id)
        if block is None:
            return False
        if not node.is_ancestor(block_id, node.head_id):
            return False
        return block.height <= node.get_head().height - self.confirmations

    def get_ui_state(self, node: "Node") -> Dict[str, Any]:
        state = self.state_of(node)
        has_pending = bool(self._mineable_txs(node))
        expected_trials = 16 ** self.difficulty
        return {
            "mining": state.mining,
            "difficulty": self.difficulty,
            "confirmations": self.confirmations,
            "trials": state.current_nonce,
            "progress": min(1.0, state.current_nonce / expected_trials),
            "hashPower": state.hash_power,
            "blockJustMined": state.block_just_mined,
            "isMiningActive": state.mining and has_pending,
        }

    # =========================================================================
    # UI actions
    # =========================================================================

    def toggle_mining(self, node: "Node") -> bool:
        state = self.state_of(node)
        state.mining = not state.mining
        return state.mining

    def set_difficulty(self, value: int) -> int:
        self.difficulty = max(POW_MIN_DIFFICULTY, min(POW_MAX_DIFFICULTY, int(value)))
        return self.difficulty

    def set_confirmations(self, value: int) -> int:
        self.confirmations = max(POW_MIN_CONFIRMATIONS, min(POW_MAX_CONFIRMATIONS, int(value)))
        return self.confirmations
