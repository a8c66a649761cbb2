"""
DLT Sandbox PBFT

Primary-driven three-phase commit (pre-prepare, prepare, commit) with a
2f+1 quorum, f = floor((n - 1) / 3).

Phase tracks are keyed by (view, sequence) and only move forward:
IDLE -> PRE_PREPARED -> PREPARED -> COMMITTED.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

from dltsim.constants import MAX_TX_PER_BLOCK, PBFT_PROPOSAL_INTERVAL_MS
from dltsim.consensus.base import ConsensusEngine, register_engine
from dltsim.core.block import Block
from dltsim.network.message import Message, MessageType

if TYPE_CHECKING:
    from dltsim.core.node import Node
    from dltsim.core.transaction import Transaction
    from dltsim.network.network import Network

logger = logging.getLogger(__name__)

SlotKey = Tuple[int, int]   # (view, sequence)


class PBFTPhase(str, Enum):
    IDLE = "IDLE"
    PRE_PREPARED = "PRE_PREPARED"
    PREPARED = "PREPARED"
    COMMITTED = "COMMITTED"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = [
    PBFTPhase.IDLE,
    PBFTPhase.PRE_PREPARED,
    PBFTPhase.PREPARED,
    PBFTPhase.COMMITTED,
]


@dataclass
class PBFTState:
    """Per-replica PBFT state."""
    view: int = 0
    sequence: int = 0

    # Message logs
    pre_prepare_log: Dict[SlotKey, Dict[str, Any]] = field(default_factory=dict)
    prepare_log: Dict[SlotKey, Dict[str, str]] = field(default_factory=dict)    # node id -> block id
    commit_log: Dict[SlotKey, Dict[str, str]] = field(default_factory=dict)

    phases: Dict[SlotKey, PBFTPhase] = field(default_factory=dict)

    last_proposal: Optional[float] = None

    def phase(self, key: SlotKey) -> PBFTPhase:
        return self.phases.get(key, PBFTPhase.IDLE)


@register_engine("pbft")
class PBFTConsensus(ConsensusEngine):
    """PBFT engine."""

    name = "pbft"
    state_class = PBFTState

    def __init__(self):
        self.proposal_interval = PBFT_PROPOSAL_INTERVAL_MS
        self.max_tx_per_block = MAX_TX_PER_BLOCK

    def init(
        self,
        node: "Node",
        network: "Network",
        settings: Optional[Mapping[str, Any]] = None
    ) -> None:
        self.proposal_interval = self.setting(settings, "proposal_interval", self.proposal_interval)
        self.max_tx_per_block = self.setting(settings, "max_tx_per_block", self.max_tx_per_block)
        self.attach(node, PBFTState())

    # =========================================================================
    # Quorum arithmetic
    # =========================================================================

    @staticmethod
    def get_n(network: "Network") -> int:
        return len(network.nodes)

    def get_f(self, network: "Network") -> int:
        return (self.get_n(network) - 1) // 3

    def get_quorum(self, network: "Network") -> int:
        return 2 * self.get_f(network) + 1

    @staticmethod
    def get_primary(network: "Network", view: int) -> Optional[str]:
        node_ids = network.node_ids()
        if not node_ids:
            return None
        return node_ids[view % len(node_ids)]

    def is_primary(self, node: "Node", network: "Network") -> bool:
        return self.get_primary(network, self.state_of(node).view) == node.id

    # =========================================================================
    # Messages
    # =========================================================================

    def on_tx(self, node: "Node", tx: "Transaction", network: "Network") -> None:
        if node.add_to_mempool(tx):
            self.gossip_tx(node, tx, network)

    def on_message(self, node: "Node", msg: Message, network: "Network") -> None:
        if msg.type == MessageType.TX_GOSSIP:
            self.handle_tx_gossip(node, msg, network, regossip=False)
        elif msg.type == MessageType.PBFT_PRE_PREPARE:
            self._handle_pre_prepare(node, msg, network)
        elif msg.type == MessageType.PBFT_PREPARE:
            self._handle_vote(node, msg, network, commit=False)
        elif msg.type == MessageType.PBFT_COMMIT:
            self._handle_vote(node, msg, network, commit=True)

    def _handle_pre_prepare(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        payload = msg.payload
        view = payload["view"]
        sequence = payload["sequence"]
        primary_id = payload["primaryId"]
        key = (view, sequence)

        if view != state.view:
            logger.info(f"{node.name}: pre-prepare from wrong view {view}, current {state.view}")
            return

        expected_primary = self.get_primary(network, view)
        if primary_id != expected_primary:
            logger.info(f"{node.name}: pre-prepare from wrong primary {primary_id}")
            return

        if key in state.pre_prepare_log:
            return

        block = Block.from_dict(payload["block"])
        if not node.has_block(block.parent_id) and not node.has_block(block.id):
            logger.info(f"{node.name}: missing parent for pre-prepared block {block.short_id()}")
            return

        node.append_block(block)
        self._log_pre_prepare(state, key, block, primary_id)

        logger.debug(f"{node.name}: pre-prepare for seq {sequence}, block {block.short_id()}")

        network.broadcast(node.id, MessageType.PBFT_PREPARE, {
            "view": view,
            "sequence": sequence,
            "blockId": block.id,
            "nodeId": node.id,
        })
        state.prepare_log[key][node.id] = block.id

        self.check_prepared(node, key, network)

    @staticmethod
    def _log_pre_prepare(state: PBFTState, key: SlotKey, block: Block, primary_id: str) -> None:
        view, sequence = key
        state.pre_prepare_log[key] = {
            "view": view,
            "sequence": sequence,
            "block": block.to_dict(),
            "primaryId": primary_id,
        }
        state.prepare_log.setdefault(key, {})[primary_id] = block.id
        state.commit_log.setdefault(key, {})
        state.phases[key] = PBFTPhase.PRE_PREPARED

    def _handle_vote(self, node: "Node", msg: Message, network: "Network", commit: bool) -> None:
        state = self.state_of(node)
        payload = msg.payload
        view = payload["view"]
        if view != state.view:
            return

        key = (view, payload["sequence"])
        log = state.commit_log if commit else state.prepare_log
        log.setdefault(key, {})[payload["nodeId"]] = payload["blockId"]

        if commit:
            self.check_committed(node, key, network)
        else:
            self.check_prepared(node, key, network)

    @staticmethod
    def matching_votes(state: PBFTState, log: Dict[SlotKey, Dict[str, str]], key: SlotKey) -> int:
        """Count votes for the pre-prepared block of `key`."""
        pre_prepare = state.pre_prepare_log.get(key)
        if pre_prepare is None:
            return 0
        block_id = pre_prepare["block"]["id"]
        return sum(1 for voted in log.get(key, {}).values() if voted == block_id)

    # =========================================================================
    # Phase transitions
    # =========================================================================

    def check_prepared(self, node: "Node", key: SlotKey, network: "Network") -> bool:
        state = self.state_of(node)
        if state.phase(key) != PBFTPhase.PRE_PREPARED:
            return False

        prepares = self.matching_votes(state, state.prepare_log, key)
        if prepares < self.get_quorum(network):
            return False

        view, sequence = key
        block_id = state.pre_prepare_log[key]["block"]["id"]
        state.phases[key] = PBFTPhase.PREPARED
        logger.debug(f"{node.name}: prepared seq {sequence} with {prepares} prepares")

        network.broadcast(node.id, MessageType.PBFT_COMMIT, {
            "view": view,
            "sequence": sequence,
            "blockId": block_id,
            "nodeId": node.id,
        })
        state.commit_log.setdefault(key, {})[node.id] = block_id

        self.check_committed(node, key, network)
        return True

    def check_committed(self, node: "Node", key: SlotKey, network: "Network") -> bool:
        state = self.state_of(node)
        if state.phase(key) != PBFTPhase.PREPARED:
            return False

        commits = self.matching_votes(state, state.commit_log, key)
        if commits < self.get_quorum(network):
            return False

        _, sequence = key
        block_id = state.pre_prepare_log[key]["block"]["id"]
        state.phases[key] = PBFTPhase.COMMITTED
        state.sequence = max(state.sequence, sequence + 1)

        logger.info(f"{node.name}: committed seq {sequence}, block {block_id[:8]} ({commits} commits)")

        block = node.get_block(block_id)
        if block is None:
            return True

        if node.is_ancestor(node.head_id, block_id):
            node.set_head(block_id)
        if node.is_ancestor(block_id, node.head_id) and node.is_ancestor(node.finalized_id, block_id):
            node.set_finalized(block_id)
        node.remove_from_mempool(block.tx_ids)
        return True

    # =========================================================================
    # Proposing
    # =========================================================================

    def on_tick(self, node: "Node", now: float, network: "Network") -> None:
        state = self.state_of(node)

        if not self.is_primary(node, network):
            return
        if state.last_proposal is not None and now - state.last_proposal < self.proposal_interval:
            return
        if (state.view, state.sequence) in state.pre_prepare_log:
            return

        pending = node.get_pending_txs(self.max_tx_per_block)
        if not pending:
            return

        self.propose_block(node, pending, now, network)

    def propose_block(
        self,
        node: "Node",
        pending: List["Transaction"],
        now: float,
        network: "Network"
    ) -> Block:
        state = self.state_of(node)
        head = node.get_head()
        key = (state.view, state.sequence)

        block = Block.create(
            parent_id=head.id,
            height=head.height + 1,
            producer_id=node.id,
            timestamp=int(now),
            round=state.view,
            transactions=pending,
            proof={"type": "pbft", "view": state.view, "sequence": state.sequence},
        )

        logger.info(
            f"{node.name}: primary proposing block {block.short_id()} for seq {state.sequence}"
        )

        node.append_block(block)
        self._log_pre_prepare(state, key, block, node.id)

        network.broadcast(node.id, MessageType.PBFT_PRE_PREPARE, {
            "view": state.view,
            "sequence": state.sequence,
            "block": block.to_dict(),
            "primaryId": node.id,
        })

        state.last_proposal = now
        self.check_prepared(node, key, network)
        return block

    def change_view(self, network: "Network") -> None:
        """Bump the view on every node run by this engine and reset proposal timers."""
        view = 0
        for node in network.nodes.values():
            if node.consensus is self:
                state = self.state_of(node)
                state.view += 1
                state.last_proposal = None
                view = max(view, state.view)
        logger.info(f"View change to {view}, primary {self.get_primary(network, view)}")

    # =========================================================================
    # Queries
    # =========================================================================

    def get_role(self, node: "Node") -> str:
        return "Replica"

    def get_role_with_network(self, node: "Node", network: "Network") -> str:
        return "Primary" if self.is_primary(node, network) else "Replica"

    def is_finalized(self, node: "Node", block_id: str) -> bool:
        return self.is_in_finalized_chain(node, block_id)

    def get_ui_state(self, node: "Node") -> Dict[str, Any]:
        state = self.state_of(node)

        current_phase = PBFTPhase.IDLE
        prepare_count = 0
        commit_count = 0
        for key, phase in state.phases.items():
            if phase != PBFTPhase.COMMITTED:
                current_phase = phase
                prepare_count = len(state.prepare_log.get(key, {}))
                commit_count = len(state.commit_log.get(key, {}))

        return {
            "view": state.view,
            "sequence": state.sequence,
            "currentPhase": current_phase.value,
            "prepareCount": prepare_count,
            "commitCount": commit_count,
            "role": "Replica",
        }
