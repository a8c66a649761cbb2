"""
DLT Sandbox Node

Per-participant state: block store, head and finalized pointers, mempool,
per-transaction lifecycle, peer set and the engine-owned consensus state.

A node never touches another node's state. Everything that crosses node
boundaries goes through the network as a message.
"""

from __future__ import annotations
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from dltsim.core.block import Block
from dltsim.core.ledger import Ledger
from dltsim.core.transaction import Transaction, TxState

if TYPE_CHECKING:
    from dltsim.consensus.base import ConsensusEngine

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Node:
    """
    Simulated ledger node.

    The genesis block is seeded into the block store at creation, so
    `head_id` and `finalized_id` always resolve to a stored block.
    """
    id: str
    name: str = ""

    # Layout (read by renderers only)
    x: float = 200.0
    y: float = 200.0

    # Chain
    block_store: Dict[str, Block] = field(default_factory=dict)
    head_id: str = ""
    finalized_id: str = ""
    genesis_id: str = ""

    # Pending work
    mempool: "OrderedDict[str, Transaction]" = field(default_factory=OrderedDict)
    tx_states: Dict[str, TxState] = field(default_factory=dict)

    # Derived state
    ledger: Ledger = field(default_factory=Ledger)

    # Topology
    peers: Set[str] = field(default_factory=set)

    # Consensus (engine is shared, state is per node)
    consensus: Optional["ConsensusEngine"] = None
    consensus_state: Any = None

    # Observers
    on_block_added: Optional[Callable[[Block], None]] = None
    on_head_changed: Optional[Callable[[str], None]] = None
    on_finalized_changed: Optional[Callable[[str], None]] = None
    on_tx_state_changed: Optional[Callable[[str, TxState], None]] = None

    def __post_init__(self):
        if not self.name:
            self.name = f"Node {self.id}"

        genesis = Block.genesis()
        self.block_store[genesis.id] = genesis
        self.genesis_id = genesis.id
        self.head_id = genesis.id
        self.finalized_id = genesis.id

    # =========================================================================
    # Block store
    # =========================================================================

    def get_head(self) -> Block:
        return self.block_store[self.head_id]

    def get_finalized(self) -> Block:
        return self.block_store[self.finalized_id]

    def get_block(self, block_id: Optional[str]) -> Optional[Block]:
        if block_id is None:
            return None
        return self.block_store.get(block_id)

    def has_block(self, block_id: str) -> bool:
        return block_id in self.block_store

    def append_block(self, block: Block) -> bool:
        """
        Store a block.

        Included transactions move to IN_BLOCK (unless already final) and
        leave the mempool.

        Returns:
            True if the block was new
        """
        if block.id in self.block_store:
            return False

        self.block_store[block.id] = block

        for tx in block.transactions:
            self._advance_tx_state(tx.id, TxState.IN_BLOCK)
            self.mempool.pop(tx.id, None)

        if self.on_block_added:
            self.on_block_added(block)

        return True

    def set_head(self, block_id: str) -> bool:
        """
        Move the head pointer and recompute the ledger.

        Returns:
            True if the head changed
        """
        if self.head_id == block_id:
            return False

        if block_id not in self.block_store:
            logger.warning(f"{self.name}: refusing head {block_id[:8]}, block not stored")
            return False

        self.head_id = block_id
        self.recompute_ledger()

        if self.on_head_changed:
            self.on_head_changed(block_id)

        return True

    def set_finalized(self, block_id: str) -> bool:
        """
        Move the finalized pointer.

        Every transaction on the chain up to the block becomes FINALIZED.

        Returns:
            True if the finalized block changed
        """
        if self.finalized_id == block_id:
            return False

        if block_id not in self.block_store:
            logger.warning(f"{self.name}: refusing finality of unknown block {block_id[:8]}")
            return False

        self.finalized_id = block_id

        for block in self.get_chain(block_id):
            for tx in block.transactions:
                self._advance_tx_state(tx.id, TxState.FINALIZED)
                self.mempool.pop(tx.id, None)

        if self.on_finalized_changed:
            self.on_finalized_changed(block_id)

        return True

    # =========================================================================
    # Mempool
    # =========================================================================

    def add_to_mempool(self, tx: Transaction) -> bool:
        """
        Admit a transaction to the mempool.

        Returns:
            False if already pending or already seen in a block
        """
        if tx.id in self.mempool:
            return False

        current = self.tx_states.get(tx.id)
        if current in (TxState.IN_BLOCK, TxState.FINALIZED):
            return False

        self.mempool[tx.id] = tx
        self._advance_tx_state(tx.id, TxState.PENDING)
        return True

    def remove_from_mempool(self, tx_ids) -> None:
        for tx_id in tx_ids:
            self.mempool.pop(tx_id, None)

    def get_pending_txs(self, limit: int = 10) -> List[Transaction]:
        """Get mempool transactions valid against the current ledger, oldest first."""
        txs = []
        for tx in self.mempool.values():
            if len(txs) >= limit:
                break
            if tx.is_valid(self.ledger.balances, self.ledger.nonces).valid:
                txs.append(tx)
        return txs

    def _advance_tx_state(self, tx_id: str, new_state: TxState) -> bool:
        current = self.tx_states.get(tx_id)
        if current is not None and current.rank >= new_state.rank:
            return False

        self.tx_states[tx_id] = new_state
        if self.on_tx_state_changed:
            self.on_tx_state_changed(tx_id, new_state)
        return True

    # =========================================================================
    # Chain queries
    # =========================================================================

    def recompute_ledger(self) -> None:
        """Replay the head chain over the initial balances."""
        self.ledger = Ledger.compute_from_chain(
            self.block_store,
            self.head_id,
            self.genesis_id,
            self.ledger.initial_balances,
        )

    def get_chain(self, block_id: Optional[str]) -> List[Block]:
        """Get blocks from genesis (exclusive) to block_id (inclusive)."""
        chain = []
        current_id = block_id
        while current_id and current_id != self.genesis_id:
            block = self.block_store.get(current_id)
            if block is None:
                break
            chain.append(block)
            current_id = block.parent_id
        chain.reverse()
        return chain

    def get_height(self, block_id: Optional[str]) -> int:
        block = self.get_block(block_id)
        return block.height if block else 0

    def get_depth(self, block_id: str) -> int:
        """How many blocks sit on top of block_id on the head chain."""
        return self.get_height(self.head_id) - self.get_height(block_id)

    def is_ancestor(self, ancestor_id: str, block_id: str) -> bool:
        """Check if ancestor_id is block_id or one of its ancestors."""
        if ancestor_id == self.genesis_id:
            return block_id in self.block_store

        current_id = block_id
        while current_id and current_id != self.genesis_id:
            if current_id == ancestor_id:
                return True
            block = self.block_store.get(current_id)
            if block is None:
                return False
            current_id = block.parent_id
        return False

    def chain_tips(self) -> List[Block]:
        """Blocks without children in the local store."""
        parents = {block.parent_id for block in self.block_store.values()}
        return [
            block for block_id, block in self.block_store.items()
            if block_id not in parents
        ]

    def block_at_height(self, height: int, tip_id: Optional[str] = None) -> Optional[Block]:
        """Find the block at `height` on the chain ending at tip_id (default head)."""
        current = self.get_block(tip_id or self.head_id)
        while current is not None and current.height > height:
            current = self.get_block(current.parent_id)
        if current is not None and current.height == height:
            return current
        return None

    # =========================================================================
    # Topology
    # =========================================================================

    def add_peer(self, peer_id: str) -> None:
        if peer_id != self.id:
            self.peers.add(peer_id)

    def remove_peer(self, peer_id: str) -> None:
        self.peers.discard(peer_id)

    def get_role(self) -> str:
        if self.consensus is not None:
            return self.consensus.get_role(self)
        return "Node"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "x": self.x,
            "y": self.y,
            "headId": self.head_id,
            "finalizedId": self.finalized_id,
            "headHeight": self.get_height(self.head_id),
            "finalizedHeight": self.get_height(self.finalized_id),
            "mempoolSize": len(self.mempool),
            "peers": sorted(self.peers),
            "role": self.get_role(),
        }
