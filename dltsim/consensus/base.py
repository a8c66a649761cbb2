"""
DLT Sandbox Consensus Engine Contract

Every engine is shared by all nodes of a simulation and keeps per-node
data in `node.consensus_state`. Engine-wide data (PoS stake table, PBFT
view bumps) lives on the engine instance.
"""

from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional, Type, TYPE_CHECKING

from dltsim.core.transaction import Transaction
from dltsim.errors import EngineNotInitializedError, UnknownConsensusError
from dltsim.network.message import Message, MessageType

if TYPE_CHECKING:
    from dltsim.core.node import Node
    from dltsim.network.network import Network

logger = logging.getLogger(__name__)


# ==============================================================================
# ENGINE REGISTRY
# ==============================================================================

_ENGINES: Dict[str, Type["ConsensusEngine"]] = {}


def register_engine(name: str) -> Callable[[Type["ConsensusEngine"]], Type["ConsensusEngine"]]:
    """Class decorator adding an engine to the factory registry."""
    def decorator(cls: Type["ConsensusEngine"]) -> Type["ConsensusEngine"]:
        _ENGINES[name] = cls
        return cls
    return decorator


def available_engines() -> list:
    return sorted(_ENGINES)


def create_engine(kind: str) -> "ConsensusEngine":
    """
    Build a fresh engine by name.

    Raises:
        UnknownConsensusError: kind is not a registered engine
    """
    cls = _ENGINES.get(kind)
    if cls is None:
        raise UnknownConsensusError(kind)
    return cls()


# ==============================================================================
# ENGINE BASE
# ==============================================================================

class ConsensusEngine(ABC):
    """
    Consensus engine interface.

    Handlers never raise for protocol anomalies: invalid proofs, stale
    rounds and missing parents are logged and dropped.
    """

    name: str = ""
    state_class: Optional[type] = None

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    @abstractmethod
    def init(
        self,
        node: "Node",
        network: "Network",
        settings: Optional[Mapping[str, Any]] = None
    ) -> None:
        """
        Attach fresh per-node state and read tunables.

        Args:
            node: Node to initialise
            network: Network the node is registered with
            settings: Engine tunables, engine defaults where absent
        """

    def remove_node(self, node_id: str) -> None:
        """Drop engine-wide bookkeeping for a removed node."""

    # ========================================================================
    # INPUTS
    # ========================================================================

    @abstractmethod
    def on_tx(self, node: "Node", tx: Transaction, network: "Network") -> None:
        """Accept a transaction submitted to this node."""

    @abstractmethod
    def on_message(self, node: "Node", msg: Message, network: "Network") -> None:
        """Dispatch a delivered message. Unknown types are ignored."""

    @abstractmethod
    def on_tick(self, node: "Node", now: float, network: "Network") -> None:
        """Clock-driven background work."""

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_role(self, node: "Node") -> str:
        return "Node"

    def get_role_with_network(self, node: "Node", network: "Network") -> str:
        return self.get_role(node)

    def is_finalized(self, node: "Node", block_id: str) -> bool:
        return False

    def get_ui_state(self, node: "Node") -> Dict[str, Any]:
        return {}

    # ========================================================================
    # SHARED HELPERS
    # ========================================================================

    def state_of(self, node: "Node") -> Any:
        """
        Get this engine's state for a node.

        Raises:
            EngineNotInitializedError: node was not initialised by this engine
        """
        state = node.consensus_state
        if node.consensus is not self or self.state_class is None \
                or not isinstance(state, self.state_class):
            raise EngineNotInitializedError(self.name, node.id)
        return state

    def attach(self, node: "Node", state: Any) -> None:
        node.consensus_state = state
        node.consensus = self

    @staticmethod
    def setting(settings: Optional[Mapping[str, Any]], key: str, default: Any) -> Any:
        if settings and settings.get(key) is not None:
            return settings[key]
        return default

    def gossip_tx(
        self,
        node: "Node",
        tx: Transaction,
        network: "Network",
        exclude_id: Optional[str] = None
    ) -> None:
        network.broadcast(node.id, MessageType.TX_GOSSIP, {"tx": tx.to_dict()}, exclude_id)

    def handle_tx_gossip(
        self,
        node: "Node",
        msg: Message,
        network: "Network",
        regossip: bool = True
    ) -> bool:
        """
        Admit a gossiped transaction.

        Returns:
            True if the transaction was new to this node
        """
        tx = Transaction.from_dict(msg.payload["tx"])
        if not node.add_to_mempool(tx):
            return False

        if regossip:
            self.gossip_tx(node, tx, network, exclude_id=msg.sender)
        return True

    @staticmethod
    def is_in_finalized_chain(node: "Node", block_id: str) -> bool:
        """Check if block_id is the finalized block or one of its ancestors."""
        if not node.has_block(block_id):
            return False
        return node.is_ancestor(block_id, node.finalized_id)
