"""
DLT Sandbox Simulation

Owns the network, the node and wallet registries and the shared consensus
engine, and drives the global clock.

One tick: the network delivers every due message, then every node's
engine gets one `on_tick`. Nothing else mutates node state.
"""

from __future__ import annotations
import logging
import random
from typing import Any, Callable, Dict, List, Optional

from dltsim.constants import MAX_SPEED_MULTIPLIER, MIN_SPEED_MULTIPLIER
from dltsim.consensus import ConsensusEngine, create_engine
from dltsim.core.block import Block
from dltsim.core.crypto import generate_keypair
from dltsim.core.node import Node
from dltsim.core.transaction import Transaction, TxState
from dltsim.core.wallet import Wallet
from dltsim.errors import InvalidParameterError
from dltsim.network.network import Network
from dltsim.simulation.config import SimulationConfig

logger = logging.getLogger(__name__)


class Simulation:
    """
    Tick-driven ledger network simulation.

    Unknown node and wallet ids are no-ops: the call returns None/False.
    """

    def __init__(self, config: Optional[SimulationConfig] = None):
        self.config = config or SimulationConfig()
        self.rng = random.Random(self.config.seed)

        # Speed control, base values at 1x
        self.speed_multiplier = 1.0
        self.base_tick_interval = self.config.tick_interval
        self.base_min_delay = self.config.network.min_delay
        self.base_max_delay = self.config.network.max_delay

        self.network = self._create_network()
        self.nodes: Dict[str, Node] = {}
        self.wallets: Dict[int, Wallet] = {}

        # Shared by every node
        self.consensus: Optional[ConsensusEngine] = None
        self.consensus_type: Optional[str] = None
        self._pending_settings: Optional[Dict[str, Any]] = None

        # Simulated clock (ms)
        self.now: float = 0.0
        self.tick_count = 0
        self.running = False

        self._node_counter = 0
        self._wallet_counter = 0

        # Observers
        self.on_tick: Optional[Callable[[float], None]] = None
        self.on_node_added: Optional[Callable[[Node], None]] = None
        self.on_wallet_added: Optional[Callable[[Wallet], None]] = None
        self.on_connection_added: Optional[Callable[[str, str], None]] = None
        self.on_block_mined: Optional[Callable[[Node, Block], None]] = None

        self.set_consensus_type(self.config.consensus.kind)
        if self.config.speed_multiplier != 1.0:
            self.set_speed_multiplier(self.config.speed_multiplier)

    def _create_network(self) -> Network:
        network = Network(
            min_delay=self.base_min_delay,
            max_delay=self.base_max_delay,
            packet_loss=self.config.network.packet_loss,
            rng=self.rng,
        )
        network.on_wallet_tx_delivery = self._on_wallet_tx_delivery
        return network

    # =========================================================================
    # Consensus
    # =========================================================================

    def set_consensus_type(self, kind: str) -> ConsensusEngine:
        """
        Switch every node to a fresh engine.

        In-flight messages of the previous engine are discarded; chains are
        kept.

        Raises:
            UnknownConsensusError: kind is not a known engine
        """
        engine = create_engine(kind)

        self.consensus = engine
        self.consensus_type = kind
        self._pending_settings = (
            self.config.consensus.settings() if kind == self.config.consensus.kind else {}
        )

        self.network.clear_messages()

        for node in self.nodes.values():
            self._init_node(node)

        logger.info(f"Consensus set to {kind} for {len(self.nodes)} nodes")
        return engine

    def _init_node(self, node: Node) -> None:
        # Configured tunables are applied once per engine; later inits keep
        # whatever the engine holds (including UI adjustments).
        settings, self._pending_settings = self._pending_settings, None
        self.consensus.init(node, self.network, settings)

    # =========================================================================
    # Nodes
    # =========================================================================

    def add_node(self, x: float = 300, y: float = 300) -> Node:
        self._node_counter += 1
        node = Node(id=str(self._node_counter), x=x, y=y)

        for wallet in self.wallets.values():
            node.ledger.set_balance(wallet.address, wallet.initial_balance)

        node.on_tx_state_changed = self._on_tx_state_changed

        self.nodes[node.id] = node
        self.network.register_node(node)

        if self.consensus is not None:
            self._init_node(node)

        logger.debug(f"Added {node.name}")

        if self.on_node_added:
            self.on_node_added(node)

        return node

    def remove_node(self, node_id: str) -> bool:
        node = self.nodes.get(node_id)
        if node is None:
            return False

        for peer_id in list(node.peers):
            peer = self.nodes.get(peer_id)
            if peer is not None:
                peer.remove_peer(node_id)

        for wallet in self.wallets.values():
            if wallet.connected_node_id == node_id:
                wallet.disconnect()

        del self.nodes[node_id]
        self.network.unregister_node(node_id)

        if self.consensus is not None:
            self.consensus.remove_node(node_id)

        logger.debug(f"Removed {node.name}")
        return True

    def connect_nodes(self, node_id1: str, node_id2: str) -> bool:
        node1 = self.nodes.get(node_id1)
        node2 = self.nodes.get(node_id2)

        if node1 is None or node2 is None or node_id1 == node_id2:
            return False

        node1.add_peer(node_id2)
        node2.add_peer(node_id1)

        if self.on_connection_added:
            self.on_connection_added(node_id1, node_id2)

        return True

    def disconnect_nodes(self, node_id1: str, node_id2: str) -> bool:
        node1 = self.nodes.get(node_id1)
        node2 = self.nodes.get(node_id2)

        if node1:
            node1.remove_peer(node_id2)
        if node2:
            node2.remove_peer(node_id1)

        return node1 is not None or node2 is not None

    def connect_all(self) -> int:
        """Fully mesh every node. Returns the number of links."""
        node_ids = sorted(self.nodes)
        links = 0
        for i, node_id in enumerate(node_ids):
            for other_id in node_ids[i + 1:]:
                if self.connect_nodes(node_id, other_id):
                    links += 1
        return links

    # =========================================================================
    # Wallets
    # =========================================================================

    def add_wallet(
        self,
        x: float = 100,
        y: float = 100,
        initial_balance: Optional[int] = None
    ) -> Wallet:
        if initial_balance is None:
            initial_balance = self.config.wallet_balance

        self._wallet_counter += 1
        keys = generate_keypair(self.rng.randbytes(16))
        wallet = Wallet(
            id=self._wallet_counter,
            initial_balance=initial_balance,
            x=x,
            y=y,
            private_key=keys.private_key,
            public_key=keys.public_key,
        )
        self.wallets[wallet.id] = wallet

        for node in self.nodes.values():
            node.ledger.set_balance(wallet.address, initial_balance)

        logger.debug(f"Added wallet {wallet.name} ({wallet.address})")

        if self.on_wallet_added:
            self.on_wallet_added(wallet)

        return wallet

    def remove_wallet(self, wallet_id: int) -> bool:
        return self.wallets.pop(wallet_id, None) is not None

    def connect_wallet_to_node(self, wallet_id: int, node_id: str) -> bool:
        wallet = self.wallets.get(wallet_id)
        node = self.nodes.get(node_id)

        if wallet is None or node is None:
            return False

        wallet.connect(node_id)

        if wallet.address not in node.ledger.initial_balances:
            node.ledger.set_balance(wallet.address, wallet.initial_balance)

        return True

    def send_transaction(self, wallet_id: int, to: str, amount: int) -> Optional[Transaction]:
        """
        Create a transaction in a wallet and send it to its node.

        Delivery goes through the network, so delay and loss apply.

        Returns:
            The transaction, or None for an unknown or unconnected wallet
        """
        wallet = self.wallets.get(wallet_id)
        if wallet is None:
            return None

        node = self.nodes.get(wallet.connected_node_id) if wallet.connected_node_id else None
        if node is None:
            return None

        tx = wallet.create_transaction(to, amount, timestamp=int(self.now))
        self.network.send_wallet_tx(wallet.id, node.id, tx)

        logger.info(f"{wallet.name} sent {amount} to {to} via {node.name} (tx {tx.short_id()})")
        return tx

    def _on_wallet_tx_delivery(self, tx: Transaction, node_id: str) -> None:
        node = self.nodes.get(node_id)
        if node is not None and self.consensus is not None:
            self.consensus.on_tx(node, tx, self.network)

    def _on_tx_state_changed(self, tx_id: str, state: TxState) -> None:
        if state in (TxState.IN_BLOCK, TxState.FINALIZED):
            for wallet in self.wallets.values():
                if tx_id in wallet.pending_txs:
                    wallet.confirm_transaction(tx_id)

    # =========================================================================
    # Clock
    # =========================================================================

    def tick(self, now: Optional[float] = None) -> float:
        """
        Advance the simulation one step.

        Args:
            now: Clock value for this tick (default: previous + tick interval)

        Returns:
            The clock value used
        """
        if now is None:
            now = self.now + self.get_tick_interval()
        self.now = now

        self.network.tick(now)

        if self.consensus is not None:
            for node in list(self.nodes.values()):
                head_before = node.head_id
                self.consensus.on_tick(node, now, self.network)

                if node.head_id != head_before and self.on_block_mined:
                    block = node.get_head()
                    if block.producer_id == node.id:
                        self.on_block_mined(node, block)

        self.tick_count += 1

        if self.on_tick:
            self.on_tick(now)

        return now

    def run_ticks(self, count: int) -> float:
        for _ in range(count):
            self.tick()
        return self.now

    def get_tick_interval(self) -> int:
        return round(self.base_tick_interval / self.speed_multiplier)

    def reset(self) -> None:
        """Drop every node, wallet and message and restart the clock."""
        kind = self.consensus_type or self.config.consensus.kind

        self.nodes.clear()
        self.wallets.clear()
        self.network.clear_messages()

        self._node_counter = 0
        self._wallet_counter = 0
        self.now = 0.0
        self.tick_count = 0

        self.rng.seed(self.config.seed)
        self.network = self._create_network()
        self.network.min_delay = round(self.base_min_delay / self.speed_multiplier)
        self.network.max_delay = round(self.base_max_delay / self.speed_multiplier)

        self.set_consensus_type(kind)
        logger.info("Simulation reset")

    # =========================================================================
    # Settings
    # =========================================================================

    def set_network_delay(self, min_delay: float, max_delay: float) -> None:
        """
        Set the delay range at the current speed.

        Raises:
            InvalidParameterError: min_delay is negative
        """
        if min_delay < 0:
            raise InvalidParameterError("min_delay", "cannot be negative")
        self.network.min_delay = min_delay
        self.network.max_delay = max(min_delay, max_delay)

    def set_packet_loss(self, rate: float) -> None:
        self.network.packet_loss = max(0.0, min(1.0, rate))

    def set_speed_multiplier(self, multiplier: float) -> float:
        """Rescale the tick interval and network delays. Clamped to 0.1..5."""
        self.speed_multiplier = max(MIN_SPEED_MULTIPLIER, min(MAX_SPEED_MULTIPLIER, multiplier))
        self.network.min_delay = round(self.base_min_delay / self.speed_multiplier)
        self.network.max_delay = round(self.base_max_delay / self.speed_multiplier)
        return self.speed_multiplier

    # =========================================================================
    # Snapshots
    # =========================================================================

    def get_node(self, node_id: str) -> Optional[Node]:
        return self.nodes.get(node_id)

    def get_role(self, node: Node) -> str:
        if self.consensus is None:
            return "Node"
        return self.consensus.get_role_with_network(node, self.network) or self.consensus.get_role(node)

    def get_state(self) -> Dict[str, Any]:
        """Read-only snapshot for renderers."""
        nodes = []
        for node in self.nodes.values():
            snapshot = node.to_dict()
            snapshot["role"] = self.get_role(node)
            snapshot["consensusState"] = (
                self.consensus.get_ui_state(node) if self.consensus is not None else {}
            )
            nodes.append(snapshot)

        return {
            "running": self.running,
            "now": self.now,
            "consensusType": self.consensus_type,
            "nodes": nodes,
            "wallets": [wallet.to_dict() for wallet in self.wallets.values()],
            "messages": self.network.messages_for_visualization(),
            "networkSettings": {
                "minDelay": self.network.min_delay,
                "maxDelay": self.network.max_delay,
                "packetLoss": self.network.packet_loss,
            },
        }

    def get_connections(self) -> List[Dict[str, str]]:
        connections = []
        seen = set()
        for node_id, node in self.nodes.items():
            for peer_id in sorted(node.peers):
                key = tuple(sorted((node_id, peer_id)))
                if key not in seen:
                    seen.add(key)
                    connections.append({"from": node_id, "to": peer_id})
        return connections

    def get_wallet_connections(self) -> List[Dict[str, Any]]:
        return [
            {"wallet": wallet_id, "node": wallet.connected_node_id}
            for wallet_id, wallet in self.wallets.items()
            if wallet.connected_node_id
        ]

    def get_addresses(self) -> List[Dict[str, Any]]:
        return [
            {"id": wallet.id, "name": wallet.name, "address": wallet.address}
            for wallet in self.wallets.values()
        ]
