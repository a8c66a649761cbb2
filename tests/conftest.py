"""
DLT Sandbox Test Fixtures
"""

import random

import pytest

from dltsim.core.crypto import generate_keypair
from dltsim.core.node import Node
from dltsim.core.transaction import Transaction
from dltsim.network.network import Network
from dltsim.simulation.config import SimulationConfig
from dltsim.simulation.simulation import Simulation


SENDER = "0xaaaaaaaa"
RECEIVER = "0xbbbbbbbb"


def make_tx(sender=SENDER, to=RECEIVER, amount=10, nonce=0, timestamp=0, signed=True):
    """Build a transaction with a fixed test key."""
    return Transaction.create(
        sender=sender,
        to=to,
        amount=amount,
        nonce=nonce,
        timestamp=timestamp,
        private_key="00" * 16 if signed else None,
    )


def make_network(node_count=0, min_delay=100, max_delay=100, packet_loss=0.0, seed=7):
    """Fully meshed network of bare nodes named "1".."n"."""
    network = Network(
        min_delay=min_delay,
        max_delay=max_delay,
        packet_loss=packet_loss,
        rng=random.Random(seed),
    )
    nodes = [Node(id=str(i + 1)) for i in range(node_count)]
    for node in nodes:
        network.register_node(node)
        for other in nodes:
            node.add_peer(other.id)
    return network, nodes


def make_simulation(kind="pow", nodes=4, seed=42, packet_loss=0.0, **tunables):
    """Seeded simulation with fully meshed nodes."""
    config = SimulationConfig(seed=seed)
    config.consensus.kind = kind
    config.network.packet_loss = packet_loss
    for key, value in tunables.items():
        setattr(config.consensus, key, value)

    sim = Simulation(config)
    for i in range(nodes):
        sim.add_node(x=100 * i, y=100)
    sim.connect_all()
    return sim


@pytest.fixture
def keypair():
    """Deterministic key pair."""
    return generate_keypair(bytes(range(16)))


@pytest.fixture
def tx():
    """Signed 10-unit transfer with nonce 0."""
    return make_tx()


@pytest.fixture
def funded_node():
    """Node whose ledger funds SENDER with 100."""
    node = Node(id="1")
    node.ledger.set_balance(SENDER, 100)
    return node


@pytest.fixture
def network():
    """Empty network with fixed 100 ms delay."""
    net, _ = make_network()
    return net


@pytest.fixture
def pow_sim():
    return make_simulation("pow", difficulty=1)


@pytest.fixture
def pos_sim():
    return make_simulation("pos")


@pytest.fixture
def raft_sim():
    return make_simulation("raft")


@pytest.fixture
def pbft_sim():
    return make_simulation("pbft")
