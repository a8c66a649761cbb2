"""
DLT Sandbox Proof of Work Tests
"""

import itertools

import pytest

from dltsim.constants import GENESIS_ID, POW_MAX_HASH_POWER
from dltsim.consensus import PoWConsensus, PoWState
from dltsim.core.block import Block
from dltsim.core.node import Node
from dltsim.core.transaction import TxState
from dltsim.errors import EngineNotInitializedError
from dltsim.network import Message, MessageType
from conftest import SENDER, make_network, make_tx


def pow_network(node_count=3, difficulty=1, confirmations=1):
    network, nodes = make_network(node_count)
    engine = PoWConsensus()
    for node in nodes:
        node.ledger.set_balance(SENDER, 100)
        engine.init(node, network, {"difficulty": difficulty, "confirmations": confirmations})
    return engine, network, nodes


def mine(parent, difficulty=1, producer="2", txs=()):
    """Search nonces until the block meets the difficulty."""
    for nonce in itertools.count():
        block = Block.create(
            parent.id, parent.height + 1, producer, 1000,
            transactions=txs, proof={"nonce": nonce, "difficulty": difficulty},
        )
        if block.has_valid_pow(difficulty):
            return block


def deliver(engine, node, block, network, sender="2"):
    msg = Message(
        id="m", type=MessageType.BLOCK_PROPOSE, sender=sender, to=node.id,
        payload={"block": block.to_dict()},
    )
    engine.on_message(node, msg, network)


class TestInit:
    """Tests for engine setup."""

    def test_settings_applied(self):
        engine, _, nodes = pow_network(difficulty=3, confirmations=4)
        assert engine.difficulty == 3
        assert engine.confirmations == 4
        assert isinstance(nodes[0].consensus_state, PoWState)

    def test_hash_power_range(self):
        _, _, nodes = pow_network(node_count=5)
        for node in nodes:
            assert 1 <= node.consensus_state.hash_power <= POW_MAX_HASH_POWER

    def test_uninitialised_node_raises(self):
        engine = PoWConsensus()
        with pytest.raises(EngineNotInitializedError):
            engine.state_of(Node(id="9"))

    def test_clamps(self):
        engine = PoWConsensus()
        assert engine.set_difficulty(0) == 1
        assert engine.set_difficulty(9) == 4
        assert engine.set_confirmations(0) == 1
        assert engine.set_confirmations(20) == 10


class TestBlockHandling:
    """Tests for received blocks."""

    def test_valid_block_adopted(self):
        engine, network, nodes = pow_network()
        block = mine(nodes[0].get_head())
        deliver(engine, nodes[0], block, network)
        assert nodes[0].head_id == block.id

    def test_invalid_pow_rejected(self):
        engine, network, nodes = pow_network(difficulty=2)
        block = next(
            b for b in (
                Block.create(GENESIS_ID, 1, "2", 1000, proof={"nonce": n})
                for n in itertools.count()
            )
            if not b.has_valid_pow(2)
        )
        deliver(engine, nodes[0], block, network)
        assert not nodes[0].has_block(block.id)

    def test_missing_parent_rejected(self):
        engine, network, nodes = pow_network()
        orphan = mine(mine(nodes[0].get_head()))
        deliver(engine, nodes[0], orphan, network)
        assert not nodes[0].has_block(orphan.id)
        assert nodes[0].head_id == GENESIS_ID

    def test_relay_excludes_sender(self):
        engine, network, nodes = pow_network()
        deliver(engine, nodes[0], mine(nodes[0].get_head()), network, sender="2")
        relayed = [m.to for m in network.in_flight() if m.type == MessageType.BLOCK_PROPOSE]
        assert relayed == ["3"]

    def test_duplicate_not_relayed(self):
        engine, network, nodes = pow_network()
        block = mine(nodes[0].get_head())
        deliver(engine, nodes[0], block, network)
        network.clear_messages()
        deliver(engine, nodes[0], block, network)
        assert network.in_flight() == []


class TestForkChoice:
    """Tests for longest-chain selection."""

    def test_equal_height_keeps_head(self):
        engine, network, nodes = pow_network()
        first = mine(nodes[0].get_head(), producer="2")
        rival = mine(nodes[0].get_head(), producer="3")
        deliver(engine, nodes[0], first, network)
        deliver(engine, nodes[0], rival, network, sender="3")
        assert nodes[0].head_id == first.id

    def test_longer_fork_wins(self):
        engine, network, nodes = pow_network()
        first = mine(nodes[0].get_head(), producer="2")
        rival = mine(nodes[0].get_head(), producer="3")
        extension = mine(rival, producer="3")
        for block in (first, rival, extension):
            deliver(engine, nodes[0], block, network)
        assert nodes[0].head_id == extension.id

    def test_ledger_follows_reorg(self):
        engine, network, nodes = pow_network()
        tx = make_tx(amount=30)
        first = mine(nodes[0].get_head(), producer="2", txs=[tx])
        rival = mine(nodes[0].get_head(), producer="3")
        extension = mine(rival, producer="3")

        deliver(engine, nodes[0], first, network)
        assert nodes[0].ledger.get_balance(SENDER) == 70

        deliver(engine, nodes[0], rival, network)
        deliver(engine, nodes[0], extension, network)
        assert nodes[0].ledger.get_balance(SENDER) == 100


class TestFinality:
    """Tests for confirmation-depth finality."""

    def test_finalized_after_confirmations(self):
        engine, network, nodes = pow_network(confirmations=1)
        tx = make_tx()
        b1 = mine(nodes[0].get_head(), txs=[tx])
        b2 = mine(b1)

        deliver(engine, nodes[0], b1, network)
        assert nodes[0].finalized_id == GENESIS_ID

        deliver(engine, nodes[0], b2, network)
        assert nodes[0].finalized_id == b1.id
        assert nodes[0].tx_states[tx.id] == TxState.FINALIZED
        assert engine.is_finalized(nodes[0], b1.id)
        assert not engine.is_finalized(nodes[0], b2.id)

    def test_deeper_confirmations(self):
        engine, network, nodes = pow_network(confirmations=2)
        b1 = mine(nodes[0].get_head())
        b2 = mine(b1)
        for block in (b1, b2):
            deliver(engine, nodes[0], block, network)
        assert nodes[0].finalized_id == GENESIS_ID


class TestMining:
    """Tests for the mining loop."""

    def test_idle_without_transactions(self):
        engine, network, nodes = pow_network()
        for i in range(100):
            engine.on_tick(nodes[0], i * 100, network)
        assert nodes[0].head_id == GENESIS_ID

    def test_mines_pending_transaction(self):
        engine, network, nodes = pow_network()
        tx = make_tx()
        engine.on_tx(nodes[0], tx, network)

        for i in range(500):
            engine.on_tick(nodes[0], i * 100, network)
            if nodes[0].get_head().height >= 1:
                break

        head_chain = nodes[0].get_chain(nodes[0].head_id)
        assert head_chain[0].contains_tx(tx.id)
        assert head_chain[0].has_valid_pow(engine.difficulty)

    def test_tx_gossiped_once(self):
        engine, network, nodes = pow_network()
        tx = make_tx()
        engine.on_tx(nodes[0], tx, network)
        engine.on_tx(nodes[0], tx, network)
        gossip = [m for m in network.in_flight() if m.type == MessageType.TX_GOSSIP]
        assert sorted(m.to for m in gossip) == ["2", "3"]

    def test_stopped_miner(self):
        engine, network, nodes = pow_network()
        assert engine.toggle_mining(nodes[0]) is False
        engine.on_tx(nodes[0], make_tx(), network)
        for i in range(200):
            engine.on_tick(nodes[0], i * 100, network)
        assert nodes[0].head_id == GENESIS_ID
        assert engine.get_role(nodes[0]) == ""

    def test_ui_state(self):
        engine, _, nodes = pow_network()
        ui = engine.get_ui_state(nodes[0])
        assert ui["mining"] is True
        assert ui["difficulty"] == 1
        assert ui["isMiningActive"] is False
