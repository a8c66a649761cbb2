"""
DLT Sandbox PBFT Tests
"""

import pytest

from dltsim.constants import GENESIS_ID
from dltsim.consensus import PBFTConsensus, PBFTPhase
from dltsim.core.block import Block
from dltsim.network import Message, MessageType
from conftest import SENDER, make_network, make_tx


def pbft_network(node_count=4):
    network, nodes = make_network(node_count)
    engine = PBFTConsensus()
    for node in nodes:
        node.ledger.set_balance(SENDER, 100)
        engine.init(node, network)
    return engine, network, nodes


def run(engine, network, nodes, start, stop, step=100):
    for now in range(start, stop, step):
        network.tick(now)
        for node in nodes:
            engine.on_tick(node, now, network)


def send(engine, node, network, msg_type, payload, sender="1"):
    msg = Message(id="m", type=msg_type, sender=sender, to=node.id, payload=payload)
    engine.on_message(node, msg, network)


def pre_prepare(block, view=0, sequence=0, primary="1"):
    return {"view": view, "sequence": sequence, "block": block.to_dict(), "primaryId": primary}


def vote(block_id, node_id, view=0, sequence=0):
    return {"view": view, "sequence": sequence, "blockId": block_id, "nodeId": node_id}


class TestQuorum:
    """Tests for 2f+1 arithmetic and primary rotation."""

    @pytest.mark.parametrize("n,f,quorum", [(1, 0, 1), (4, 1, 3), (5, 1, 3), (7, 2, 5)])
    def test_quorum(self, n, f, quorum):
        network, _ = make_network(n)
        engine = PBFTConsensus()
        assert engine.get_f(network) == f
        assert engine.get_quorum(network) == quorum

    def test_primary_rotation(self):
        network, _ = make_network(4)
        assert PBFTConsensus.get_primary(network, 0) == "1"
        assert PBFTConsensus.get_primary(network, 1) == "2"
        assert PBFTConsensus.get_primary(network, 4) == "1"

    def test_no_nodes_no_primary(self):
        network, _ = make_network(0)
        assert PBFTConsensus.get_primary(network, 0) is None


class TestRound:
    """Tests for a full pre-prepare/prepare/commit round."""

    def test_block_committed_everywhere(self):
        engine, network, nodes = pbft_network()
        tx = make_tx()
        engine.on_tx(nodes[0], tx, network)
        engine.on_tick(nodes[0], 0, network)

        block = nodes[0].get_block(nodes[0].consensus_state.pre_prepare_log[(0, 0)]["block"]["id"])
        run(engine, network, nodes, 100, 1000)

        for node in nodes:
            state = node.consensus_state
            assert state.phase((0, 0)) == PBFTPhase.COMMITTED
            assert state.sequence == 1
            assert node.head_id == block.id
            assert node.finalized_id == block.id
            assert engine.is_finalized(node, block.id)
            assert tx.id not in node.mempool

    def test_single_replica_commits_alone(self):
        engine, network, nodes = pbft_network(node_count=1)
        engine.on_tx(nodes[0], make_tx(), network)
        engine.on_tick(nodes[0], 0, network)
        assert nodes[0].consensus_state.phase((0, 0)) == PBFTPhase.COMMITTED
        assert nodes[0].get_head().height == 1

    def test_primary_waits_for_transactions(self):
        engine, network, nodes = pbft_network()
        engine.on_tick(nodes[0], 0, network)
        assert nodes[0].consensus_state.pre_prepare_log == {}

    def test_replica_does_not_propose(self):
        engine, network, nodes = pbft_network()
        engine.on_tx(nodes[1], make_tx(), network)
        engine.on_tick(nodes[1], 0, network)
        assert nodes[1].consensus_state.pre_prepare_log == {}

    def test_no_second_proposal_for_slot(self):
        engine, network, nodes = pbft_network()
        engine.on_tx(nodes[0], make_tx(), network)
        engine.on_tick(nodes[0], 0, network)
        engine.on_tx(nodes[0], make_tx(amount=5), network)
        engine.on_tick(nodes[0], 10000, network)
        proposals = [m for m in network.in_flight() if m.type == MessageType.PBFT_PRE_PREPARE]
        assert len(proposals) == 3


class TestPhases:
    """Tests for phase ordering and vote matching."""

    def test_commits_before_prepares_wait(self):
        engine, network, nodes = pbft_network()
        replica = nodes[1]
        block = Block.create(GENESIS_ID, 1, "1", 0, transactions=[make_tx()])
        key = (0, 0)

        send(engine, replica, network, MessageType.PBFT_PRE_PREPARE, pre_prepare(block))
        assert replica.consensus_state.phase(key) == PBFTPhase.PRE_PREPARED

        for voter in ("1", "3", "4"):
            send(engine, replica, network, MessageType.PBFT_COMMIT, vote(block.id, voter), sender=voter)
        assert replica.consensus_state.phase(key) == PBFTPhase.PRE_PREPARED

        send(engine, replica, network, MessageType.PBFT_PREPARE, vote(block.id, "3"), sender="3")
        assert replica.consensus_state.phase(key) == PBFTPhase.COMMITTED
        assert replica.finalized_id == block.id

    def test_mismatched_prepares_not_counted(self):
        engine, network, nodes = pbft_network()
        replica = nodes[1]
        block = Block.create(GENESIS_ID, 1, "1", 0)

        send(engine, replica, network, MessageType.PBFT_PRE_PREPARE, pre_prepare(block))
        for voter in ("3", "4"):
            send(engine, replica, network, MessageType.PBFT_PREPARE, vote("f" * 64, voter), sender=voter)

        assert replica.consensus_state.phase((0, 0)) == PBFTPhase.PRE_PREPARED
        assert PBFTConsensus.matching_votes(
            replica.consensus_state, replica.consensus_state.prepare_log, (0, 0)
        ) == 2

    def test_prepares_before_pre_prepare_kept(self):
        engine, network, nodes = pbft_network()
        replica = nodes[1]
        block = Block.create(GENESIS_ID, 1, "1", 0)

        send(engine, replica, network, MessageType.PBFT_PREPARE, vote(block.id, "3"), sender="3")
        send(engine, replica, network, MessageType.PBFT_PRE_PREPARE, pre_prepare(block))
        assert replica.consensus_state.phase((0, 0)) == PBFTPhase.PREPARED

    def test_other_view_votes_ignored(self):
        engine, network, nodes = pbft_network()
        replica = nodes[1]
        send(engine, replica, network, MessageType.PBFT_PREPARE, vote("b", "3", view=2), sender="3")
        assert replica.consensus_state.prepare_log == {}


class TestPrePrepareValidation:
    """Tests for pre-prepare acceptance."""

    def test_wrong_view(self):
        engine, network, nodes = pbft_network()
        block = Block.create(GENESIS_ID, 1, "1", 0)
        send(engine, nodes[1], network, MessageType.PBFT_PRE_PREPARE, pre_prepare(block, view=1))
        assert not nodes[1].has_block(block.id)

    def test_wrong_primary(self):
        engine, network, nodes = pbft_network()
        block = Block.create(GENESIS_ID, 1, "3", 0)
        send(engine, nodes[1], network, MessageType.PBFT_PRE_PREPARE, pre_prepare(block, primary="3"), sender="3")
        assert not nodes[1].has_block(block.id)

    def test_unknown_parent(self):
        engine, network, nodes = pbft_network()
        parent = Block.create(GENESIS_ID, 1, "1", 0)
        block = Block.create(parent.id, 2, "1", 0)
        send(engine, nodes[1], network, MessageType.PBFT_PRE_PREPARE, pre_prepare(block))
        assert not nodes[1].has_block(block.id)
        assert (0, 0) not in nodes[1].consensus_state.pre_prepare_log

    def test_second_pre_prepare_for_slot_ignored(self):
        engine, network, nodes = pbft_network()
        first = Block.create(GENESIS_ID, 1, "1", 0)
        second = Block.create(GENESIS_ID, 1, "1", 1)
        send(engine, nodes[1], network, MessageType.PBFT_PRE_PREPARE, pre_prepare(first))
        send(engine, nodes[1], network, MessageType.PBFT_PRE_PREPARE, pre_prepare(second))
        assert nodes[1].consensus_state.pre_prepare_log[(0, 0)]["block"]["id"] == first.id


class TestViewChange:
    """Tests for manual view changes."""

    def test_change_view_moves_primary(self):
        engine, network, nodes = pbft_network()
        engine.change_view(network)

        for node in nodes:
            assert node.consensus_state.view == 1
            assert node.consensus_state.last_proposal is None
        assert engine.get_role_with_network(nodes[1], network) == "Primary"
        assert engine.get_role_with_network(nodes[0], network) == "Replica"

    def test_new_primary_proposes(self):
        engine, network, nodes = pbft_network()
        engine.change_view(network)
        engine.on_tx(nodes[1], make_tx(), network)
        engine.on_tick(nodes[1], 0, network)
        assert (1, 0) in nodes[1].consensus_state.pre_prepare_log

    def test_ui_state(self):
        engine, network, nodes = pbft_network()
        ui = engine.get_ui_state(nodes[0])
        assert ui["currentPhase"] == "IDLE"
        assert ui["view"] == 0
