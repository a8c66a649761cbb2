"""
DLT Sandbox Proof of Stake Tests
"""

from fractions import Fraction

from dltsim.constants import GENESIS_ID, POS_SLOT_DURATION_MS
from dltsim.consensus import PoSConsensus
from dltsim.core.block import Block
from dltsim.network import Message, MessageType
from conftest import make_network


def pos_network(node_count=3, **settings):
    network, nodes = make_network(node_count)
    engine = PoSConsensus()
    for node in nodes:
        engine.init(node, network, settings or None)
    return engine, network, nodes


def slot_block(engine, slot, parent=None, producer=None, timestamp=0):
    producer = producer or engine.select_leader(slot)
    parent_id = parent.id if parent else GENESIS_ID
    height = parent.height + 1 if parent else 1
    return Block.create(parent_id, height, producer, timestamp, round=slot, proof={"slot": slot})


def send(engine, node, network, msg_type, payload, sender="2"):
    msg = Message(id="m", type=msg_type, sender=sender, to=node.id, payload=payload)
    engine.on_message(node, msg, network)


def first_slot_led_by(engine, node_id, start=1):
    return next(s for s in range(start, start + 1000) if engine.select_leader(s) == node_id)


class TestLeaderSelection:
    """Tests for stake-weighted leader selection."""

    def test_deterministic_across_engines(self):
        a, _, _ = pos_network()
        b, _, _ = pos_network()
        for slot in range(50):
            assert a.select_leader(slot) == b.select_leader(slot)

    def test_leader_is_validator(self):
        engine, _, _ = pos_network(node_count=4)
        for slot in range(50):
            assert engine.select_leader(slot) in engine.validators()

    def test_all_stake_on_one_node(self):
        engine, _, nodes = pos_network()
        engine.set_stake(nodes[0], 0)
        engine.set_stake(nodes[2], 0)
        assert {engine.select_leader(slot) for slot in range(30)} == {"2"}

    def test_no_stake_no_leader(self):
        engine, _, nodes = pos_network()
        for node in nodes:
            engine.set_stake(node, 0)
        assert engine.select_leader(3) is None

    def test_slot_numbering(self):
        engine, _, _ = pos_network()
        assert engine.slot_at(0) == 0
        assert engine.slot_at(POS_SLOT_DURATION_MS - 1) == 0
        assert engine.slot_at(POS_SLOT_DURATION_MS) == 1


class TestQuorum:
    """Tests for stake-quorum finality."""

    def test_two_thirds_reaches_quorum(self):
        engine, _, nodes = pos_network()
        node = nodes[0]
        node.consensus_state.votes["b"] = {"1", "2"}
        assert engine.voted_stake(node, "b") == 200
        assert engine.has_quorum(node, "b")

    def test_one_third_is_not_quorum(self):
        engine, _, nodes = pos_network()
        nodes[0].consensus_state.votes["b"] = {"1"}
        assert not engine.has_quorum(nodes[0], "b")

    def test_unknown_voter_has_no_weight(self):
        engine, _, nodes = pos_network()
        nodes[0].consensus_state.votes["b"] = {"1", "x"}
        assert engine.voted_stake(nodes[0], "b") == 100

    def test_threshold_setting(self):
        engine, _, _ = pos_network(quorum_threshold=0.5)
        assert engine.quorum_threshold == Fraction(1, 2)

    def test_votes_finalize_block(self):
        engine, network, nodes = pos_network()
        node = nodes[0]
        block = slot_block(engine, 0)

        send(engine, node, network, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()})
        assert node.head_id == block.id
        assert node.finalized_id == GENESIS_ID

        voter = next(v for v in ("1", "2", "3") if v not in node.consensus_state.votes[block.id])
        send(engine, node, network, MessageType.BLOCK_VOTE, {
            "blockId": block.id, "slot": 0, "voterId": voter, "stake": 100,
        }, sender=voter)
        assert node.finalized_id == block.id
        assert engine.is_finalized(node, block.id)

    def test_duplicate_vote_ignored(self):
        engine, network, nodes = pos_network()
        payload = {"blockId": "b", "slot": 0, "voterId": "3", "stake": 100}
        send(engine, nodes[0], network, MessageType.BLOCK_VOTE, payload)
        network.clear_messages()
        send(engine, nodes[0], network, MessageType.BLOCK_VOTE, payload)
        assert network.in_flight() == []


class TestBlockValidation:
    """Tests for slot and leader checks."""

    def test_wrong_slot_rejected(self):
        engine, network, nodes = pos_network()
        block = slot_block(engine, 5)
        send(engine, nodes[0], network, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()})
        assert not nodes[0].has_block(block.id)

    def test_wrong_leader_rejected(self):
        engine, network, nodes = pos_network()
        leader = engine.select_leader(0)
        impostor = next(v for v in engine.validators() if v != leader)
        block = slot_block(engine, 0, producer=impostor)
        send(engine, nodes[0], network, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()})
        assert not nodes[0].has_block(block.id)

    def test_missing_parent_rejected(self):
        engine, network, nodes = pos_network()
        parent = slot_block(engine, 0)
        block = slot_block(engine, 0, parent=parent)
        send(engine, nodes[0], network, MessageType.BLOCK_PROPOSE, {"block": block.to_dict()})
        assert not nodes[0].has_block(block.id)

    def test_one_vote_per_slot(self):
        engine, network, nodes = pos_network()
        node = nodes[0]
        first = slot_block(engine, 0, timestamp=1)
        second = slot_block(engine, 0, timestamp=2)

        send(engine, node, network, MessageType.BLOCK_PROPOSE, {"block": first.to_dict()})
        send(engine, node, network, MessageType.BLOCK_PROPOSE, {"block": second.to_dict()})

        own_votes = [
            m.payload["blockId"] for m in network.in_flight()
            if m.type == MessageType.BLOCK_VOTE and m.sender == node.id
        ]
        assert set(own_votes) == {first.id}
        assert node.id not in node.consensus_state.votes[second.id]


class TestProposing:
    """Tests for slot-driven proposals."""

    def test_leader_proposes_once_per_slot(self):
        engine, network, nodes = pos_network()
        node = nodes[0]
        slot = first_slot_led_by(engine, node.id)
        now = slot * engine.slot_duration

        engine.on_tick(node, now, network)
        head = node.get_head()
        assert head.height == 1
        assert head.round == slot
        assert head.producer_id == node.id

        engine.on_tick(node, now + 100, network)
        assert node.get_head().id == head.id

    def test_non_leader_stays_quiet(self):
        engine, network, nodes = pos_network()
        node = nodes[0]
        slot = next(s for s in range(1, 1000) if engine.select_leader(s) != node.id)
        engine.on_tick(node, slot * engine.slot_duration, network)
        assert node.head_id == GENESIS_ID

    def test_observer_does_not_propose(self):
        engine, network, nodes = pos_network()
        node = nodes[0]
        engine.toggle_validator(node)
        slot = first_slot_led_by(engine, node.id)
        engine.on_tick(node, slot * engine.slot_duration, network)
        assert node.head_id == GENESIS_ID
        assert engine.get_role(node) == "Observer"


class TestStakeTable:
    """Tests for the shared stake table."""

    def test_default_stakes(self):
        engine, _, _ = pos_network()
        assert engine.get_total_stake() == 300
        assert engine.validators() == ["1", "2", "3"]

    def test_set_stake(self):
        engine, _, nodes = pos_network()
        assert engine.set_stake(nodes[0], -5) == 0
        assert engine.get_validator_stake("1") == 0

    def test_remove_node(self):
        engine, _, _ = pos_network()
        engine.remove_node("3")
        assert engine.validators() == ["1", "2"]

    def test_ui_state(self):
        engine, _, nodes = pos_network()
        ui = engine.get_ui_state(nodes[0])
        assert ui["stake"] == 100
        assert ui["quorumThreshold"] == 200 / 3
