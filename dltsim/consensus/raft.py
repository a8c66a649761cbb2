"""
DLT Sandbox Raft

Leader election with term-based voting, block replication through
append-entries and majority-commit finality.

Each block is one log entry: the log index is the block height and the
entry term is the block round.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, TYPE_CHECKING

from dltsim.constants import (
    MAX_TX_PER_BLOCK,
    RAFT_ELECTION_TIMEOUT_MAX_MS,
    RAFT_ELECTION_TIMEOUT_MIN_MS,
    RAFT_HEARTBEAT_INTERVAL_MS,
)
from dltsim.consensus.base import ConsensusEngine, register_engine
from dltsim.core.block import Block
from dltsim.network.message import Message, MessageType

if TYPE_CHECKING:
    from dltsim.core.node import Node
    from dltsim.core.transaction import Transaction
    from dltsim.network.network import Network

logger = logging.getLogger(__name__)


class RaftRole(str, Enum):
    FOLLOWER = "Follower"
    CANDIDATE = "Candidate"
    LEADER = "Leader"


@dataclass
class RaftState:
    """Per-node Raft state."""
    role: RaftRole = RaftRole.FOLLOWER
    term: int = 0
    voted_for: Optional[str] = None
    leader_id: Optional[str] = None

    # Election timing
    election_timeout: float = RAFT_ELECTION_TIMEOUT_MIN_MS
    last_heartbeat: float = 0.0

    # Leader only
    heartbeat_enabled: bool = True
    last_heartbeat_sent: float = 0.0
    next_index: Dict[str, int] = field(default_factory=dict)
    match_index: Dict[str, int] = field(default_factory=dict)

    # Candidate only
    votes_received: Set[str] = field(default_factory=set)

    commit_index: int = 0
    last_applied: int = 0


@register_engine("raft")
class RaftConsensus(ConsensusEngine):
    """Raft engine."""

    name = "raft"
    state_class = RaftState

    def __init__(self):
        self.election_timeout_min = RAFT_ELECTION_TIMEOUT_MIN_MS
        self.election_timeout_max = RAFT_ELECTION_TIMEOUT_MAX_MS
        self.heartbeat_interval = RAFT_HEARTBEAT_INTERVAL_MS
        self.max_tx_per_block = MAX_TX_PER_BLOCK

    def init(
        self,
        node: "Node",
        network: "Network",
        settings: Optional[Mapping[str, Any]] = None
    ) -> None:
        self.election_timeout_min = self.setting(settings, "election_timeout_min", self.election_timeout_min)
        self.election_timeout_max = self.setting(settings, "election_timeout_max", self.election_timeout_max)
        self.heartbeat_interval = self.setting(settings, "heartbeat_interval", self.heartbeat_interval)
        self.max_tx_per_block = self.setting(settings, "max_tx_per_block", self.max_tx_per_block)

        state = RaftState(
            election_timeout=self.random_election_timeout(network),
            last_heartbeat=network.now,
        )
        self.attach(node, state)

    def random_election_timeout(self, network: "Network") -> float:
        return network.rng.uniform(self.election_timeout_min, self.election_timeout_max)

    @staticmethod
    def majority(network: "Network") -> int:
        return len(network.nodes) // 2 + 1

    def _observe_term(self, node: "Node", term: int) -> bool:
        """
        Step down on a higher term.

        Returns:
            True if the term advanced
        """
        state = self.state_of(node)
        if term <= state.term:
            return False

        if state.role == RaftRole.LEADER:
            logger.info(f"{node.name}: stepping down, saw term {term} > {state.term}")
        state.term = term
        state.role = RaftRole.FOLLOWER
        state.voted_for = None
        state.leader_id = None
        state.votes_received = set()
        return True

    # =========================================================================
    # Transactions
    # =========================================================================

    def on_tx(self, node: "Node", tx: "Transaction", network: "Network") -> None:
        state = self.state_of(node)
        if not node.add_to_mempool(tx):
            return

        if state.role != RaftRole.LEADER and state.leader_id and state.leader_id != node.id:
            network.send(node.id, state.leader_id, MessageType.TX_GOSSIP, {"tx": tx.to_dict()})

        self.gossip_tx(node, tx, network)

    def on_message(self, node: "Node", msg: Message, network: "Network") -> None:
        handler = {
            MessageType.TX_GOSSIP: self._handle_tx_gossip,
            MessageType.RAFT_REQUEST_VOTE: self._handle_request_vote,
            MessageType.RAFT_VOTE: self._handle_vote,
            MessageType.RAFT_APPEND_ENTRIES: self._handle_append_entries,
            MessageType.RAFT_APPEND_ACK: self._handle_append_ack,
            MessageType.RAFT_HEARTBEAT: self._handle_heartbeat,
        }.get(msg.type)
        if handler:
            handler(node, msg, network)

    def _handle_tx_gossip(self, node: "Node", msg: Message, network: "Network") -> None:
        self.handle_tx_gossip(node, msg, network, regossip=False)

    # =========================================================================
    # Election
    # =========================================================================

    def start_election(self, node: "Node", network: "Network") -> None:
        state = self.state_of(node)
        state.term += 1
        state.role = RaftRole.CANDIDATE
        state.voted_for = node.id
        state.leader_id = None
        state.votes_received = {node.id}
        state.last_heartbeat = network.now
        state.election_timeout = self.random_election_timeout(network)

        logger.info(f"{node.name}: starting election for term {state.term}")

        if len(state.votes_received) >= self.majority(network):
            self._become_leader(node, network)
            return

        head = node.get_head()
        network.broadcast(node.id, MessageType.RAFT_REQUEST_VOTE, {
            "term": state.term,
            "candidateId": node.id,
            "lastLogIndex": head.height,
            "lastLogTerm": head.round,
        })

    def _handle_request_vote(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        payload = msg.payload
        term = payload["term"]
        candidate_id = payload["candidateId"]

        self._observe_term(node, term)

        head = node.get_head()
        candidate_log = (payload["lastLogTerm"], payload["lastLogIndex"])
        our_log = (head.round, head.height)

        vote_granted = (
            term == state.term
            and state.voted_for in (None, candidate_id)
            and candidate_log >= our_log
        )

        if vote_granted:
            state.voted_for = candidate_id
            state.last_heartbeat = network.now
            logger.info(f"{node.name}: voted for {candidate_id} in term {term}")
        else:
            logger.debug(f"{node.name}: refused vote to {candidate_id} in term {term}")

        network.send(node.id, candidate_id, MessageType.RAFT_VOTE, {
            "term": state.term,
            "voteGranted": vote_granted,
            "voterId": node.id,
        })

    def _handle_vote(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        payload = msg.payload

        if self._observe_term(node, payload["term"]):
            return
        if state.role != RaftRole.CANDIDATE or payload["term"] != state.term:
            return
        if not payload["voteGranted"]:
            return

        state.votes_received.add(payload["voterId"])
        logger.debug(
            f"{node.name}: vote from {payload['voterId']} ({len(state.votes_received)} total)"
        )

        if len(state.votes_received) >= self.majority(network):
            self._become_leader(node, network)

    def _become_leader(self, node: "Node", network: "Network") -> None:
        state = self.state_of(node)
        state.role = RaftRole.LEADER
        state.leader_id = node.id

        logger.info(f"{node.name}: became leader for term {state.term}")

        last_index = node.get_head().height
        state.next_index = {}
        state.match_index = {}
        for node_id in network.node_ids():
            if node_id != node.id:
                state.next_index[node_id] = last_index + 1
                state.match_index[node_id] = 0

        self.send_heartbeat(node, network)

    # =========================================================================
    # Heartbeats
    # =========================================================================

    def send_heartbeat(self, node: "Node", network: "Network") -> None:
        state = self.state_of(node)
        head = node.get_head()
        network.broadcast(node.id, MessageType.RAFT_HEARTBEAT, {
            "term": state.term,
            "leaderId": node.id,
            "prevLogIndex": head.height,
            "prevLogTerm": head.round,
            "leaderCommit": state.commit_index,
        })
        state.last_heartbeat_sent = network.now

    def _handle_heartbeat(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        payload = msg.payload
        term = payload["term"]

        if term < state.term:
            return

        self._observe_term(node, term)
        self._follow(node, payload["leaderId"], network)

        # Only a prefix known to match the leader's log may be committed
        leader_commit = payload["leaderCommit"]
        if leader_commit > state.commit_index:
            prev_index = payload["prevLogIndex"]
            if self.log_matches(node, prev_index, payload["prevLogTerm"]):
                state.commit_index = max(state.commit_index, min(leader_commit, prev_index))
                self.apply_committed(node)

    def _follow(self, node: "Node", leader_id: str, network: "Network") -> None:
        state = self.state_of(node)
        state.leader_id = leader_id
        state.last_heartbeat = network.now
        if state.role != RaftRole.FOLLOWER:
            state.role = RaftRole.FOLLOWER
            state.votes_received = set()

    @staticmethod
    def log_matches(node: "Node", index: int, term: int) -> bool:
        """True if the head chain holds an entry at `index` written in `term`."""
        block = node.block_at_height(index)
        return block is not None and block.round == term

    # =========================================================================
    # Replication
    # =========================================================================

    def replicate_entries(self, node: "Node", now: float, network: "Network") -> Optional[Block]:
        """Package pending transactions into one block and send it to every node."""
        state = self.state_of(node)
        pending = node.get_pending_txs(self.max_tx_per_block)
        if not pending:
            return None

        head = node.get_head()
        block = Block.create(
            parent_id=head.id,
            height=head.height + 1,
            producer_id=node.id,
            timestamp=int(now),
            round=state.term,
            transactions=pending,
            proof={"type": "raft", "term": state.term},
        )

        node.append_block(block)
        node.set_head(block.id)

        logger.info(
            f"{node.name}: created block {block.short_id()} at height {block.height} "
            f"in term {state.term}"
        )

        for node_id in network.node_ids():
            if node_id != node.id:
                self._send_append_entries(node, node_id, network)

        return block

    def _send_append_entries(
        self,
        node: "Node",
        follower_id: str,
        network: "Network",
        optimistic: bool = True
    ) -> None:
        """
        Send every head-chain entry from next_index[follower] upward.

        With `optimistic`, next_index moves past the head right away; a
        failed ack moves it back.
        """
        state = self.state_of(node)
        head = node.get_head()
        next_index = max(1, min(state.next_index.get(follower_id, head.height), head.height))

        entries = [block for block in node.get_chain(head.id) if block.height >= next_index]
        prev = node.block_at_height(next_index - 1)

        network.send(node.id, follower_id, MessageType.RAFT_APPEND_ENTRIES, {
            "term": state.term,
            "leaderId": node.id,
            "prevLogIndex": prev.height if prev else 0,
            "prevLogTerm": prev.round if prev else 0,
            "entries": [block.to_dict() for block in entries],
            "leaderCommit": state.commit_index,
        })

        if optimistic:
            state.next_index[follower_id] = head.height + 1

    def _handle_append_entries(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        payload = msg.payload
        term = payload["term"]
        leader_id = payload["leaderId"]

        self._observe_term(node, term)

        if term < state.term:
            network.send(node.id, leader_id, MessageType.RAFT_APPEND_ACK, {
                "term": state.term,
                "success": False,
                "matchIndex": node.get_head().height,
                "followerId": node.id,
            })
            return

        self._follow(node, leader_id, network)

        last_match = payload["prevLogIndex"]
        success = bool(payload["entries"]) or self.log_matches(
            node, last_match, payload["prevLogTerm"]
        )

        for entry in payload["entries"]:
            block = Block.from_dict(entry)
            if not (node.has_block(block.parent_id) or node.has_block(block.id)):
                success = False
                break
            node.append_block(block)
            node.set_head(block.id)
            node.remove_from_mempool(block.tx_ids)
            last_match = block.height

        if not success:
            last_match = node.get_head().height

        leader_commit = payload["leaderCommit"]
        if success and leader_commit > state.commit_index:
            state.commit_index = min(leader_commit, last_match)
            self.apply_committed(node)

        network.send(node.id, leader_id, MessageType.RAFT_APPEND_ACK, {
            "term": state.term,
            "success": success,
            "matchIndex": last_match,
            "followerId": node.id,
        })

    def _handle_append_ack(self, node: "Node", msg: Message, network: "Network") -> None:
        state = self.state_of(node)
        payload = msg.payload

        if self._observe_term(node, payload["term"]):
            return
        if state.role != RaftRole.LEADER or payload["term"] != state.term:
            return

        follower_id = payload["followerId"]
        if payload["success"]:
            match = max(state.match_index.get(follower_id, 0), payload["matchIndex"])
            state.match_index[follower_id] = match
            state.next_index[follower_id] = max(state.next_index.get(follower_id, 1), match + 1)
            self.update_commit_index(node, network)
            return

        # Back off toward the follower's head and resend what it lacks
        current = state.next_index.get(follower_id, 1)
        state.next_index[follower_id] = max(1, min(current - 1, payload["matchIndex"] + 1))
        logger.debug(
            f"{node.name}: append rejected by {follower_id}, retrying from "
            f"index {state.next_index[follower_id]}"
        )
        self._send_append_entries(node, follower_id, network, optimistic=False)

    def update_commit_index(self, node: "Node", network: "Network") -> None:
        """Commit the highest own-term height replicated on a majority."""
        state = self.state_of(node)
        majority = self.majority(network)
        head = node.get_head()

        for height in range(head.height, state.commit_index, -1):
            block = node.block_at_height(height)
            if block is None or block.round != state.term:
                continue

            replicated = 1 + sum(
                1 for match in state.match_index.values() if match >= height
            )
            if replicated >= majority:
                state.commit_index = height
                logger.info(f"{node.name}: committed index {height}")
                self.apply_committed(node)
                break

    def apply_committed(self, node: "Node") -> None:
        """Finalize the head-chain block at or below commit_index."""
        state = self.state_of(node)
        block = node.get_head()
        while block is not None and block.height > state.commit_index:
            block = node.get_block(block.parent_id)

        if block is None or block.height <= node.get_finalized().height:
            return

        node.set_finalized(block.id)
        state.last_applied = block.height

    # =========================================================================
    # Tick
    # =========================================================================

    def on_tick(self, node: "Node", now: float, network: "Network") -> None:
        state = self.state_of(node)

        if state.role in (RaftRole.FOLLOWER, RaftRole.CANDIDATE):
            if now - state.last_heartbeat > state.election_timeout:
                self.start_election(node, network)
            return

        if state.heartbeat_enabled and now - state.last_heartbeat_sent > self.heartbeat_interval:
            self.send_heartbeat(node, network)

        if node.mempool:
            self.replicate_entries(node, now, network)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_role(self, node: "Node") -> str:
        return self.state_of(node).role.value

    def is_finalized(self, node: "Node", block_id: str) -> bool:
        block = node.get_block(block_id)
        if block is None:
            return False
        return block.height <= self.state_of(node).commit_index \
            and node.is_ancestor(block_id, node.head_id)

    def get_ui_state(self, node: "Node") -> Dict[str, Any]:
        state = self.state_of(node)
        return {
            "role": state.role.value,
            "term": state.term,
            "leaderId": state.leader_id,
            "commitIndex": state.commit_index,
            "votedFor": state.voted_for,
            "heartbeatEnabled": state.heartbeat_enabled,
            "votesReceived": len(state.votes_received),
        }

    def leaders(self, nodes: List["Node"]) -> List["Node"]:
        """Nodes that currently believe they are leader."""
        return [n for n in nodes if self.state_of(n).role == RaftRole.LEADER]

    # =========================================================================
    # UI actions
    # =========================================================================

    def trigger_election(self, node: "Node", network: "Network") -> None:
        self.start_election(node, network)

    def toggle_heartbeat(self, node: "Node") -> bool:
        state = self.state_of(node)
        state.heartbeat_enabled = not state.heartbeat_enabled
        return state.heartbeat_enabled
