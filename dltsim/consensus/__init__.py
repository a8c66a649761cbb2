"""
DLT Sandbox Consensus Engines

Importing this package registers every engine with `create_engine`.
"""

from dltsim.consensus.base import (
    ConsensusEngine,
    available_engines,
    create_engine,
    register_engine,
)
from dltsim.consensus.pow import PoWConsensus, PoWState
from dltsim.consensus.pos import PoSConsensus, PoSState
from dltsim.consensus.raft import RaftConsensus, RaftRole, RaftState
from dltsim.consensus.pbft import PBFTConsensus, PBFTPhase, PBFTState

__all__ = [
    # Contract
    "ConsensusEngine",
    "available_engines",
    "create_engine",
    "register_engine",
    # Engines
    "PoWConsensus",
    "PoWState",
    "PoSConsensus",
    "PoSState",
    "RaftConsensus",
    "RaftRole",
    "RaftState",
    "PBFTConsensus",
    "PBFTPhase",
    "PBFTState",
]
