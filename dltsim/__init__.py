"""
DLT Sandbox
Consensus playground for small ledger networks

Four interchangeable engines (Proof-of-Work, Proof-of-Stake, Raft, PBFT)
running over a simulated network with random delay and packet loss.
"""

__version__ = "0.3.0"
__author__ = "DLT Sandbox"

from dltsim.constants import CONSENSUS_TYPES, GENESIS_ID

__all__ = [
    "CONSENSUS_TYPES",
    "GENESIS_ID",
    "__version__",
]
