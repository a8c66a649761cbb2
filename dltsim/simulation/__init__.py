"""
DLT Sandbox Simulation Orchestration
"""

from dltsim.simulation.config import (
    ConsensusConfig,
    LogConfig,
    NetworkConfig,
    SimulationConfig,
    setup_logging,
)
from dltsim.simulation.simulation import Simulation
from dltsim.simulation.runner import SimulationRunner

__all__ = [
    "ConsensusConfig",
    "LogConfig",
    "NetworkConfig",
    "SimulationConfig",
    "setup_logging",
    "Simulation",
    "SimulationRunner",
]
