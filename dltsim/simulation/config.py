"""
DLT Sandbox Simulation Configuration
"""

from __future__ import annotations
import json
import logging
from dataclasses import dataclass, field, asdict, fields
from typing import Any, Dict, List, Optional

from dltsim.constants import (
    CONSENSUS_TYPES,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_MIN_DELAY_MS,
    DEFAULT_PACKET_LOSS,
    DEFAULT_TICK_INTERVAL_MS,
    DEFAULT_WALLET_BALANCE,
    MAX_SPEED_MULTIPLIER,
    MIN_SPEED_MULTIPLIER,
    POW_MAX_CONFIRMATIONS,
    POW_MAX_DIFFICULTY,
    POW_MIN_CONFIRMATIONS,
    POW_MIN_DIFFICULTY,
)
from dltsim.errors import InvalidConfigError

logger = logging.getLogger(__name__)


@dataclass
class NetworkConfig:
    """Network configuration (delays at 1x speed)."""
    min_delay: float = DEFAULT_MIN_DELAY_MS
    max_delay: float = DEFAULT_MAX_DELAY_MS
    packet_loss: float = DEFAULT_PACKET_LOSS


@dataclass
class ConsensusConfig:
    """
    Consensus selection and engine tunables.

    Tunables left as None fall back to the engine defaults.
    """
    kind: str = "pow"

    # Shared
    max_tx_per_block: Optional[int] = None

    # PoW
    difficulty: Optional[int] = None
    confirmations: Optional[int] = None

    # PoS
    slot_duration: Optional[float] = None
    default_stake: Optional[int] = None
    quorum_threshold: Optional[float] = None

    # Raft
    election_timeout_min: Optional[float] = None
    election_timeout_max: Optional[float] = None
    heartbeat_interval: Optional[float] = None

    # PBFT
    proposal_interval: Optional[float] = None

    def settings(self) -> Dict[str, Any]:
        """Engine tunables that were set explicitly."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name != "kind" and getattr(self, f.name) is not None
        }


@dataclass
class LogConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    max_size_mb: int = 10
    backup_count: int = 3


@dataclass
class SimulationConfig:
    """
    Complete simulation configuration.
    """
    tick_interval: float = DEFAULT_TICK_INTERVAL_MS
    speed_multiplier: float = 1.0
    seed: Optional[int] = None
    wallet_balance: int = DEFAULT_WALLET_BALANCE

    # Sub-configurations
    network: NetworkConfig = field(default_factory=NetworkConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.tick_interval <= 0:
            errors.append(f"tick_interval must be positive: {self.tick_interval}")

        if not MIN_SPEED_MULTIPLIER <= self.speed_multiplier <= MAX_SPEED_MULTIPLIER:
            errors.append(
                f"speed_multiplier must be within {MIN_SPEED_MULTIPLIER}..{MAX_SPEED_MULTIPLIER}"
            )

        if self.wallet_balance < 0:
            errors.append("wallet_balance cannot be negative")

        # Network validation
        if self.network.min_delay < 0:
            errors.append("min_delay cannot be negative")

        if self.network.max_delay < self.network.min_delay:
            errors.append("max_delay must be >= min_delay")

        if not 0.0 <= self.network.packet_loss <= 1.0:
            errors.append(f"packet_loss must be within 0..1: {self.network.packet_loss}")

        # Consensus validation
        consensus = self.consensus
        if consensus.kind not in CONSENSUS_TYPES:
            errors.append(f"Unknown consensus type: {consensus.kind}")

        if consensus.difficulty is not None and \
                not POW_MIN_DIFFICULTY <= consensus.difficulty <= POW_MAX_DIFFICULTY:
            errors.append(f"difficulty must be within {POW_MIN_DIFFICULTY}..{POW_MAX_DIFFICULTY}")

        if consensus.confirmations is not None and \
                not POW_MIN_CONFIRMATIONS <= consensus.confirmations <= POW_MAX_CONFIRMATIONS:
            errors.append(
                f"confirmations must be within {POW_MIN_CONFIRMATIONS}..{POW_MAX_CONFIRMATIONS}"
            )

        if consensus.slot_duration is not None and consensus.slot_duration <= 0:
            errors.append("slot_duration must be positive")

        if consensus.quorum_threshold is not None and not 0 < consensus.quorum_threshold <= 1:
            errors.append("quorum_threshold must be within (0, 1]")

        if consensus.election_timeout_min is not None and consensus.election_timeout_max is not None \
                and consensus.election_timeout_max < consensus.election_timeout_min:
            errors.append("election_timeout_max must be >= election_timeout_min")

        if consensus.max_tx_per_block is not None and consensus.max_tx_per_block < 1:
            errors.append("max_tx_per_block must be at least 1")

        return errors

    def to_dict(self) -> dict:
        """Export configuration as dictionary."""
        return {
            "tick_interval": self.tick_interval,
            "speed_multiplier": self.speed_multiplier,
            "seed": self.seed,
            "wallet_balance": self.wallet_balance,
            "network": asdict(self.network),
            "consensus": asdict(self.consensus),
            "log": asdict(self.log),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SimulationConfig":
        """
        Build a configuration from a dictionary.

        Raises:
            InvalidConfigError: unknown keys or failed validation
        """
        try:
            config = cls(
                tick_interval=data.get("tick_interval", DEFAULT_TICK_INTERVAL_MS),
                speed_multiplier=data.get("speed_multiplier", 1.0),
                seed=data.get("seed"),
                wallet_balance=data.get("wallet_balance", DEFAULT_WALLET_BALANCE),
            )

            if "network" in data:
                config.network = NetworkConfig(**data["network"])

            if "consensus" in data:
                config.consensus = ConsensusConfig(**data["consensus"])

            if "log" in data:
                config.log = LogConfig(**data["log"])
        except TypeError as e:
            raise InvalidConfigError([str(e)]) from e

        errors = config.validate()
        if errors:
            raise InvalidConfigError(errors)

        return config

    def save(self, path: str) -> None:
        """Save configuration to file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: str) -> "SimulationConfig":
        """Load configuration from file."""
        with open(path, 'r') as f:
            data = json.load(f)

        config = cls.from_dict(data)
        logger.info(f"Configuration loaded from {path}")
        return config


def setup_logging(config: LogConfig) -> None:
    """Configure logging based on config."""
    level = getattr(logging, config.level.upper(), logging.INFO)

    handlers = [logging.StreamHandler()]

    if config.file:
        from logging.handlers import RotatingFileHandler
        file_handler = RotatingFileHandler(
            config.file,
            maxBytes=config.max_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format=config.format,
        handlers=handlers,
    )
