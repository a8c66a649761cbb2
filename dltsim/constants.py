"""
DLT Sandbox Constants

All simulation defaults defined here for single source of truth.
Times are simulated milliseconds.
"""

from typing import Final, Tuple

# ==============================================================================
# IDENTITY
# ==============================================================================

HASH_HEX_LENGTH: Final[int] = 64                # SHA3-256 hex digest
SHORT_ID_LENGTH: Final[int] = 8
SIGNATURE_HEX_LENGTH: Final[int] = 16
PUBLIC_KEY_HEX_LENGTH: Final[int] = 16
PRIVATE_KEY_BYTES: Final[int] = 16
ADDRESS_PREFIX: Final[str] = "0x"
ADDRESS_KEY_CHARS: Final[int] = 8

GENESIS_ID: Final[str] = "0" * HASH_HEX_LENGTH
GENESIS_PRODUCER: Final[str] = "genesis"

# ==============================================================================
# NETWORK
# ==============================================================================

DEFAULT_MIN_DELAY_MS: Final[int] = 1000
DEFAULT_MAX_DELAY_MS: Final[int] = 2000
DEFAULT_PACKET_LOSS: Final[float] = 0.0

# ==============================================================================
# SIMULATION
# ==============================================================================

DEFAULT_TICK_INTERVAL_MS: Final[int] = 500
MIN_SPEED_MULTIPLIER: Final[float] = 0.1
MAX_SPEED_MULTIPLIER: Final[float] = 5.0
DEFAULT_WALLET_BALANCE: Final[int] = 1000

KNOWN_USERS: Final[Tuple[str, ...]] = (
    "",
    "Alice", "Bob", "Carmen", "Denis", "Emma",
    "Fatou", "Gal", "Hikari",
)

# ==============================================================================
# CONSENSUS
# ==============================================================================

CONSENSUS_TYPES: Final[Tuple[str, ...]] = ("pow", "pos", "raft", "pbft")
MAX_TX_PER_BLOCK: Final[int] = 5

# Proof of Work
POW_DEFAULT_DIFFICULTY: Final[int] = 2          # Leading hex zeros (~1/256)
POW_MIN_DIFFICULTY: Final[int] = 1
POW_MAX_DIFFICULTY: Final[int] = 4
POW_DEFAULT_CONFIRMATIONS: Final[int] = 1       # 1 = next block confirms
POW_MIN_CONFIRMATIONS: Final[int] = 1
POW_MAX_CONFIRMATIONS: Final[int] = 10
POW_MAX_HASH_POWER: Final[int] = 12             # Attempts per tick, 1..N
POW_NATIVE_NONCE_RANGE: Final[int] = 1000
POW_MINED_FLAG_MS: Final[int] = 800

# Proof of Stake
POS_SLOT_DURATION_MS: Final[int] = 4000
POS_DEFAULT_STAKE: Final[int] = 100

# Raft
RAFT_ELECTION_TIMEOUT_MIN_MS: Final[int] = 4000
RAFT_ELECTION_TIMEOUT_MAX_MS: Final[int] = 6000
RAFT_HEARTBEAT_INTERVAL_MS: Final[int] = 1500

# PBFT
PBFT_PROPOSAL_INTERVAL_MS: Final[int] = 5000
