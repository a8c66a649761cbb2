"""
DLT Sandbox Ledger

Account balances and nonces derived by replaying a chain from genesis.

The ledger is never patched incrementally on a head change: it is
recomputed from the initial balances by replaying every block on the new
chain. Replay is idempotent per block id.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Set

from dltsim.core.block import Block
from dltsim.core.transaction import Transaction

logger = logging.getLogger(__name__)


@dataclass
class Ledger:
    """Balance/nonce table for one node."""
    balances: Dict[str, int] = field(default_factory=dict)
    nonces: Dict[str, int] = field(default_factory=dict)
    applied_blocks: Set[str] = field(default_factory=set)
    initial_balances: Dict[str, int] = field(default_factory=dict)

    def copy(self) -> "Ledger":
        return Ledger(
            balances=dict(self.balances),
            nonces=dict(self.nonces),
            applied_blocks=set(self.applied_blocks),
            initial_balances=dict(self.initial_balances),
        )

    def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    def get_nonce(self, address: str) -> int:
        return self.nonces.get(address, 0)

    def set_balance(self, address: str, amount: int) -> None:
        """Set a balance and record it as the replay base."""
        self.balances[address] = amount
        self.initial_balances[address] = amount

    def apply_transaction(self, tx: Transaction) -> None:
        self.balances[tx.sender] = self.get_balance(tx.sender) - tx.amount
        self.balances[tx.to] = self.get_balance(tx.to) + tx.amount
        self.nonces[tx.sender] = self.get_nonce(tx.sender) + 1

    def apply_block(self, block: Block) -> bool:
        """
        Apply a block's transactions once.

        Returns:
            True if the block was applied, False if already applied
        """
        if block.id in self.applied_blocks:
            return False

        for tx in block.transactions:
            self.apply_transaction(tx)
        self.applied_blocks.add(block.id)
        return True

    @classmethod
    def compute_from_chain(
        cls,
        block_store: Mapping[str, Block],
        target_id: Optional[str],
        genesis_id: str,
        initial_balances: Optional[Mapping[str, int]] = None
    ) -> "Ledger":
        """
        Compute ledger state by replaying genesis -> target.

        Args:
            block_store: All known blocks by id
            target_id: Chain tip to replay up to
            genesis_id: Id at which the walk stops
            initial_balances: Externally seeded starting balances

        Returns:
            Fresh Ledger for the chain ending at target_id
        """
        ledger = cls()
        for address, balance in (initial_balances or {}).items():
            ledger.set_balance(address, balance)

        chain: List[Block] = []
        current_id = target_id
        while current_id and current_id != genesis_id:
            block = block_store.get(current_id)
            if block is None:
                logger.debug(f"Replay stopped at unknown block {current_id[:8]}")
                break
            chain.append(block)
            current_id = block.parent_id

        for block in reversed(chain):
            ledger.apply_block(block)

        return ledger
