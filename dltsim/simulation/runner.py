"""
DLT Sandbox Runner

Periodic tick scheduler on asyncio, plus the `dltsim-run` headless
scenario command.
"""

from __future__ import annotations
import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from dltsim.constants import CONSENSUS_TYPES
from dltsim.errors import InvalidConfigError, SimulatorError
from dltsim.simulation.config import SimulationConfig, setup_logging
from dltsim.simulation.simulation import Simulation

logger = logging.getLogger(__name__)


class SimulationRunner:
    """
    Drives `Simulation.tick()` from an asyncio task.

    The tick interval is re-read on every iteration, so speed changes take
    effect on the next tick.
    """

    def __init__(self, simulation: Simulation):
        self.simulation = simulation
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start ticking. No-op if already running."""
        if self.running:
            return

        self.simulation.running = True
        self._task = asyncio.create_task(self._tick_loop())
        logger.info(f"Simulation started ({self.simulation.get_tick_interval()} ms ticks)")

    async def pause(self) -> None:
        """Stop ticking and wait for the loop to exit."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass

        self._task = None
        self.simulation.running = False
        logger.info(f"Simulation paused at {self.simulation.now:.0f} ms")

    async def toggle(self) -> bool:
        if self.running:
            await self.pause()
        else:
            await self.start()
        return self.running

    async def run_for(self, seconds: float) -> int:
        """
        Run for a wall-clock duration.

        Returns:
            Number of ticks executed
        """
        ticks_before = self.simulation.tick_count
        await self.start()
        try:
            await asyncio.sleep(seconds)
        finally:
            await self.pause()
        return self.simulation.tick_count - ticks_before

    async def _tick_loop(self) -> None:
        while True:
            self.simulation.tick()
            await asyncio.sleep(self.simulation.get_tick_interval() / 1000)


# ==============================================================================
# COMMAND LINE
# ==============================================================================

def build_scenario(
    simulation: Simulation,
    node_count: int,
    wallet_count: int
) -> None:
    """Fully meshed nodes with wallets attached round-robin."""
    for i in range(node_count):
        simulation.add_node(x=100 + 120 * i, y=300)
    simulation.connect_all()

    node_ids = sorted(simulation.nodes, key=int)
    for i in range(wallet_count):
        wallet = simulation.add_wallet(x=100 + 120 * i, y=100)
        if node_ids:
            simulation.connect_wallet_to_node(wallet.id, node_ids[i % len(node_ids)])


def summarize(simulation: Simulation) -> dict:
    heads = {node.head_id for node in simulation.nodes.values()}
    return {
        "consensus": simulation.consensus_type,
        "now": simulation.now,
        "ticks": simulation.tick_count,
        "nodes": len(simulation.nodes),
        "converged": len(heads) == 1,
        "heights": {n.id: n.get_head().height for n in simulation.nodes.values()},
        "finalized": {n.id: n.get_finalized().height for n in simulation.nodes.values()},
        "network": simulation.network.get_statistics(),
    }


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dltsim-run",
        description="Run a headless DLT Sandbox scenario",
    )
    parser.add_argument("--config", "-c", type=str, help="Path to JSON config file")
    parser.add_argument("--consensus", choices=CONSENSUS_TYPES, help="Consensus engine")
    parser.add_argument("--nodes", "-n", type=int, default=4, help="Number of nodes")
    parser.add_argument("--wallets", "-w", type=int, default=2, help="Number of wallets")
    parser.add_argument("--ticks", "-t", type=int, default=200, help="Ticks to simulate")
    parser.add_argument("--transactions", type=int, default=1, help="Transactions to submit")
    parser.add_argument("--packet-loss", type=float, help="Packet loss rate (0..1)")
    parser.add_argument("--seed", type=int, help="Random seed")
    parser.add_argument("--realtime", action="store_true", help="Tick on the wall clock")
    parser.add_argument("--log-level", type=str, help="Log level")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = create_parser().parse_args(argv)

    try:
        config = SimulationConfig.load(args.config) if args.config else SimulationConfig()

        if args.consensus:
            config.consensus.kind = args.consensus
        if args.packet_loss is not None:
            config.network.packet_loss = args.packet_loss
        if args.seed is not None:
            config.seed = args.seed
        if args.log_level:
            config.log.level = args.log_level

        errors = config.validate()
        if errors:
            raise InvalidConfigError(errors)

        setup_logging(config.log)

        simulation = Simulation(config)
    except (OSError, ValueError, SimulatorError) as e:
        logger.error(f"Cannot start simulation: {e}")
        return 2

    build_scenario(simulation, args.nodes, args.wallets)

    wallets = list(simulation.wallets.values())
    if len(wallets) >= 2:
        for i in range(args.transactions):
            sender = wallets[i % len(wallets)]
            receiver = wallets[(i + 1) % len(wallets)]
            simulation.send_transaction(sender.id, receiver.address, 10)

    if args.realtime:
        runner = SimulationRunner(simulation)
        seconds = args.ticks * simulation.get_tick_interval() / 1000
        asyncio.run(runner.run_for(seconds))
    else:
        simulation.run_ticks(args.ticks)

    summary = summarize(simulation)
    logger.info(
        f"{summary['consensus']}: {summary['ticks']} ticks, converged={summary['converged']}, "
        f"heights={summary['heights']}, finalized={summary['finalized']}"
    )
    logger.info(f"Network: {summary['network']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
