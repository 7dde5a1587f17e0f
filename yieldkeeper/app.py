"""
YieldKeeper main process

Wires every long-lived component and owns graceful shutdown:

- WorkerSupervisor: rebalance loop in its own process (memory ceiling)
- LoopSupervisor: refresh / harvest fee / claim reward / RPC health loops
- Health server: uvicorn in a daemon thread (/health, /metrics, trigger)

Shutdown (SIGINT/SIGTERM):
    cancel token -> stop worker (bounded) -> await loops (grace)
    a safety timer exits the process unconditionally if that hangs
"""

import asyncio
import os
import signal
import threading
from typing import List, Optional, Tuple

import uvicorn

from yieldkeeper.allocation.engine import AllocationEngine
from yieldkeeper.allocation.models import AllocationVector, Policy, RebalanceOperation
from yieldkeeper.allocation.yield_resolver import YieldResolver
from yieldkeeper.config import RebalancerSettings
from yieldkeeper.executor.connection import ConnectionManager, destroy_connection_manager, get_connection_manager
from yieldkeeper.executor.positions import RpcPositionSource
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator, plan_operations
from yieldkeeper.executor.transaction import TransactionSender, load_signer
from yieldkeeper.loops import ClaimRewardLoop, HarvestFeeLoop, RefreshLoop
from yieldkeeper.monitor import HealthChecker, create_app
from yieldkeeper.processes.supervisor import LoopSupervisor, WorkerSupervisor
from yieldkeeper.strategies.adapters import AdapterRegistry, VaultAdapter
from yieldkeeper.strategies.registry import StrategyRegistry, get_strategy_registry
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


def plan_once(
    settings: RebalancerSettings,
    connection: ConnectionManager,
    registry: StrategyRegistry,
    policy: Optional[Policy] = None
) -> Tuple[AllocationVector, AllocationVector, List[RebalanceOperation]]:
    """
    Observe, compute the target and plan operations without submitting.

    Returns:
        (current, target, operations)
    """
    positions = RpcPositionSource.from_settings(connection, registry, settings)
    engine = AllocationEngine(YieldResolver.from_settings(registry, settings))

    snapshots = positions.fetch_positions()
    constraints = positions.fetch_liquidity()
    current = AllocationVector.from_snapshots(snapshots)
    target = engine.compute_target(snapshots, constraints, policy or Policy(settings.rebalance.policy))
    return current, target, plan_operations(current, target)


class YieldKeeperApp:
    """
    Main-process runtime.

    Args:
        settings: Typed settings
        config_path: Config file handed to the rebalance worker
    """

    def __init__(self, settings: RebalancerSettings, config_path: str):
        self.settings = settings
        self.config_path = config_path
        self.token = CancellationToken()

        self.connection = get_connection_manager(settings)
        self.registry = get_strategy_registry(settings.strategies_file, settings.vault.asset_symbol)

        signer = load_signer(settings)
        sender = None if settings.dry_run else TransactionSender.from_settings(self.connection, signer, settings)
        self.orchestrator = RebalanceOrchestrator(
            registry=self.registry,
            adapters=AdapterRegistry(settings.vault.address, signer.public_key),
            sender=sender,
            vault_lookup_table=settings.vault.lookup_table,
            dry_run=settings.dry_run,
        )
        self.vault = VaultAdapter(settings.vault.address, signer.public_key)
        self.positions = RpcPositionSource.from_settings(self.connection, self.registry, settings)

        self.loops = LoopSupervisor()
        self.worker: Optional[WorkerSupervisor] = None
        if settings.rebalance.enabled:
            self.worker = WorkerSupervisor.from_settings(config_path, settings)

        self.health = HealthChecker(self.token, self.worker, self.connection, self.loops)
        self.server: Optional[uvicorn.Server] = None
        self._server_thread: Optional[threading.Thread] = None

        logger.info(
            f"YieldKeeper initialized: dry_run={settings.dry_run}, strategies={len(self.registry)}, "
            f"rebalance={settings.rebalance.enabled}, refresh={settings.refresh.enabled}, "
            f"harvest={settings.harvest.enabled}, rewards={settings.rewards.enabled}"
        )

    # =========================================================================
    # SHUTDOWN
    # =========================================================================

    def request_shutdown(self, reason: str = "signal") -> None:
        if self.token.cancelled:
            return
        logger.info(f"Shutdown requested ({reason})")
        self.token.cancel(reason)

        timeout = self.settings.shutdown.safety_timeout_seconds
        timer = threading.Timer(timeout, self._force_exit, args=(timeout,))
        timer.daemon = True
        timer.start()

    @staticmethod
    def _force_exit(timeout: float) -> None:
        logger.error(f"Graceful shutdown did not finish within {timeout:.0f}s, exiting")
        os._exit(1)

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_shutdown, signal.Signals(signum).name)

    # =========================================================================
    # COMPONENTS
    # =========================================================================

    def start_health_server(self) -> None:
        app = create_app(self.health, self.worker)
        config = uvicorn.Config(
            app,
            host=self.settings.health.host,
            port=self.settings.health.port,
            log_level='warning',
        )
        self.server = uvicorn.Server(config)
        self._server_thread = threading.Thread(target=self.server.run, name='health-server', daemon=True)
        self._server_thread.start()
        logger.info(f"Health server listening on {self.settings.health.host}:{self.settings.health.port}")

    async def rpc_health_loop(self, token: CancellationToken) -> None:
        interval = self.settings.rpc.health_check_seconds
        while await token.sleep(interval):
            await asyncio.to_thread(self.connection.health_check)

    def spawn_loops(self) -> None:
        settings = self.settings
        self.loops.spawn('rpc_health', self.rpc_health_loop, self.token)

        if settings.refresh.enabled:
            refresh = RefreshLoop.from_settings(self.positions, self.orchestrator, settings)
            self.loops.spawn('refresh', refresh.run, self.token)
        if settings.harvest.enabled:
            harvest = HarvestFeeLoop.from_settings(self.vault, self.orchestrator, settings)
            self.loops.spawn('harvest_fee', harvest.run, self.token)
        if settings.rewards.enabled:
            rewards = ClaimRewardLoop.from_settings(self.orchestrator, settings)
            self.loops.spawn('claim_reward', rewards.run, self.token)

    # =========================================================================
    # MAIN
    # =========================================================================

    async def run_async(self) -> None:
        self._install_signal_handlers()
        self.start_health_server()
        self.spawn_loops()

        worker_task = None
        if self.worker is not None:
            worker_task = asyncio.create_task(self.worker.run(self.token), name='rebalance-worker')
        else:
            logger.info("Rebalance loop disabled")

        await self.token.wait()

        shutdown = self.settings.shutdown
        if self.worker is not None:
            await self.worker.stop(self.worker.shutdown_timeout_seconds)
        if not await self.loops.wait(shutdown.grace_seconds):
            logger.warning("Some loops had to be cancelled during shutdown")
        if worker_task is not None:
            await asyncio.gather(worker_task, return_exceptions=True)

        if self.server is not None:
            self.server.should_exit = True
        destroy_connection_manager()
        logger.info("YieldKeeper stopped")

    def run(self) -> None:
        asyncio.run(self.run_async())
