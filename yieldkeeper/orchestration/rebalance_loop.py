"""
One rebalance cycle: observe -> compute target -> execute.

Blocking reads (RPC balances, yield API) run in worker threads so the event
loop keeps serving triggers and the deposit watcher.
"""

import asyncio
from typing import Optional

from yieldkeeper.allocation.engine import AllocationEngine
from yieldkeeper.allocation.models import AllocationVector, Policy
from yieldkeeper.allocation.yield_resolver import YieldResolver
from yieldkeeper.exceptions import RebalanceError
from yieldkeeper.executor.connection import ConnectionManager
from yieldkeeper.executor.positions import PositionSource, RpcPositionSource
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator, RebalanceOutcome
from yieldkeeper.executor.transaction import TransactionSender, load_signer
from yieldkeeper.strategies.adapters import AdapterRegistry
from yieldkeeper.strategies.registry import StrategyRegistry
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class RebalanceCycle:
    """
    Callable handed to the TriggerScheduler.

    Args:
        positions: Position source
        engine: Allocation engine
        orchestrator: Rebalance orchestrator
        policy: Allocation policy
    """

    def __init__(
        self,
        positions: PositionSource,
        engine: AllocationEngine,
        orchestrator: RebalanceOrchestrator,
        policy: Policy = Policy.YIELD
    ):
        self.positions = positions
        self.engine = engine
        self.orchestrator = orchestrator
        self.policy = policy
        self.last_outcome: Optional[RebalanceOutcome] = None
        self.last_target: Optional[AllocationVector] = None

    @classmethod
    def from_settings(
        cls,
        settings,
        connection: ConnectionManager,
        registry: StrategyRegistry
    ) -> "RebalanceCycle":
        """Wire the full rebalance stack from typed settings"""
        signer = load_signer(settings)
        sender = None if settings.dry_run else TransactionSender.from_settings(connection, signer, settings)
        orchestrator = RebalanceOrchestrator(
            registry=registry,
            adapters=AdapterRegistry(settings.vault.address, signer.public_key),
            sender=sender,
            batch_size=settings.rebalance.batch_size,
            vault_lookup_table=settings.vault.lookup_table,
            dry_run=settings.dry_run,
        )
        return cls(
            positions=RpcPositionSource.from_settings(connection, registry, settings),
            engine=AllocationEngine(YieldResolver.from_settings(registry, settings)),
            orchestrator=orchestrator,
            policy=Policy(settings.rebalance.policy),
        )

    async def __call__(self, trigger: str) -> RebalanceOutcome:
        """
        Run one cycle.

        Raises:
            RebalanceError: The outcome is 'failed'
            TransportError: Positions could not be read
        """
        snapshots = await asyncio.to_thread(self.positions.fetch_positions)
        constraints = await asyncio.to_thread(self.positions.fetch_liquidity)
        current = AllocationVector.from_snapshots(snapshots)

        target = await asyncio.to_thread(self.engine.compute_target, snapshots, constraints, self.policy)
        self.last_target = target

        reason = f", fallback={target.fallback_reason.value}" if target.fallback_reason else ""
        logger.info(
            f"Target computed (trigger={trigger}, policy={target.policy.value}{reason}): "
            f"current={current.as_dict()} target={target.as_dict()}"
        )

        outcome = await self.orchestrator.execute(current, target)
        self.last_outcome = outcome

        if outcome.status == 'failed':
            raise RebalanceError(
                f"Rebalance failed after {len(outcome.signatures)} confirmed batch(es): {outcome.error}"
            )

        logger.info(
            f"Rebalance {outcome.status}: {len(outcome.operations)} operation(s), "
            f"{len(outcome.skipped)} skipped, {len(outcome.signatures)} transaction(s)"
        )
        return outcome
