"""
Refresh Loop

Keeps strategy receipts fresh: every check, strategies holding more than
min_position_value whose position was last updated more than
interval_seconds ago get a zero-amount deposit. Instructions are batched
two per transaction.
"""

import asyncio
from datetime import datetime, timedelta, UTC
from typing import Dict, List, Optional

from yieldkeeper.allocation.models import PositionSnapshot
from yieldkeeper.exceptions import AdapterError, TransactionError
from yieldkeeper.executor.positions import PositionSource
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator
from yieldkeeper.loops.base import PeriodicLoop
from yieldkeeper.strategies.registry import StrategyDescriptor
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class RefreshLoop(PeriodicLoop):
    """
    Zero-amount deposit refresher.

    Args:
        positions: Position source (values and last update times)
        orchestrator: Provides registry, adapters, batching and submission
        stale_after_seconds: Receipt age that triggers a refresh
        min_position_value: Positions at or below this are left alone
        batch_size: Refresh instructions per transaction
        check_seconds: Wake-up period
    """

    name = "refresh"
    label = "Refresh Loop"

    def __init__(
        self,
        positions: PositionSource,
        orchestrator: RebalanceOrchestrator,
        stale_after_seconds: float = 600.0,
        min_position_value: int = 1_000_000,
        batch_size: int = 2,
        check_seconds: float = 30.0,
        **kwargs
    ):
        super().__init__(interval_seconds=check_seconds, check_seconds=check_seconds, **kwargs)
        self.positions = positions
        self.orchestrator = orchestrator
        self.stale_after_seconds = stale_after_seconds
        self.min_position_value = min_position_value
        self.batch_size = batch_size
        # Strategies without an on-chain update time fall back to our own record
        self.refreshed_at: Dict[str, datetime] = {}

    @classmethod
    def from_settings(cls, positions: PositionSource, orchestrator: RebalanceOrchestrator, settings) -> "RefreshLoop":
        refresh = settings.refresh
        return cls(
            positions=positions,
            orchestrator=orchestrator,
            stale_after_seconds=refresh.interval_seconds,
            min_position_value=refresh.min_position_value,
            batch_size=refresh.batch_size,
            check_seconds=refresh.check_seconds,
        )

    def stale_strategies(
        self,
        snapshots: List[PositionSnapshot],
        now: Optional[datetime] = None
    ) -> List[StrategyDescriptor]:
        now = now or datetime.now(UTC)
        cutoff = now - timedelta(seconds=self.stale_after_seconds)

        stale = []
        for snapshot in snapshots:
            if snapshot.is_idle or snapshot.value <= self.min_position_value:
                continue
            updated = snapshot.last_updated or self.refreshed_at.get(snapshot.strategy_id)
            if updated is not None and updated >= cutoff:
                continue
            strategy = self.orchestrator.registry.get(snapshot.strategy_id)
            if strategy is not None:
                stale.append(strategy)
        return stale

    async def step(self) -> None:
        snapshots = await asyncio.to_thread(self.positions.fetch_positions)
        stale = self.stale_strategies(snapshots)
        if not stale:
            logger.debug("No strategy needs a refresh")
            return

        items = []
        refreshed: List[StrategyDescriptor] = []
        for strategy in stale:
            adapter = self.orchestrator.adapters.find(strategy.kind)
            if adapter is None:
                logger.warning(f"Unknown strategy type '{strategy.kind_name}' for '{strategy.id}', skipping refresh")
                continue
            try:
                items.append((None, adapter.build_deposit(strategy, 0)))
            except AdapterError as e:
                logger.warning(f"Cannot build refresh for {strategy.id}, skipping: {e}")
                continue
            refreshed.append(strategy)

        if not items:
            return

        batches = self.orchestrator.build_batches(items, batch_size=self.batch_size)
        logger.info(f"Refreshing {len(items)} strategies in {len(batches)} transaction(s)")

        signatures, error = await self.orchestrator.submit_batches(batches, 'refresh')
        if error:
            raise TransactionError(f"Refresh failed after {len(signatures)} transaction(s): {error}")

        now = datetime.now(UTC)
        for strategy in refreshed:
            self.refreshed_at[strategy.id] = now
