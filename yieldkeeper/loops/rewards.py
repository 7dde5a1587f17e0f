"""
Claim Reward Loop

Claims farming rewards for every strategy whose adapter supports it, one
transaction per strategy. A failed claim does not stop the others; the
iteration is reported as failed once all strategies were tried.
"""

from typing import List

from yieldkeeper.exceptions import AdapterError, TransactionError
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator
from yieldkeeper.loops.base import PeriodicLoop
from yieldkeeper.strategies.registry import StrategyDescriptor
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class ClaimRewardLoop(PeriodicLoop):
    name = "claim_reward"
    label = "Claim Reward Loop"

    def __init__(self, orchestrator: RebalanceOrchestrator, **kwargs):
        super().__init__(**kwargs)
        self.orchestrator = orchestrator

    @classmethod
    def from_settings(cls, orchestrator: RebalanceOrchestrator, settings) -> "ClaimRewardLoop":
        return cls(
            orchestrator=orchestrator,
            interval_seconds=settings.rewards.interval_seconds,
            check_seconds=settings.rewards.check_seconds,
        )

    def claimable(self) -> List[StrategyDescriptor]:
        strategies = []
        for strategy in self.orchestrator.registry:
            adapter = self.orchestrator.adapters.find(strategy.kind)
            if adapter is not None and adapter.supports_rewards:
                strategies.append(strategy)
        return strategies

    async def step(self) -> None:
        failures = []
        for strategy in self.claimable():
            adapter = self.orchestrator.adapters.get(strategy.kind)
            try:
                result = adapter.build_claim_reward(strategy)
            except AdapterError as e:
                logger.warning(f"Cannot build reward claim for {strategy.id}, skipping: {e}")
                continue

            batches = self.orchestrator.build_batches([(None, result)])
            _, error = await self.orchestrator.submit_batches(batches, 'claim_reward')
            if error:
                failures.append(f"{strategy.id}: {error}")

        if failures:
            raise TransactionError(f"Reward claims failed: {'; '.join(failures)}")

    async def run(self, token: CancellationToken) -> None:
        if not self.claimable():
            logger.info(f"[{self.label}] No reward-bearing strategies in registry, skipping loop")
            return
        await super().run(token)
