"""Harvest Fee Loop - periodically harvests accrued vault fees"""

from yieldkeeper.exceptions import TransactionError
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator
from yieldkeeper.loops.base import PeriodicLoop
from yieldkeeper.strategies.adapters import VaultAdapter


class HarvestFeeLoop(PeriodicLoop):
    name = "harvest_fee"
    label = "Harvest Fee Loop"

    def __init__(self, vault: VaultAdapter, orchestrator: RebalanceOrchestrator, **kwargs):
        super().__init__(**kwargs)
        self.vault = vault
        self.orchestrator = orchestrator

    @classmethod
    def from_settings(cls, vault: VaultAdapter, orchestrator: RebalanceOrchestrator, settings) -> "HarvestFeeLoop":
        return cls(
            vault=vault,
            orchestrator=orchestrator,
            interval_seconds=settings.harvest.interval_seconds,
            check_seconds=settings.harvest.check_seconds,
        )

    async def step(self) -> None:
        batches = self.orchestrator.build_batches([(None, self.vault.build_harvest_fee())])
        signatures, error = await self.orchestrator.submit_batches(batches, 'harvest_fee')
        if error:
            raise TransactionError(f"Harvest fee failed: {error}")
