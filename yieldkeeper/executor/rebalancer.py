"""
Rebalance Orchestrator

Turns (current, target) allocation vectors into ordered withdraw/deposit
operations, translates them through the strategy adapters and submits the
resulting transaction batches one after another.

Ordering:
    every withdrawal is submitted before the first deposit

Failure semantics:
    a failed batch ends the cycle as 'failed'; batches already confirmed
    stay applied and the next cycle recomputes from fresh state
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from yieldkeeper.allocation.models import (
    MAX_WITHDRAW,
    AllocationVector,
    OperationKind,
    RebalanceOperation,
)
from yieldkeeper.exceptions import AdapterError, TransactionError, UnknownStrategyKindError
from yieldkeeper.executor.transaction import TransactionSender
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.strategies.adapters import AdapterRegistry, AdapterResult, Instruction
from yieldkeeper.strategies.registry import StrategyRegistry
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# DATA
# =============================================================================

@dataclass
class TransactionBatch:
    """Instructions submitted together in one transaction"""
    instructions: List[Instruction] = field(default_factory=list)
    lookup_tables: List[str] = field(default_factory=list)
    operations: List[RebalanceOperation] = field(default_factory=list)

    def add(self, result: AdapterResult, operation: Optional[RebalanceOperation] = None) -> None:
        self.instructions.extend(result.instructions)
        for table in result.lookup_tables:
            if table not in self.lookup_tables:
                self.lookup_tables.append(table)
        if operation is not None:
            self.operations.append(operation)

    def describe(self) -> str:
        if not self.operations:
            return f"{len(self.instructions)} instruction(s)"
        return ", ".join(f"{op.kind.value} {op.strategy_id} {op.amount}" for op in self.operations)


@dataclass
class RebalanceOutcome:
    """Terminal state of one rebalance cycle"""
    status: str  # 'success' | 'failed' | 'noop'
    operations: List[RebalanceOperation] = field(default_factory=list)
    skipped: List[Tuple[RebalanceOperation, str]] = field(default_factory=list)
    signatures: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != 'failed'


# =============================================================================
# PLANNING
# =============================================================================

def plan_operations(prev: AllocationVector, target: AllocationVector) -> List[RebalanceOperation]:
    """
    Derive the ordered operation list for one cycle.

    - withdrawals first (vector order), then deposits (vector order)
    - target 0 with a non-zero position withdraws MAX_WITHDRAW
    - each deposit is reduced by the number of withdrawals issued;
      deposits that drop to <= 0 are not emitted
    - idle is never an operation target

    Raises:
        ValueError: If the vectors do not cover the same strategies
    """
    prev_entries = prev.strategy_entries()
    target_values = {e.strategy_id: e.value for e in target.strategy_entries()}

    if set(target_values) != {e.strategy_id for e in prev_entries}:
        raise ValueError("Current and target allocation cover different strategies")

    withdrawals: List[RebalanceOperation] = []
    deposits: List[Tuple[str, int, str]] = []

    for entry in prev_entries:
        delta = target_values[entry.strategy_id] - entry.value
        if delta < 0:
            amount = MAX_WITHDRAW if target_values[entry.strategy_id] == 0 else -delta
            withdrawals.append(RebalanceOperation(
                entry.strategy_id, OperationKind.WITHDRAW, amount, entry.strategy_type
            ))
        elif delta > 0:
            deposits.append((entry.strategy_id, delta, entry.strategy_type))

    haircut = len(withdrawals)
    operations = list(withdrawals)
    for strategy_id, delta, strategy_type in deposits:
        amount = delta - haircut
        if amount <= 0:
            logger.debug(f"Deposit into {strategy_id} dropped after haircut ({delta} - {haircut})")
            continue
        operations.append(RebalanceOperation(strategy_id, OperationKind.DEPOSIT, amount, strategy_type))

    return operations


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class RebalanceOrchestrator:
    """
    Executes planned operations.

    Args:
        registry: Strategy registry
        adapters: Adapter lookup keyed on strategy kind
        sender: TransactionSender (unused in dry_run)
        batch_size: Operations per transaction
        vault_lookup_table: Lookup table added to every batch
        dry_run: Log batches instead of submitting them
    """

    def __init__(
        self,
        registry: StrategyRegistry,
        adapters: AdapterRegistry,
        sender: Optional[TransactionSender],
        batch_size: int = 1,
        vault_lookup_table: Optional[str] = None,
        dry_run: bool = False
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if sender is None and not dry_run:
            raise ValueError("A TransactionSender is required unless dry_run is enabled")

        self.registry = registry
        self.adapters = adapters
        self.sender = sender
        self.batch_size = batch_size
        self.vault_lookup_table = vault_lookup_table
        self.dry_run = dry_run

    # ------------------------------------------------------------------ build

    def translate(
        self,
        operations: Sequence[RebalanceOperation]
    ) -> Tuple[List[Tuple[RebalanceOperation, AdapterResult]], List[Tuple[RebalanceOperation, str]]]:
        """Adapter translation; failing operations are skipped, not fatal"""
        translated = []
        skipped = []

        for op in operations:
            strategy = self.registry.get(op.strategy_id)
            try:
                if strategy is None:
                    raise AdapterError(f"Strategy {op.strategy_id} is not registered")
                adapter = self.adapters.get(strategy.kind)
                if op.kind == OperationKind.WITHDRAW:
                    result = adapter.build_withdraw(strategy, op.amount)
                else:
                    result = adapter.build_deposit(strategy, op.amount)
            except UnknownStrategyKindError as e:
                reason = 'unknown_kind'
                logger.warning(f"Skipping {op.kind.value} for {op.strategy_id} ({reason}): {e}")
                metrics.inc('rebalance_skipped_total', {'reason': reason})
                skipped.append((op, reason))
                continue
            except AdapterError as e:
                reason = 'adapter_error'
                logger.warning(f"Skipping {op.kind.value} for {op.strategy_id} ({reason}): {e}")
                metrics.inc('rebalance_skipped_total', {'reason': reason})
                skipped.append((op, reason))
                continue

            translated.append((op, result))

        return translated, skipped

    def build_batches(
        self,
        items: Sequence[Tuple[Optional[RebalanceOperation], AdapterResult]],
        batch_size: Optional[int] = None
    ) -> List[TransactionBatch]:
        """Group adapter results into batches of `batch_size`, preserving order"""
        size = batch_size or self.batch_size
        batches: List[TransactionBatch] = []

        for i in range(0, len(items), size):
            batch = TransactionBatch()
            if self.vault_lookup_table:
                batch.lookup_tables.append(self.vault_lookup_table)
            for op, result in items[i:i + size]:
                batch.add(result, op)
            batches.append(batch)

        return batches

    # ----------------------------------------------------------------- submit

    async def submit_batches(
        self,
        batches: Sequence[TransactionBatch],
        tx_type: str
    ) -> Tuple[List[str], Optional[str]]:
        """
        Submit batches sequentially, stopping at the first failure.

        Returns:
            (signatures of confirmed batches, error message or None)
        """
        signatures: List[str] = []

        for index, batch in enumerate(batches, 1):
            if self.dry_run:
                logger.info(f"[DRY RUN] {tx_type} batch {index}/{len(batches)}: {batch.describe()}")
                metrics.inc('tx_total', {'type': tx_type, 'status': 'dry_run'})
                await asyncio.sleep(0)
                continue

            start = time.monotonic()
            try:
                signature = await asyncio.to_thread(
                    self.sender.send_and_confirm,
                    batch.instructions,
                    batch.lookup_tables,
                    tx_type,
                )
            except TransactionError as e:
                metrics.inc('tx_total', {'type': tx_type, 'status': 'failed'})
                logger.error(f"{tx_type} batch {index}/{len(batches)} failed ({batch.describe()}): {e}")
                return signatures, str(e)
            finally:
                metrics.observe('tx_duration_seconds', time.monotonic() - start, {'type': tx_type})

            metrics.inc('tx_total', {'type': tx_type, 'status': 'success'})
            logger.info(f"{tx_type} batch {index}/{len(batches)} confirmed: {signature} ({batch.describe()})")
            signatures.append(signature)

            # Let sibling loops run between submissions
            await asyncio.sleep(0)

        return signatures, None

    # ------------------------------------------------------------ entry point

    async def execute(self, prev: AllocationVector, target: AllocationVector) -> RebalanceOutcome:
        """
        Plan, translate, batch and submit one rebalance.

        Returns:
            RebalanceOutcome with status success | failed | noop
        """
        operations = plan_operations(prev, target)
        if not operations:
            logger.info("Allocation already at target, nothing to do")
            return RebalanceOutcome(status='noop')

        translated, skipped = self.translate(operations)
        issued = [op for op, _ in translated]

        if not translated:
            logger.warning(f"All {len(operations)} operations were skipped")
            return RebalanceOutcome(status='noop', skipped=skipped)

        batches = self.build_batches(translated)
        withdrawals = sum(1 for op in issued if op.kind == OperationKind.WITHDRAW)
        logger.info(
            f"Executing rebalance: {withdrawals} withdrawal(s), {len(issued) - withdrawals} deposit(s), "
            f"{len(batches)} batch(es), {len(skipped)} skipped"
        )

        signatures, error = await self.submit_batches(batches, 'rebalance')
        status = 'failed' if error else 'success'
        return RebalanceOutcome(
            status=status,
            operations=issued,
            skipped=skipped,
            signatures=signatures,
            error=error,
        )
