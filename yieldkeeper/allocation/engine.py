"""
Allocation Engine

Computes the target allocation vector for one cycle under one of two
policies:

EQUAL-WEIGHT:
    Every strategy gets total / N, except strategies whose locked
    (unwithdrawable) amount exceeds the share: those are pinned at their
    locked amount and the share is recomputed over the rest until no new
    strategy gets pinned. Integer remainder goes to the first unpinned
    strategy by id. Idle is drained.

YIELD:
    The resolver's winner receives everything that can move. Every other
    strategy keeps only what it cannot release this cycle
    (current - withdrawable_ceiling). No winner => equal-weight for this
    cycle, tagged with the fallback reason.

Invariant (both policies): sum(target) == sum(current).
"""

from typing import Dict, Iterable, List, Optional

from yieldkeeper.allocation.models import (
    AllocationEntry,
    AllocationVector,
    FallbackReason,
    LiquidityConstraint,
    Policy,
    PositionSnapshot,
)
from yieldkeeper.allocation.yield_resolver import YieldResolver
from yieldkeeper.exceptions import RebalanceError
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.strategies.registry import IDLE_ID
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


def _constraint_map(constraints: Iterable[LiquidityConstraint]) -> Dict[str, LiquidityConstraint]:
    return {c.strategy_id: c for c in constraints}


def locked_amounts(
    current: AllocationVector,
    constraints: Dict[str, LiquidityConstraint]
) -> Dict[str, int]:
    """
    Locked amount per strategy, clamped to the current balance.

    A strategy can never be asked to hold more than it holds now.
    """
    locked: Dict[str, int] = {}
    for entry in current.strategy_entries():
        constraint = constraints.get(entry.strategy_id)
        amount = constraint.locked_amount(entry.value) if constraint else 0
        locked[entry.strategy_id] = min(amount, entry.value)
    return locked


class AllocationEngine:
    """
    Target allocation calculator.

    Args:
        resolver: Yield resolver, required for the yield policy
    """

    def __init__(self, resolver: Optional[YieldResolver] = None):
        self.resolver = resolver

    def compute_target(
        self,
        positions: List[PositionSnapshot],
        constraints: List[LiquidityConstraint],
        policy: Policy = Policy.YIELD
    ) -> AllocationVector:
        """
        Compute the target allocation.

        Args:
            positions: One snapshot per strategy plus the idle snapshot
            constraints: Liquidity constraints (missing => unlimited)
            policy: Policy.YIELD or Policy.EQUAL_WEIGHT

        Returns:
            AllocationVector with the same order as `positions` (idle last)
        """
        current = AllocationVector.from_snapshots(positions)
        constraint_map = _constraint_map(constraints)

        if policy == Policy.YIELD:
            target = self.yield_optimized(current, constraint_map)
        else:
            target = self.equal_weight(current, constraint_map)

        if target.total() != current.total():
            raise RebalanceError(
                f"Allocation does not conserve value: current={current.total()} target={target.total()}"
            )

        for entry in target.strategy_entries():
            metrics.set('strategy_target_value', entry.value, {
                'strategy_id': entry.strategy_id,
                'strategy_type': entry.strategy_type,
            })

        return target

    # =========================================================================
    # EQUAL-WEIGHT
    # =========================================================================

    def equal_weight(
        self,
        current: AllocationVector,
        constraints: Dict[str, LiquidityConstraint],
        fallback_reason: Optional[FallbackReason] = None
    ) -> AllocationVector:
        strategies = current.strategy_entries()
        total = current.total()
        locked = locked_amounts(current, constraints)

        pinned: Dict[str, int] = {}
        pool = [e.strategy_id for e in strategies]

        # Fixed point: the pinned set only grows, so at most N rounds
        while pool:
            share = (total - sum(pinned.values())) // len(pool)
            newly_pinned = [sid for sid in pool if locked[sid] > share]
            if not newly_pinned:
                break
            for sid in newly_pinned:
                pinned[sid] = locked[sid]
            pool = [sid for sid in pool if sid not in pinned]

        targets: Dict[str, int] = dict(pinned)
        idle_target = 0

        if pool:
            share, remainder = divmod(total - sum(pinned.values()), len(pool))
            for sid in pool:
                targets[sid] = share
            targets[min(pool)] += remainder
        else:
            # Every strategy is at its liquidity limit: the rest stays idle
            idle_target = total - sum(pinned.values())

        if pinned:
            logger.info(f"Equal-weight pinned strategies at locked amount: {pinned}")

        return self._vector(current, targets, idle_target, Policy.EQUAL_WEIGHT, fallback_reason)

    # =========================================================================
    # YIELD
    # =========================================================================

    def yield_optimized(
        self,
        current: AllocationVector,
        constraints: Dict[str, LiquidityConstraint]
    ) -> AllocationVector:
        if self.resolver is None:
            raise ValueError("Yield policy requires a YieldResolver")

        result = self.resolver.resolve_winner(current.total())
        if not result.has_winner:
            logger.info(f"No yield winner ({result.reason.value}), using equal-weight for this cycle")
            return self.equal_weight(current, constraints, fallback_reason=result.reason)

        winner_id = result.winner_id
        strategy_ids = [e.strategy_id for e in current.strategy_entries()]
        if winner_id not in strategy_ids:
            logger.warning(f"Yield winner {winner_id} is not a current position, using equal-weight")
            metrics.inc('rebalance_fallback_total', {'reason': FallbackReason.NO_MATCH.value})
            return self.equal_weight(current, constraints, fallback_reason=FallbackReason.NO_MATCH)

        locked = locked_amounts(current, constraints)
        targets: Dict[str, int] = {}
        for sid in strategy_ids:
            if sid == winner_id:
                continue
            # What cannot be withdrawn this cycle stays put
            targets[sid] = locked[sid]
            if locked[sid]:
                logger.info(f"Strategy {sid} capped by liquidity: {locked[sid]} stays in place")

        targets[winner_id] = current.total() - sum(targets.values())

        return self._vector(current, targets, 0, Policy.YIELD, None, winner_id=winner_id)

    # =========================================================================
    # HELPERS
    # =========================================================================

    @staticmethod
    def _vector(
        current: AllocationVector,
        targets: Dict[str, int],
        idle_target: int,
        policy: Policy,
        fallback_reason: Optional[FallbackReason],
        winner_id: Optional[str] = None
    ) -> AllocationVector:
        entries = []
        for entry in current.entries:
            if entry.strategy_id == IDLE_ID:
                entries.append(AllocationEntry(IDLE_ID, idle_target, entry.strategy_type))
            else:
                entries.append(AllocationEntry(entry.strategy_id, targets[entry.strategy_id], entry.strategy_type))
        return AllocationVector(
            entries=tuple(entries),
            policy=policy,
            fallback_reason=fallback_reason,
            winner_id=winner_id,
        )
