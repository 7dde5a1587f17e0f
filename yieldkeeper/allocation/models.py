"""
Allocation data model

All values are integers in the asset's native precision. Every structure is
rebuilt per cycle and never mutated in place.
"""

from dataclasses import dataclass, field
from datetime import datetime, UTC
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from yieldkeeper.strategies.registry import IDLE_ID

# Sentinel ceiling for strategies without a withdrawal limit
UNLIMITED = 2 ** 64 - 1

# Sentinel withdraw amount: drain the whole position, accrued yield included
MAX_WITHDRAW = 2 ** 53 - 1


class Policy(str, Enum):
    EQUAL_WEIGHT = "equal_weight"
    YIELD = "yield"


class FallbackReason(str, Enum):
    """Why the yield policy fell back to equal-weight"""
    NO_MATCH = "no_match"
    ALL_FILTERED = "all_filtered"
    API_FAIL = "api_fail"


class OperationKind(str, Enum):
    WITHDRAW = "withdraw"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class PositionSnapshot:
    """Observed value of one strategy (or the idle bucket)"""
    strategy_id: str
    value: int
    observed_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_updated: Optional[datetime] = None
    strategy_type: str = ""

    def __post_init__(self):
        if self.value < 0:
            raise ValueError(f"Position value must be >= 0, got {self.value} for {self.strategy_id}")

    @property
    def is_idle(self) -> bool:
        return self.strategy_id == IDLE_ID


@dataclass(frozen=True)
class LiquidityConstraint:
    """Maximum amount withdrawable from a strategy this cycle (advisory)"""
    strategy_id: str
    withdrawable_ceiling: int = UNLIMITED

    def locked_amount(self, current: int) -> int:
        """Part of `current` that cannot leave the strategy this cycle"""
        if self.withdrawable_ceiling >= current:
            return 0
        return current - max(0, self.withdrawable_ceiling)


@dataclass(frozen=True)
class YieldCandidate:
    """External market record, optionally matched to a strategy"""
    market_id: str
    provider_id: str
    provider_name: str
    token_address: str
    deposit_apy: float
    total_deposit_usd: float
    vault_address: Optional[str] = None
    matched_strategy_id: Optional[str] = None


@dataclass(frozen=True)
class AllocationEntry:
    strategy_id: str
    value: int
    strategy_type: str = ""


@dataclass(frozen=True)
class AllocationVector:
    """
    Ordered (strategy_id, value) entries: strategies in registry order, then idle.

    Used both for the current allocation (from snapshots) and the target.
    """
    entries: Tuple[AllocationEntry, ...]
    policy: Optional[Policy] = None
    fallback_reason: Optional[FallbackReason] = None
    winner_id: Optional[str] = None

    @classmethod
    def from_snapshots(cls, positions: Iterable[PositionSnapshot]) -> "AllocationVector":
        strategies = [p for p in positions if not p.is_idle]
        idle = [p for p in positions if p.is_idle]
        entries = [AllocationEntry(p.strategy_id, p.value, p.strategy_type) for p in strategies]
        idle_value = sum(p.value for p in idle)
        entries.append(AllocationEntry(IDLE_ID, idle_value, "idle"))
        return cls(entries=tuple(entries))

    def total(self) -> int:
        return sum(e.value for e in self.entries)

    def value_of(self, strategy_id: str) -> int:
        for entry in self.entries:
            if entry.strategy_id == strategy_id:
                return entry.value
        raise KeyError(strategy_id)

    def strategy_entries(self) -> List[AllocationEntry]:
        return [e for e in self.entries if e.strategy_id != IDLE_ID]

    @property
    def idle(self) -> int:
        return self.value_of(IDLE_ID)

    def as_dict(self) -> Dict[str, int]:
        return {e.strategy_id: e.value for e in self.entries}

    def values(self) -> List[int]:
        return [e.value for e in self.entries]


@dataclass(frozen=True)
class RebalanceOperation:
    """One withdraw or deposit derived from target - current"""
    strategy_id: str
    kind: OperationKind
    amount: int
    strategy_type: str = ""

    def __post_init__(self):
        if self.amount <= 0:
            raise ValueError(f"Operation amount must be > 0, got {self.amount}")

    @property
    def is_full_exit(self) -> bool:
        return self.kind == OperationKind.WITHDRAW and self.amount == MAX_WITHDRAW
