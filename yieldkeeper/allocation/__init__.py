from .engine import AllocationEngine
from .models import (
    MAX_WITHDRAW,
    UNLIMITED,
    AllocationEntry,
    AllocationVector,
    FallbackReason,
    LiquidityConstraint,
    OperationKind,
    Policy,
    PositionSnapshot,
    RebalanceOperation,
    YieldCandidate,
)
from .yield_resolver import WinnerResult, YieldResolver

__all__ = [
    "AllocationEngine",
    "MAX_WITHDRAW",
    "UNLIMITED",
    "AllocationEntry",
    "AllocationVector",
    "FallbackReason",
    "LiquidityConstraint",
    "OperationKind",
    "Policy",
    "PositionSnapshot",
    "RebalanceOperation",
    "YieldCandidate",
    "WinnerResult",
    "YieldResolver",
]
