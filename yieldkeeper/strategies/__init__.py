from .adapters import AdapterRegistry, AdapterResult, Instruction, StrategyAdapter, VaultAdapter
from .registry import (
    IDLE_ID,
    StrategyDescriptor,
    StrategyKind,
    StrategyRegistry,
    get_strategy_registry,
    load_strategy_registry,
)

__all__ = [
    "AdapterRegistry",
    "AdapterResult",
    "Instruction",
    "StrategyAdapter",
    "VaultAdapter",
    "IDLE_ID",
    "StrategyDescriptor",
    "StrategyKind",
    "StrategyRegistry",
    "get_strategy_registry",
    "load_strategy_registry",
]
