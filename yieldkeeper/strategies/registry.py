"""
Strategy Registry

Static, process-lifetime mapping of configured strategies to their kind and
resolved on-chain identity. Loaded once at startup from:

1. config/strategies.yaml (base set)
2. config/<asset_symbol>-strategies.yaml (optional per-asset overlay, appended)

Usage:
    registry = load_strategy_registry('config/strategies.yaml', asset_symbol='usdc')
    for strategy in registry.strategies:
        print(strategy.id, strategy.kind)
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml

from yieldkeeper.exceptions import ConfigurationError
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

IDLE_ID = "idle"


class StrategyKind(str, Enum):
    """Supported strategy kinds (each has one adapter)"""
    KAMINO_VAULT = "kamino_vault"
    KAMINO_MARKET = "kamino_market"
    DRIFT_EARN = "drift_earn"
    JUPITER_LEND = "jupiter_lend"


def parse_kind(raw: str) -> Union[StrategyKind, str]:
    """Known kinds become StrategyKind, unknown kinds stay raw strings"""
    try:
        return StrategyKind(raw)
    except ValueError:
        return raw


@dataclass(frozen=True)
class StrategyDescriptor:
    """Immutable description of one configured strategy"""
    id: str
    kind: Union[StrategyKind, str]
    address: str
    position_account: Optional[str] = None
    liquidity_account: Optional[str] = None
    market_index: Optional[int] = None
    lookup_table: Optional[str] = None

    @property
    def kind_name(self) -> str:
        return self.kind.value if isinstance(self.kind, StrategyKind) else str(self.kind)


@dataclass(frozen=True)
class StrategyRegistry:
    """Ordered, read-only collection of strategy descriptors"""
    strategies: tuple
    by_id: Dict[str, StrategyDescriptor] = field(default_factory=dict)

    @classmethod
    def from_descriptors(cls, descriptors: List[StrategyDescriptor]) -> "StrategyRegistry":
        if not descriptors:
            raise ConfigurationError("Strategy registry is empty")

        by_id: Dict[str, StrategyDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id == IDLE_ID:
                raise ConfigurationError(f"Strategy id '{IDLE_ID}' is reserved")
            if descriptor.id in by_id:
                raise ConfigurationError(f"Duplicate strategy id: {descriptor.id}")
            by_id[descriptor.id] = descriptor

        return cls(strategies=tuple(descriptors), by_id=by_id)

    def get(self, strategy_id: str) -> Optional[StrategyDescriptor]:
        return self.by_id.get(strategy_id)

    def of_kind(self, kind: Union[StrategyKind, str]) -> List[StrategyDescriptor]:
        return [s for s in self.strategies if s.kind == kind]

    def ids(self) -> List[str]:
        return [s.id for s in self.strategies]

    def __len__(self) -> int:
        return len(self.strategies)

    def __iter__(self):
        return iter(self.strategies)


def _descriptor_from_entry(entry: Dict) -> StrategyDescriptor:
    """
    Resolve one YAML entry into a descriptor.

    Raises:
        ConfigurationError: If required fields are missing
    """
    strategy_id = entry.get('id')
    raw_kind = entry.get('type') or entry.get('kind')
    address = entry.get('address')

    if not strategy_id or not raw_kind:
        raise ConfigurationError(f"Strategy entry requires 'id' and 'type': {entry}")

    kind = parse_kind(raw_kind)

    market_index = entry.get('market_index')
    if kind == StrategyKind.DRIFT_EARN:
        if market_index is None:
            raise ConfigurationError(f"drift_earn strategy '{strategy_id}' requires market_index")
        market_index = int(market_index)

    if not address:
        raise ConfigurationError(f"Strategy '{strategy_id}' requires a resolved 'address'")

    return StrategyDescriptor(
        id=str(strategy_id),
        kind=kind,
        address=str(address),
        position_account=entry.get('position_account'),
        liquidity_account=entry.get('liquidity_account'),
        market_index=market_index,
        lookup_table=entry.get('lookup_table'),
    )


def _read_entries(path: Path) -> List[Dict]:
    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}
    entries = data.get('strategies', [])
    if not isinstance(entries, list):
        raise ConfigurationError(f"{path}: 'strategies' must be a list")
    return entries


def load_strategy_registry(
    strategies_file: Union[str, Path],
    asset_symbol: Optional[str] = None
) -> StrategyRegistry:
    """
    Load the registry from YAML (plus optional per-asset overlay).

    Args:
        strategies_file: Base strategies file
        asset_symbol: Asset symbol; if config/<symbol>-strategies.yaml exists
            next to the base file its strategies are appended

    Returns:
        StrategyRegistry

    Raises:
        ConfigurationError: Missing file, duplicate ids, invalid entries
    """
    base_path = Path(strategies_file)
    if not base_path.exists():
        raise ConfigurationError(f"Strategies file not found: {base_path}")

    entries = _read_entries(base_path)

    if asset_symbol:
        overlay = base_path.parent / f"{asset_symbol.lower()}-strategies.yaml"
        if overlay.exists():
            overlay_entries = _read_entries(overlay)
            logger.info(f"Loaded {len(overlay_entries)} strategies from overlay {overlay.name}")
            entries.extend(overlay_entries)

    registry = StrategyRegistry.from_descriptors([_descriptor_from_entry(e) for e in entries])

    unknown = [s.id for s in registry if not isinstance(s.kind, StrategyKind)]
    if unknown:
        logger.warning(f"Strategies with unknown kind (will be skipped on rebalance): {unknown}")

    logger.info(f"Strategy registry loaded: {len(registry)} strategies ({', '.join(registry.ids())})")
    return registry


_cached_registry: Optional[StrategyRegistry] = None


def get_strategy_registry(
    strategies_file: Union[str, Path] = "config/strategies.yaml",
    asset_symbol: Optional[str] = None
) -> StrategyRegistry:
    """Cached accessor, loaded once per process"""
    global _cached_registry
    if _cached_registry is None:
        _cached_registry = load_strategy_registry(strategies_file, asset_symbol)
    return _cached_registry
