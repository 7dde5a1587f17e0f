"""
Global test fixtures for YieldKeeper

Provides reusable fixtures for all test modules. Nothing here touches the
network: RPC, yield API and signer are replaced by the mocks in tests/mocks.
"""

import sys
from pathlib import Path

import pytest

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from yieldkeeper.allocation.models import UNLIMITED, LiquidityConstraint, PositionSnapshot
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.strategies.adapters import AdapterRegistry
from yieldkeeper.strategies.registry import IDLE_ID, StrategyDescriptor, StrategyKind, StrategyRegistry, parse_kind


class RecordingSink:
    """Metrics sink that keeps every emitted metric in memory"""

    def __init__(self):
        self.events = []

    def emit(self, name, action, value, labels):
        self.events.append((name, action, value, dict(labels or {})))

    def named(self, name):
        return [e for e in self.events if e[0] == name]


@pytest.fixture(autouse=True)
def metrics_sink():
    """Route metrics to memory so tests never touch the prometheus registry"""
    previous = metrics.get_sink()
    sink = RecordingSink()
    metrics.set_sink(sink)
    yield sink
    metrics.set_sink(previous)


@pytest.fixture
def make_registry():
    """
    Build a registry from (id, kind) pairs

    Usage:
        registry = make_registry([('a', 'kamino_vault'), ('b', 'jupiter_lend')])
    """
    def _create(entries):
        descriptors = []
        for strategy_id, kind in entries:
            kind = parse_kind(kind)
            descriptors.append(StrategyDescriptor(
                id=strategy_id,
                kind=kind,
                address=f"{strategy_id}-address",
                position_account=f"{strategy_id}-position",
                market_index=0 if kind == StrategyKind.DRIFT_EARN else None,
            ))
        return StrategyRegistry.from_descriptors(descriptors)

    return _create


@pytest.fixture
def registry(make_registry):
    """Three strategies of different kinds, registry order a, b, c"""
    return make_registry([
        ('a', 'kamino_vault'),
        ('b', 'jupiter_lend'),
        ('c', 'drift_earn'),
    ])


@pytest.fixture
def adapters():
    return AdapterRegistry("vault-address", "manager-address")


@pytest.fixture
def make_positions():
    """
    Build snapshots: make_positions({'a': 100, 'b': 0}, idle=5)

    Strategy order follows the dict order; idle is appended last.
    """
    def _create(values, idle=0):
        snapshots = [PositionSnapshot(sid, value, strategy_type='test') for sid, value in values.items()]
        snapshots.append(PositionSnapshot(IDLE_ID, idle, strategy_type='idle'))
        return snapshots

    return _create


@pytest.fixture
def make_constraints():
    """make_constraints({'a': 20}) -> ceiling 20 for a, unlimited for the rest"""
    def _create(ceilings, strategy_ids=()):
        constraints = [LiquidityConstraint(sid, ceiling) for sid, ceiling in ceilings.items()]
        for sid in strategy_ids:
            if sid not in ceilings:
                constraints.append(LiquidityConstraint(sid, UNLIMITED))
        return constraints

    return _create


@pytest.fixture
def raw_config():
    """Minimal valid raw configuration tree"""
    return {
        'system': {'dry_run': True},
        'strategies_file': 'config/strategies.yaml',
        'rpc': {'url': 'https://rpc.test', 'fallback_url': 'https://fallback.test', 'ws_url': ''},
        'vault': {
            'address': 'vault-address',
            'idle_token_account': 'idle-account',
            'asset_mint': 'usdc-mint',
            'asset_symbol': 'usdc',
            'lookup_table': '',
        },
        'yield_api': {'url': 'https://yield.test/markets', 'min_tvl_usd': 1000, 'max_dilution': 0.005},
        'rebalance': {'policy': 'yield', 'interval_seconds': 1800, 'min_trigger_amount': 10},
    }


@pytest.fixture
def settings(raw_config):
    from yieldkeeper.config.loader import Config
    from yieldkeeper.config.settings import RebalancerSettings

    return RebalancerSettings.from_config(Config(**raw_config))
