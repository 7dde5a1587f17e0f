"""
Prometheus metric definitions for YieldKeeper

All metrics live in a dedicated CollectorRegistry so tests and the health
server expose exactly these series.
"""

from typing import Dict, Optional, Union

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

REGISTRY = CollectorRegistry()

# =============================================================================
# GAUGES
# =============================================================================

vault_total_value = Gauge(
    'vault_total_value', 'Total vault value in token units', registry=REGISTRY
)
vault_idle_balance = Gauge(
    'vault_idle_balance', 'Idle (unallocated) balance in token units', registry=REGISTRY
)
strategy_position_value = Gauge(
    'strategy_position_value', 'Per-strategy current position value',
    ['strategy_id', 'strategy_type'], registry=REGISTRY
)
strategy_target_value = Gauge(
    'strategy_target_value', 'Per-strategy target value after rebalance',
    ['strategy_id', 'strategy_type'], registry=REGISTRY
)
yield_winner_apy = Gauge('yield_winner_apy', 'Current yield winner APY', registry=REGISTRY)
yield_winner_tvl = Gauge('yield_winner_tvl', 'Current yield winner TVL in USD', registry=REGISTRY)
yield_winner_info = Gauge(
    'yield_winner_info', 'Current yield winner (label-only info metric)',
    ['strategy_id', 'provider'], registry=REGISTRY
)
worker_restarts = Gauge('worker_restarts', 'Rebalance worker restart count', registry=REGISTRY)
worker_up = Gauge('worker_up', '1 while the rebalance worker process is alive', registry=REGISTRY)

# =============================================================================
# COUNTERS
# =============================================================================

rebalance_total = Counter(
    'rebalance_total', 'Total rebalances executed', ['trigger'], registry=REGISTRY
)
rebalance_errors_total = Counter(
    'rebalance_errors_total', 'Total failed rebalances', registry=REGISTRY
)
rebalance_fallback_total = Counter(
    'rebalance_fallback_total', 'Equal-weight fallback count', ['reason'], registry=REGISTRY
)
rebalance_skipped_total = Counter(
    'rebalance_skipped_total', 'Operations skipped by adapters', ['reason'], registry=REGISTRY
)
yield_api_calls_total = Counter(
    'yield_api_calls_total', 'Yield API call count by status', ['status'], registry=REGISTRY
)
tx_total = Counter(
    'tx_total', 'Transactions sent', ['type', 'status'], registry=REGISTRY
)
loop_errors_total = Counter(
    'loop_errors_total', 'Errors per loop', ['loop'], registry=REGISTRY
)
loop_iterations_total = Counter(
    'loop_iterations_total', 'Iterations per loop', ['loop'], registry=REGISTRY
)

# =============================================================================
# HISTOGRAMS
# =============================================================================

rebalance_duration_seconds = Histogram(
    'rebalance_duration_seconds', 'End-to-end rebalance duration',
    buckets=[1, 5, 10, 30, 60, 120, 300], registry=REGISTRY
)
yield_api_duration_seconds = Histogram(
    'yield_api_duration_seconds', 'Yield API call latency',
    buckets=[0.1, 0.5, 1, 2, 5, 10], registry=REGISTRY
)
tx_duration_seconds = Histogram(
    'tx_duration_seconds', 'Transaction confirmation time', ['type'],
    buckets=[1, 5, 10, 30, 60, 120], registry=REGISTRY
)
tx_compute_units = Histogram(
    'tx_compute_units', 'Compute units requested per transaction', ['type'],
    buckets=[50_000, 100_000, 200_000, 400_000, 800_000, 1_400_000], registry=REGISTRY
)
tx_priority_fee = Histogram(
    'tx_priority_fee', 'Priority fee paid (microLamports)', ['type'],
    buckets=[10, 50, 100, 500, 1_000, 5_000, 10_000], registry=REGISTRY
)

Metric = Union[Counter, Gauge, Histogram]

METRICS: Dict[str, Metric] = {
    'vault_total_value': vault_total_value,
    'vault_idle_balance': vault_idle_balance,
    'strategy_position_value': strategy_position_value,
    'strategy_target_value': strategy_target_value,
    'yield_winner_apy': yield_winner_apy,
    'yield_winner_tvl': yield_winner_tvl,
    'yield_winner_info': yield_winner_info,
    'worker_restarts': worker_restarts,
    'worker_up': worker_up,
    'rebalance_total': rebalance_total,
    'rebalance_errors_total': rebalance_errors_total,
    'rebalance_fallback_total': rebalance_fallback_total,
    'rebalance_skipped_total': rebalance_skipped_total,
    'yield_api_calls_total': yield_api_calls_total,
    'tx_total': tx_total,
    'loop_errors_total': loop_errors_total,
    'loop_iterations_total': loop_iterations_total,
    'rebalance_duration_seconds': rebalance_duration_seconds,
    'yield_api_duration_seconds': yield_api_duration_seconds,
    'tx_duration_seconds': tx_duration_seconds,
    'tx_compute_units': tx_compute_units,
    'tx_priority_fee': tx_priority_fee,
}


def _child(metric: Metric, labels: Optional[Dict[str, str]]):
    return metric.labels(**labels) if labels else metric


def apply(name: str, action: str, value: float, labels: Optional[Dict[str, str]] = None) -> bool:
    """
    Apply one metric action to the registry.

    Unknown metric names and actions are ignored (returns False) so a newer
    worker cannot crash an older main process.
    """
    metric = METRICS.get(name)
    if metric is None:
        return False

    target = _child(metric, labels)
    if action == 'inc':
        target.inc(value)
    elif action == 'set':
        target.set(value)
    elif action == 'observe':
        target.observe(value)
    else:
        return False
    return True
