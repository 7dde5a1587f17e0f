"""
Metrics for YieldKeeper

Usage:
    from yieldkeeper.metrics import bridge as metrics
    metrics.inc('rebalance_total', {'trigger': 'manual'})
"""
