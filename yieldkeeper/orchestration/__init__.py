from .deposit_watcher import DepositWatcher
from .rebalance_loop import RebalanceCycle
from .trigger_scheduler import SchedulerState, TriggerScheduler

__all__ = [
    "DepositWatcher",
    "RebalanceCycle",
    "SchedulerState",
    "TriggerScheduler",
]
