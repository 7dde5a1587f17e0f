from .rebalance_worker import RebalanceWorker, apply_memory_limit, worker_main
from .supervisor import LoopSupervisor, WorkerSupervisor

__all__ = [
    "RebalanceWorker",
    "apply_memory_limit",
    "worker_main",
    "LoopSupervisor",
    "WorkerSupervisor",
]
