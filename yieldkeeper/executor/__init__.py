from .connection import ConnectionManager, destroy_connection_manager, get_connection_manager
from .positions import PositionSource, RpcPositionSource
from .rebalancer import RebalanceOrchestrator, RebalanceOutcome, TransactionBatch, plan_operations
from .transaction import DryRunSigner, TransactionSender, TransactionSigner, load_signer

__all__ = [
    "ConnectionManager",
    "destroy_connection_manager",
    "get_connection_manager",
    "PositionSource",
    "RpcPositionSource",
    "RebalanceOrchestrator",
    "RebalanceOutcome",
    "TransactionBatch",
    "plan_operations",
    "DryRunSigner",
    "TransactionSender",
    "TransactionSigner",
    "load_signer",
]
