"""
Health Check System

Provides health status for the HTTP health endpoint (Docker, K8s, etc.).

Status values:
- ok: rebalance worker alive, nothing degraded
- degraded: worker down / restart budget exhausted, or RPC on fallback
- shutting_down: shutdown in progress (endpoint answers 503)
"""

from dataclasses import dataclass, asdict, field
from typing import Any, Dict, Optional

from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

STATUS_OK = 'ok'
STATUS_DEGRADED = 'degraded'
STATUS_SHUTTING_DOWN = 'shutting_down'


@dataclass
class HealthStatus:
    """Health check status"""
    status: str
    worker: str  # 'OK', 'RESTARTING', 'DOWN', 'DISABLED'
    rpc: str  # 'PRIMARY', 'FALLBACK', 'UNKNOWN'
    worker_restarts: int = 0
    last_cycle: Optional[Dict[str, Any]] = None
    message: str = ""
    loops: Dict[str, int] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.status != STATUS_SHUTTING_DOWN

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class HealthChecker:
    """
    Aggregates supervisor, transport and shutdown state.

    Args:
        token: Process-wide cancellation token
        worker_supervisor: WorkerSupervisor (None when rebalance is disabled)
        connection: ConnectionManager (optional)
        loop_supervisor: LoopSupervisor (optional, restart counts)
    """

    def __init__(
        self,
        token: CancellationToken,
        worker_supervisor: Optional[Any] = None,
        connection: Optional[Any] = None,
        loop_supervisor: Optional[Any] = None
    ):
        self.token = token
        self.worker_supervisor = worker_supervisor
        self.connection = connection
        self.loop_supervisor = loop_supervisor

    def check_all(self) -> HealthStatus:
        worker = self._check_worker()
        rpc = self._check_rpc()

        if self.token.cancelled:
            status = STATUS_SHUTTING_DOWN
            message = "Shutdown in progress"
        elif worker in ('DOWN', 'RESTARTING') or rpc == 'FALLBACK':
            status = STATUS_DEGRADED
            message = f"System degraded (worker={worker}, rpc={rpc})"
        else:
            status = STATUS_OK
            message = "All systems operational"

        supervisor = self.worker_supervisor
        return HealthStatus(
            status=status,
            worker=worker,
            rpc=rpc,
            worker_restarts=supervisor.restarts if supervisor else 0,
            last_cycle=supervisor.last_status if supervisor else None,
            message=message,
            loops=dict(self.loop_supervisor.restarts) if self.loop_supervisor else {},
        )

    def _check_worker(self) -> str:
        supervisor = self.worker_supervisor
        if supervisor is None:
            return 'DISABLED'
        if supervisor.degraded:
            return 'DOWN'
        return 'OK' if supervisor.alive else 'RESTARTING'

    def _check_rpc(self) -> str:
        if self.connection is None:
            return 'UNKNOWN'
        return 'FALLBACK' if self.connection.on_fallback else 'PRIMARY'
