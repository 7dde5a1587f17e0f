"""
Rebalance Worker Process

Runs the TriggerScheduler (plus the deposit watcher) inside its own
process with an address-space ceiling. Talks to the main process only
through two queues:

    command_queue (in):  {'type': 'shutdown'} | {'type': 'trigger'}
    event_queue (out):   {'type': 'started'|'status'|'stopped', ...}
                         {'type': 'metric', ...}  (see metrics.bridge)
"""

import asyncio
import os
import queue
import resource
import signal
from typing import Any, Dict, Optional

from yieldkeeper.config import RebalancerSettings, load_config
from yieldkeeper.executor.connection import ConnectionManager
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.orchestration.deposit_watcher import DepositWatcher
from yieldkeeper.orchestration.rebalance_loop import RebalanceCycle
from yieldkeeper.orchestration.trigger_scheduler import TriggerScheduler
from yieldkeeper.strategies.registry import load_strategy_registry
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

COMMAND_POLL_SECONDS = 0.5


def apply_memory_limit(max_memory_mb: int) -> bool:
    """
    Cap the process address space (RLIMIT_AS).

    Returns:
        True if the limit was applied
    """
    limit = max_memory_mb * 1024 * 1024
    try:
        _, hard = resource.getrlimit(resource.RLIMIT_AS)
        if hard != resource.RLIM_INFINITY:
            limit = min(limit, hard)
        resource.setrlimit(resource.RLIMIT_AS, (limit, hard))
    except (ValueError, OSError) as e:
        logger.warning(f"Could not apply worker memory limit ({max_memory_mb}MB): {e}")
        return False

    logger.info(f"Worker memory limit set to {max_memory_mb}MB")
    return True


class RebalanceWorker:
    """
    Rebalance loop host inside the isolated process.

    Args:
        settings: Typed settings
        command_queue: Commands from the supervisor
        event_queue: Events / metrics to the supervisor
    """

    def __init__(self, settings: RebalancerSettings, command_queue, event_queue):
        self.settings = settings
        self.command_queue = command_queue
        self.event_queue = event_queue
        self.token = CancellationToken()

        registry = load_strategy_registry(settings.strategies_file, settings.vault.asset_symbol)
        self.connection = ConnectionManager.from_settings(settings)
        self.cycle = RebalanceCycle.from_settings(settings, self.connection, registry)
        self.scheduler = TriggerScheduler.from_settings(self._run_cycle, settings)

        self.watcher: Optional[DepositWatcher] = None
        if settings.rpc.ws_url:
            self.watcher = DepositWatcher(settings.rpc.ws_url, settings.vault.idle_token_account, self.scheduler)
        else:
            logger.info("rpc.ws_url not set, deposit trigger disabled")

        logger.info(
            f"RebalanceWorker initialized: pid={os.getpid()}, dry_run={settings.dry_run}, "
            f"policy={settings.rebalance.policy}, strategies={len(registry)}"
        )

    # =========================================================================
    # EVENTS
    # =========================================================================

    def post(self, event: Dict[str, Any]) -> None:
        try:
            self.event_queue.put_nowait(event)
        except (queue.Full, ValueError, OSError) as e:
            logger.debug(f"Dropped worker event {event.get('type')}: {e}")

    async def _run_cycle(self, trigger: str):
        try:
            outcome = await self.cycle(trigger)
        except Exception as e:
            self.post({'type': 'status', 'trigger': trigger, 'status': 'failed', 'error': str(e)})
            raise
        self.post({'type': 'status', 'trigger': trigger, 'status': outcome.status, 'error': None})
        return outcome

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def handle_command(self, command: Dict[str, Any]) -> None:
        kind = command.get('type')
        if kind == 'shutdown':
            logger.info("Shutdown command received")
            self.token.cancel('shutdown command')
        elif kind == 'trigger':
            self.scheduler.trigger_manual()
        else:
            logger.warning(f"Unknown worker command: {command}")

    async def _command_pump(self) -> None:
        while not self.token.cancelled:
            try:
                command = await asyncio.to_thread(self.command_queue.get, True, COMMAND_POLL_SECONDS)
            except queue.Empty:
                continue
            except (EOFError, OSError) as e:
                # Parent went away
                logger.warning(f"Command queue closed: {e}")
                self.token.cancel('command queue closed')
                break
            self.handle_command(command)

    # =========================================================================
    # MAIN
    # =========================================================================

    async def run_continuous(self) -> None:
        self.post({'type': 'started', 'pid': os.getpid()})

        tasks = [
            asyncio.create_task(self.scheduler.run(self.token), name='scheduler'),
            asyncio.create_task(self._command_pump(), name='commands'),
        ]
        if self.watcher is not None:
            tasks.append(asyncio.create_task(self.watcher.run(self.token), name='deposit-watcher'))

        try:
            await tasks[0]
        finally:
            self.token.cancel('scheduler stopped')
            await asyncio.gather(*tasks[1:], return_exceptions=True)
            self.connection.close()
            self.post({'type': 'stopped', 'loop_count': self.scheduler.loop_count})
            logger.info("Rebalance worker stopped")


def worker_main(command_queue, event_queue, config_path: str) -> None:
    """
    Process entry point (multiprocessing target).

    SIGINT is ignored: the supervisor owns shutdown and sends a
    'shutdown' command instead.
    """
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    config = load_config(config_path)
    settings = RebalancerSettings.from_config(config)

    setup_logging(
        log_file=config.get('logging.file', 'logs/yieldkeeper.log'),
        log_level=config.get('logging.level', 'INFO'),
        module_levels=config.get('logging.module_levels'),
    )
    apply_memory_limit(settings.worker.max_memory_mb)
    metrics.set_sink(metrics.QueueSink(event_queue))

    worker = RebalanceWorker(settings, command_queue, event_queue)
    asyncio.run(worker.run_continuous())
