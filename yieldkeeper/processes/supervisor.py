"""
Supervisors

WorkerSupervisor keeps the rebalance worker process alive:
- spawn with its own command/event queues
- pump worker events (metrics are applied to the main-process registry)
- on unexpected exit restart after base_delay * 2**(attempt-1)
- after max_restarts give up and stay degraded; other loops keep running
- stop(): send 'shutdown', wait bounded time, then terminate

LoopSupervisor keeps cooperative in-process loops alive: an unexpected
exception restarts the loop after a fixed delay until cancellation.
"""

import asyncio
import multiprocessing
import queue
from typing import Any, Awaitable, Callable, Dict, Optional

from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.processes.rebalance_worker import worker_main
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

WATCH_INTERVAL_SECONDS = 0.25


def default_process_factory(target, args):
    ctx = multiprocessing.get_context('spawn')
    return ctx.Process(target=target, args=args, name='rebalance-worker', daemon=True)


def default_queue_factory():
    return multiprocessing.get_context('spawn').Queue()


class WorkerSupervisor:
    """
    Restart-with-backoff supervisor for the rebalance worker.

    Args:
        config_path: Config file the worker loads
        max_restarts: Restarts before giving up (degraded)
        restart_base_delay_seconds: First restart delay, doubled per attempt
        shutdown_timeout_seconds: Bound on the clean-exit wait in stop()
        process_factory: (target, args) -> Process-like (tests)
        queue_factory: () -> Queue-like (tests)
    """

    def __init__(
        self,
        config_path: str,
        max_restarts: int = 3,
        restart_base_delay_seconds: float = 1.0,
        shutdown_timeout_seconds: float = 10.0,
        process_factory: Callable = default_process_factory,
        queue_factory: Callable = default_queue_factory
    ):
        self.config_path = config_path
        self.max_restarts = max_restarts
        self.restart_base_delay_seconds = restart_base_delay_seconds
        self.shutdown_timeout_seconds = shutdown_timeout_seconds
        self.process_factory = process_factory
        self.queue_factory = queue_factory

        self.process = None
        self.command_queue = None
        self.event_queue = None

        self.restarts = 0
        self.degraded = False
        self.stopping = False
        self.last_status: Optional[Dict[str, Any]] = None

    @classmethod
    def from_settings(cls, config_path: str, settings, **kwargs) -> "WorkerSupervisor":
        worker = settings.worker
        return cls(
            config_path=config_path,
            max_restarts=worker.max_restarts,
            restart_base_delay_seconds=worker.restart_base_delay_seconds,
            shutdown_timeout_seconds=worker.shutdown_timeout_seconds,
            **kwargs,
        )

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.is_alive()

    def restart_delay(self, attempt: int) -> float:
        return self.restart_base_delay_seconds * (2 ** (attempt - 1))

    # =========================================================================
    # PROCESS CONTROL
    # =========================================================================

    def start_worker(self) -> None:
        self.command_queue = self.queue_factory()
        self.event_queue = self.queue_factory()
        self.process = self.process_factory(
            worker_main, (self.command_queue, self.event_queue, self.config_path)
        )
        self.process.start()
        logger.info(f"Rebalance worker spawned (pid={self.process.pid})")

    def trigger(self) -> bool:
        """Forward a manual trigger; False if the worker is not running"""
        if self.degraded or not self.alive:
            logger.warning("Manual trigger ignored: rebalance worker is not running")
            return False
        self.command_queue.put({'type': 'trigger'})
        return True

    def pump_events(self) -> int:
        """Drain the event queue without blocking; returns events handled"""
        if self.event_queue is None:
            return 0

        handled = 0
        while True:
            try:
                event = self.event_queue.get_nowait()
            except queue.Empty:
                break
            except (EOFError, OSError, ValueError) as e:
                logger.debug(f"Event queue unavailable: {e}")
                break
            self.handle_event(event)
            handled += 1
        return handled

    def handle_event(self, event: Dict[str, Any]) -> None:
        kind = event.get('type')
        if kind == 'metric':
            metrics.apply_metric_message(event)
        elif kind == 'started':
            metrics.set('worker_up', 1)
            logger.info(f"Rebalance worker started (pid={event.get('pid')})")
        elif kind == 'status':
            self.last_status = event
        elif kind == 'stopped':
            logger.info(f"Rebalance worker reported stop after {event.get('loop_count')} cycles")
        else:
            logger.debug(f"Unknown worker event: {event}")

    # =========================================================================
    # SUPERVISION
    # =========================================================================

    async def run(self, token: CancellationToken) -> None:
        """Spawn the worker and keep it alive until cancelled or degraded"""
        self.start_worker()

        while not token.cancelled:
            self.pump_events()

            if not self.alive and not self.stopping:
                metrics.set('worker_up', 0)
                exitcode = self.process.exitcode if self.process is not None else None
                self.restarts += 1
                metrics.set('worker_restarts', self.restarts)

                if self.restarts > self.max_restarts:
                    self.degraded = True
                    logger.error(
                        f"Rebalance worker exited (code={exitcode}), giving up after "
                        f"{self.max_restarts} restarts; running degraded"
                    )
                    return

                delay = self.restart_delay(self.restarts)
                logger.warning(
                    f"Rebalance worker exited (code={exitcode}), restarting in {delay:.1f}s "
                    f"(attempt {self.restarts}/{self.max_restarts})"
                )
                if not await token.sleep(delay):
                    break
                self.start_worker()
                continue

            await token.sleep(WATCH_INTERVAL_SECONDS)

        self.pump_events()

    async def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Ask the worker to exit and wait up to `timeout` seconds.

        Returns:
            True if the worker exited cleanly
        """
        self.stopping = True
        timeout = self.shutdown_timeout_seconds if timeout is None else timeout

        if not self.alive:
            self.pump_events()
            return True

        logger.info(f"Stopping rebalance worker (timeout {timeout:.0f}s)")
        try:
            self.command_queue.put({'type': 'shutdown'})
        except (ValueError, OSError) as e:
            logger.warning(f"Could not send shutdown command: {e}")

        await asyncio.to_thread(self.process.join, timeout)
        self.pump_events()
        metrics.set('worker_up', 0)

        if self.process.is_alive():
            logger.warning("Rebalance worker did not exit in time, terminating")
            self.process.terminate()
            await asyncio.to_thread(self.process.join, 2.0)
            return False

        logger.info(f"Rebalance worker exited (code={self.process.exitcode})")
        return True


class LoopSupervisor:
    """
    Restarts cooperative loops that die with an unexpected exception.

    Args:
        restart_delay_seconds: Pause before restarting a crashed loop
    """

    def __init__(self, restart_delay_seconds: float = 5.0):
        self.restart_delay_seconds = restart_delay_seconds
        self.restarts: Dict[str, int] = {}
        self.tasks: Dict[str, asyncio.Task] = {}

    async def supervise(
        self,
        name: str,
        loop_fn: Callable[[CancellationToken], Awaitable[None]],
        token: CancellationToken
    ) -> None:
        while not token.cancelled:
            try:
                await loop_fn(token)
                return
            except Exception as e:
                self.restarts[name] = self.restarts.get(name, 0) + 1
                metrics.inc('loop_errors_total', {'loop': name})
                logger.error(
                    f"Loop '{name}' crashed (restart #{self.restarts[name]} in "
                    f"{self.restart_delay_seconds:.0f}s): {e}",
                    exc_info=True
                )
                await token.sleep(self.restart_delay_seconds)

    def spawn(
        self,
        name: str,
        loop_fn: Callable[[CancellationToken], Awaitable[None]],
        token: CancellationToken
    ) -> asyncio.Task:
        task = asyncio.create_task(self.supervise(name, loop_fn, token), name=name)
        self.tasks[name] = task
        logger.info(f"Loop '{name}' started")
        return task

    async def wait(self, timeout: float) -> bool:
        """
        Wait for every supervised loop to finish.

        Returns:
            True if all finished within `timeout`; stragglers are cancelled
        """
        tasks = list(self.tasks.values())
        if not tasks:
            return True

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            logger.warning(f"Loop '{task.get_name()}' did not stop in time, cancelling")
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return not pending
