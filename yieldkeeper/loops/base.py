"""
Periodic loop base

Sibling loops (refresh, harvest, rewards) share the same shape: wake every
check_seconds, run a step once interval_seconds have passed since the last
successful run, count iterations and errors, stop on cancellation.

An error inside a step is logged and counted; the loop keeps running and
retries at the next check.
"""

import time
from typing import Callable, Optional

from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class PeriodicLoop:
    """
    Base class for interval-driven loops.

    Subclasses set `name` / `label` and implement `async step()`.

    Args:
        interval_seconds: Minimum time between two successful steps
        check_seconds: Wake-up period
        clock: Monotonic clock (tests)
    """

    name = "periodic"
    label = "Periodic Loop"

    def __init__(
        self,
        interval_seconds: float,
        check_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.interval_seconds = interval_seconds
        self.check_seconds = check_seconds
        self._clock = clock

        self.last_execution: Optional[float] = None
        self.loop_count = 0
        self.error_count = 0

    def is_due(self) -> bool:
        if self.last_execution is None:
            return True
        return self._clock() - self.last_execution >= self.interval_seconds

    async def step(self) -> None:
        raise NotImplementedError

    async def run_once(self) -> bool:
        """
        Run one step and record the result.

        Returns:
            True on success
        """
        logger.info(f"[{self.label} {self.loop_count}] Executing scheduled {self.name}...")
        try:
            await self.step()
        except Exception as e:
            self.error_count += 1
            metrics.inc('loop_errors_total', {'loop': self.name})
            logger.error(f"[{self.label} {self.loop_count}] Error during scheduled {self.name}: {e}", exc_info=True)
            return False

        metrics.inc('loop_iterations_total', {'loop': self.name})
        self.last_execution = self._clock()
        logger.info(f"[{self.label} {self.loop_count}] Completed scheduled {self.name}")
        self.loop_count += 1
        return True

    async def run(self, token: CancellationToken) -> None:
        logger.info(
            f"[{self.label}] Started: interval={self.interval_seconds:.0f}s, check={self.check_seconds:.0f}s"
        )
        while not token.cancelled:
            if self.is_due():
                await self.run_once()
            if not await token.sleep(self.check_seconds):
                break
        logger.info(f"[{self.label}] Stopped after {self.loop_count} iterations")
