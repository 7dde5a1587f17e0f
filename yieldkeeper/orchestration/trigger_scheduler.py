"""
Trigger Scheduler

Decides WHEN a rebalance cycle runs.

States:
    IDLE -> WAITING -> EXECUTING -> IDLE

WAITING ends on the first of:
    - timer (last_execution + interval)          trigger='scheduled'
    - manual signal                              trigger='manual'
    - deposit increase, off cooldown, >= minimum trigger='deposit'
    - cancellation                               (loop exits)

The wait is a single asyncio.wait(FIRST_COMPLETED) over those sources, so
exactly one of them resolves it and the rest are cancelled. Cycles never
overlap: the next wait only starts after the cycle reached a terminal state.
"""

import asyncio
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

CycleFn = Callable[[str], Awaitable[Any]]


class SchedulerState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    EXECUTING = "executing"


class TriggerScheduler:
    """
    Timer / deposit / manual trigger state machine around one cycle coroutine.

    Args:
        cycle: Coroutine function called with the trigger name; raising
            marks the cycle failed
        interval_seconds: Delay between scheduled cycles
        deposit_cooldown_seconds: Deposits within this time after the last
            cycle are ignored (defaults to interval_seconds)
        min_trigger_amount: Deposits must leave the idle balance above this
        error_backoff_seconds: Pause after a failed cycle
        run_on_start: Run the first cycle immediately instead of waiting
        clock: Monotonic clock (tests)
    """

    def __init__(
        self,
        cycle: CycleFn,
        interval_seconds: float,
        deposit_cooldown_seconds: Optional[float] = None,
        min_trigger_amount: int = 0,
        error_backoff_seconds: float = 12.4,
        run_on_start: bool = True,
        clock: Callable[[], float] = time.monotonic
    ):
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")

        self.cycle = cycle
        self.interval_seconds = interval_seconds
        self.deposit_cooldown_seconds = (
            interval_seconds if deposit_cooldown_seconds is None else deposit_cooldown_seconds
        )
        self.min_trigger_amount = min_trigger_amount
        self.error_backoff_seconds = error_backoff_seconds
        self.run_on_start = run_on_start
        self._clock = clock

        self.state = SchedulerState.IDLE
        self.last_execution: Optional[float] = None
        self.last_trigger: Optional[str] = None
        self.last_error: Optional[str] = None
        self.loop_count = 0
        self.error_count = 0

        self._wake = asyncio.Event()
        self._wake_reason: Optional[str] = None

    @classmethod
    def from_settings(cls, cycle: CycleFn, settings) -> "TriggerScheduler":
        rebalance = settings.rebalance
        return cls(
            cycle=cycle,
            interval_seconds=rebalance.interval_seconds,
            deposit_cooldown_seconds=rebalance.deposit_cooldown_seconds,
            min_trigger_amount=rebalance.min_trigger_amount,
            error_backoff_seconds=rebalance.error_backoff_seconds,
        )

    # =========================================================================
    # EXTERNAL SIGNALS (call from the event loop thread)
    # =========================================================================

    def trigger_manual(self) -> None:
        """Request an immediate cycle; wins over a pending deposit trigger"""
        logger.info("Manual rebalance trigger received")
        self._wake_reason = 'manual'
        self._wake.set()

    def on_deposit(self, balance: int) -> bool:
        """
        Report an idle balance increase.

        Returns:
            True if the deposit will trigger a cycle
        """
        if self.on_cooldown():
            remaining = self.deposit_cooldown_seconds - (self._clock() - self.last_execution)
            logger.info(f"Deposit detected but on cooldown ({remaining:.0f}s left), ignoring")
            return False

        if balance <= self.min_trigger_amount:
            logger.info(f"Deposit detected but balance {balance} <= minimum {self.min_trigger_amount}, ignoring")
            return False

        if self.state == SchedulerState.EXECUTING:
            logger.debug("Deposit detected during a cycle, ignoring")
            return False

        logger.info(f"Deposit detected (idle balance {balance}), triggering rebalance")
        if self._wake_reason is None:
            self._wake_reason = 'deposit'
        self._wake.set()
        return True

    def on_cooldown(self) -> bool:
        if self.last_execution is None:
            return False
        return self._clock() - self.last_execution < self.deposit_cooldown_seconds

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def seconds_until_next(self) -> float:
        if self.last_execution is None:
            return 0.0 if self.run_on_start else self.interval_seconds
        return max(0.0, self.last_execution + self.interval_seconds - self._clock())

    def _consume_wake(self) -> str:
        reason = self._wake_reason or 'manual'
        self._wake_reason = None
        self._wake.clear()
        return reason

    async def wait_for_trigger(self, token: CancellationToken) -> Optional[str]:
        """
        Block until the next trigger.

        Returns:
            'scheduled' | 'manual' | 'deposit', or None when cancelled
        """
        self.state = SchedulerState.WAITING

        if token.cancelled:
            return None
        if self._wake.is_set():
            return self._consume_wake()

        delay = self.seconds_until_next()
        logger.debug(f"Waiting for trigger (next scheduled in {delay:.0f}s)")

        timer = asyncio.ensure_future(asyncio.sleep(delay))
        wake = asyncio.ensure_future(self._wake.wait())
        cancel = asyncio.ensure_future(token.wait())
        waiters = {timer, wake, cancel}

        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
            await asyncio.gather(*waiters, return_exceptions=True)

        if cancel in done:
            return None
        if wake in done:
            return self._consume_wake()
        return 'scheduled'

    async def run_cycle(self, trigger: str) -> bool:
        """
        Execute one cycle and record its terminal state.

        Returns:
            True on success
        """
        self.state = SchedulerState.EXECUTING
        self.last_trigger = trigger
        cycle_number = self.loop_count + 1
        start = self._clock()
        succeeded = False

        logger.info(f"[Rebalance Loop {cycle_number}] Starting (trigger={trigger})")
        try:
            await self.cycle(trigger)
            succeeded = True
            self.last_error = None
        except Exception as e:
            self.error_count += 1
            self.last_error = str(e)
            metrics.inc('rebalance_errors_total')
            logger.error(f"[Rebalance Loop {cycle_number}] Failed: {e}", exc_info=True)
        finally:
            duration = self._clock() - start
            self.last_execution = self._clock()
            self.loop_count += 1
            self.state = SchedulerState.IDLE
            metrics.inc('rebalance_total', {'trigger': trigger})
            metrics.observe('rebalance_duration_seconds', duration)

        if succeeded:
            logger.info(f"[Rebalance Loop {cycle_number}] Completed in {duration:.1f}s")
        return succeeded

    async def run(self, token: CancellationToken) -> None:
        """Main loop; returns when the token is cancelled"""
        logger.info(
            f"Trigger scheduler started: interval={self.interval_seconds:.0f}s, "
            f"deposit_cooldown={self.deposit_cooldown_seconds:.0f}s, "
            f"min_trigger_amount={self.min_trigger_amount}"
        )

        while not token.cancelled:
            trigger = await self.wait_for_trigger(token)
            if trigger is None:
                break

            succeeded = await self.run_cycle(trigger)
            if not succeeded and self.error_backoff_seconds > 0:
                logger.info(f"Backing off {self.error_backoff_seconds:.1f}s after failed cycle")
                await token.sleep(self.error_backoff_seconds)

        self.state = SchedulerState.IDLE
        logger.info(f"Trigger scheduler stopped after {self.loop_count} cycles")
