"""
Tests for TriggerScheduler

- deposit triggers respect cooldown and minimum amount
- manual trigger interrupts a pending wait
- every cycle (success or failure) updates counters
- cycles never overlap
"""

import asyncio

import pytest

from yieldkeeper.orchestration.trigger_scheduler import SchedulerState, TriggerScheduler
from yieldkeeper.utils.cancellation import CancellationToken


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


async def noop_cycle(trigger):
    return trigger


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_scheduler(clock):
    def _create(cycle=noop_cycle, **kwargs):
        kwargs.setdefault('interval_seconds', 1800)
        kwargs.setdefault('error_backoff_seconds', 0)
        return TriggerScheduler(cycle, clock=clock, **kwargs)
    return _create


class TestDepositTrigger:
    """Test deposit event filtering"""

    def test_deposit_accepted_off_cooldown(self, make_scheduler):
        scheduler = make_scheduler(min_trigger_amount=100)

        assert scheduler.on_deposit(500) is True

    def test_deposit_ignored_on_cooldown(self, make_scheduler, clock):
        scheduler = make_scheduler()
        scheduler.last_execution = clock.now - 10

        assert scheduler.on_cooldown()
        assert scheduler.on_deposit(500) is False

    def test_cooldown_expires(self, make_scheduler, clock):
        scheduler = make_scheduler(interval_seconds=60)
        scheduler.last_execution = clock.now - 61

        assert not scheduler.on_cooldown()
        assert scheduler.on_deposit(500) is True

    def test_deposit_below_minimum_ignored(self, make_scheduler):
        scheduler = make_scheduler(min_trigger_amount=100)

        assert scheduler.on_deposit(100) is False
        assert scheduler.on_deposit(99) is False

    def test_deposit_during_cycle_ignored(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.state = SchedulerState.EXECUTING

        assert scheduler.on_deposit(500) is False

    def test_cooldown_defaults_to_interval(self, make_scheduler):
        assert make_scheduler(interval_seconds=42).deposit_cooldown_seconds == 42

    def test_invalid_interval(self, make_scheduler):
        with pytest.raises(ValueError):
            make_scheduler(interval_seconds=0)


class TestWaitForTrigger:
    """Test the race-free wait"""

    @pytest.mark.asyncio
    async def test_pending_deposit_resolves_immediately(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.on_deposit(500)

        assert await scheduler.wait_for_trigger(CancellationToken()) == 'deposit'
        assert scheduler.state == SchedulerState.WAITING

    @pytest.mark.asyncio
    async def test_manual_interrupts_wait(self, make_scheduler, clock):
        scheduler = make_scheduler()
        scheduler.last_execution = clock.now  # next scheduled run in 1800s

        waiter = asyncio.create_task(scheduler.wait_for_trigger(CancellationToken()))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        scheduler.trigger_manual()
        assert await asyncio.wait_for(waiter, timeout=1) == 'manual'

    @pytest.mark.asyncio
    async def test_manual_wins_over_deposit(self, make_scheduler):
        scheduler = make_scheduler()
        scheduler.trigger_manual()
        scheduler.on_deposit(500)

        assert await scheduler.wait_for_trigger(CancellationToken()) == 'manual'

    @pytest.mark.asyncio
    async def test_timer_elapses(self, make_scheduler):
        scheduler = make_scheduler(interval_seconds=0.01, run_on_start=False)

        assert await asyncio.wait_for(scheduler.wait_for_trigger(CancellationToken()), timeout=1) == 'scheduled'

    @pytest.mark.asyncio
    async def test_first_cycle_runs_on_start(self, make_scheduler):
        scheduler = make_scheduler()

        assert scheduler.seconds_until_next() == 0.0
        assert await asyncio.wait_for(scheduler.wait_for_trigger(CancellationToken()), timeout=1) == 'scheduled'

    @pytest.mark.asyncio
    async def test_cancellation_ends_wait(self, make_scheduler, clock):
        scheduler = make_scheduler()
        scheduler.last_execution = clock.now
        token = CancellationToken()

        waiter = asyncio.create_task(scheduler.wait_for_trigger(token))
        await asyncio.sleep(0.01)
        token.cancel()

        assert await asyncio.wait_for(waiter, timeout=1) is None

    @pytest.mark.asyncio
    async def test_trigger_consumed_once(self, make_scheduler, clock):
        scheduler = make_scheduler()
        scheduler.trigger_manual()
        await scheduler.wait_for_trigger(CancellationToken())

        scheduler.last_execution = clock.now
        waiter = asyncio.create_task(scheduler.wait_for_trigger(CancellationToken()))
        await asyncio.sleep(0.01)
        assert not waiter.done()
        waiter.cancel()
        await asyncio.gather(waiter, return_exceptions=True)


class TestRunCycle:
    """Test cycle bookkeeping"""

    @pytest.mark.asyncio
    async def test_success_updates_state(self, make_scheduler, clock, metrics_sink):
        scheduler = make_scheduler()

        assert await scheduler.run_cycle('manual') is True
        assert scheduler.loop_count == 1
        assert scheduler.last_execution == clock.now
        assert scheduler.last_trigger == 'manual'
        assert scheduler.state == SchedulerState.IDLE
        assert ('rebalance_total', 'inc', 1, {'trigger': 'manual'}) in metrics_sink.events

    @pytest.mark.asyncio
    async def test_failure_updates_state(self, make_scheduler, clock, metrics_sink):
        async def failing(trigger):
            raise RuntimeError("rpc down")

        scheduler = make_scheduler(cycle=failing)

        assert await scheduler.run_cycle('scheduled') is False
        assert scheduler.loop_count == 1
        assert scheduler.error_count == 1
        assert scheduler.last_error == "rpc down"
        assert scheduler.last_execution == clock.now
        assert metrics_sink.named('rebalance_errors_total')
        assert ('rebalance_total', 'inc', 1, {'trigger': 'scheduled'}) in metrics_sink.events

    @pytest.mark.asyncio
    async def test_cycles_never_overlap(self):
        token = CancellationToken()
        running = 0
        max_running = 0
        calls = []

        async def cycle(trigger):
            nonlocal running, max_running
            running += 1
            max_running = max(max_running, running)
            calls.append(trigger)
            await asyncio.sleep(0.01)
            running -= 1
            if len(calls) == 3:
                token.cancel()

        scheduler = TriggerScheduler(cycle, interval_seconds=0.001, error_backoff_seconds=0)
        await asyncio.wait_for(scheduler.run(token), timeout=5)

        assert len(calls) == 3
        assert max_running == 1
        assert scheduler.loop_count == 3
        assert scheduler.state == SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_loop_survives_failed_cycle(self):
        token = CancellationToken()
        calls = []

        async def cycle(trigger):
            calls.append(trigger)
            if len(calls) == 1:
                raise RuntimeError("first cycle fails")
            token.cancel()

        scheduler = TriggerScheduler(cycle, interval_seconds=0.001, error_backoff_seconds=0.001)
        await asyncio.wait_for(scheduler.run(token), timeout=5)

        assert len(calls) == 2
        assert scheduler.error_count == 1
