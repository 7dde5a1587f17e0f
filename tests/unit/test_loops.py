"""
Tests for the sibling periodic loops (refresh, harvest fee, claim reward)
"""

import asyncio
from datetime import datetime, timedelta, UTC

import pytest

from yieldkeeper.allocation.models import PositionSnapshot
from yieldkeeper.exceptions import TransactionError
from yieldkeeper.executor.positions import PositionSource
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator
from yieldkeeper.loops import ClaimRewardLoop, HarvestFeeLoop, PeriodicLoop, RefreshLoop
from yieldkeeper.strategies.adapters import VaultAdapter
from yieldkeeper.strategies.registry import IDLE_ID, StrategyDescriptor, StrategyKind, StrategyRegistry
from yieldkeeper.utils.cancellation import CancellationToken
from tests.mocks.mock_rpc import MockSender

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class StaticPositions(PositionSource):
    def __init__(self, snapshots):
        self.snapshots = snapshots

    def fetch_positions(self):
        return list(self.snapshots)

    def fetch_liquidity(self):
        return []


@pytest.fixture
def sender():
    return MockSender()


@pytest.fixture
def orchestrator(registry, adapters, sender):
    return RebalanceOrchestrator(registry, adapters, sender=sender)


class CountingLoop(PeriodicLoop):
    name = "counting"
    label = "Counting Loop"

    def __init__(self, fail=False, **kwargs):
        super().__init__(**kwargs)
        self.fail = fail
        self.steps = 0

    async def step(self):
        self.steps += 1
        if self.fail:
            raise RuntimeError("step failed")


class TestPeriodicLoop:
    """Test the shared loop shape"""

    @pytest.mark.asyncio
    async def test_success_recorded(self, metrics_sink):
        loop = CountingLoop(interval_seconds=60, clock=lambda: 100.0)

        assert await loop.run_once() is True
        assert loop.loop_count == 1
        assert loop.last_execution == 100.0
        assert ('loop_iterations_total', 'inc', 1, {'loop': 'counting'}) in metrics_sink.events

    @pytest.mark.asyncio
    async def test_error_counted_not_raised(self, metrics_sink):
        loop = CountingLoop(fail=True, interval_seconds=60)

        assert await loop.run_once() is False
        assert loop.error_count == 1
        assert loop.last_execution is None
        assert ('loop_errors_total', 'inc', 1, {'loop': 'counting'}) in metrics_sink.events

    def test_due_after_interval(self):
        now = [0.0]
        loop = CountingLoop(interval_seconds=60, clock=lambda: now[0])
        assert loop.is_due()

        loop.last_execution = 0.0
        now[0] = 59.0
        assert not loop.is_due()
        now[0] = 60.0
        assert loop.is_due()

    @pytest.mark.asyncio
    async def test_run_stops_on_cancel(self):
        loop = CountingLoop(interval_seconds=3600, check_seconds=0.01)
        token = CancellationToken()

        task = asyncio.create_task(loop.run(token))
        await asyncio.sleep(0.05)
        token.cancel()
        await asyncio.wait_for(task, timeout=1)

        assert loop.steps == 1


class TestRefreshLoop:
    """Test staleness detection and refresh batching"""

    def make_loop(self, snapshots, orchestrator, **kwargs):
        kwargs.setdefault('stale_after_seconds', 600)
        kwargs.setdefault('min_position_value', 100)
        return RefreshLoop(StaticPositions(snapshots), orchestrator, **kwargs)

    def test_stale_selection(self, orchestrator):
        snapshots = [
            PositionSnapshot('a', 1000, last_updated=NOW - timedelta(seconds=601)),
            PositionSnapshot('b', 1000, last_updated=NOW - timedelta(seconds=10)),
            PositionSnapshot('c', 50, last_updated=NOW - timedelta(days=1)),
            PositionSnapshot(IDLE_ID, 10 ** 9),
        ]
        loop = self.make_loop(snapshots, orchestrator)

        assert [s.id for s in loop.stale_strategies(snapshots, now=NOW)] == ['a']

    def test_unknown_update_time_is_stale(self, orchestrator):
        snapshots = [PositionSnapshot('a', 1000)]
        loop = self.make_loop(snapshots, orchestrator)

        assert [s.id for s in loop.stale_strategies(snapshots, now=NOW)] == ['a']

    def test_own_refresh_record_used(self, orchestrator):
        snapshots = [PositionSnapshot('a', 1000)]
        loop = self.make_loop(snapshots, orchestrator)
        loop.refreshed_at['a'] = NOW - timedelta(seconds=30)

        assert loop.stale_strategies(snapshots, now=NOW) == []

    @pytest.mark.asyncio
    async def test_zero_deposits_batched_in_pairs(self, orchestrator, sender):
        snapshots = [PositionSnapshot(sid, 1000) for sid in ('a', 'b', 'c')]
        loop = self.make_loop(snapshots, orchestrator, batch_size=2)

        await loop.step()

        assert sender.actions() == [['deposit_strategy'] * 2, ['deposit_strategy']]
        amounts = [ix.data_dict()['amount'] for tx in sender.sent for ix in tx['instructions']]
        assert amounts == [0, 0, 0]
        assert all(tx['tx_type'] == 'refresh' for tx in sender.sent)
        assert set(loop.refreshed_at) == {'a', 'b', 'c'}

    @pytest.mark.asyncio
    async def test_nothing_stale_sends_nothing(self, orchestrator, sender):
        loop = self.make_loop([PositionSnapshot('a', 1)], orchestrator)

        await loop.step()

        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_failed_submission_raises(self, registry, adapters):
        orchestrator = RebalanceOrchestrator(registry, adapters, sender=MockSender(fail_on={1}))
        loop = self.make_loop([PositionSnapshot('a', 1000)], orchestrator)

        with pytest.raises(TransactionError):
            await loop.step()
        assert loop.refreshed_at == {}

    @pytest.mark.asyncio
    async def test_skipped_strategy_not_marked_refreshed(self, adapters, sender):
        registry = StrategyRegistry.from_descriptors([
            StrategyDescriptor('a', StrategyKind.KAMINO_VAULT, 'a-address', position_account='a-position'),
            StrategyDescriptor('d', StrategyKind.DRIFT_EARN, 'd-address', position_account='d-position'),
        ])
        orchestrator = RebalanceOrchestrator(registry, adapters, sender=sender)
        loop = self.make_loop([PositionSnapshot('a', 1000), PositionSnapshot('d', 1000)], orchestrator)

        await loop.step()

        assert sender.actions() == [['deposit_strategy']]
        assert set(loop.refreshed_at) == {'a'}
        assert [s.id for s in loop.stale_strategies([PositionSnapshot('d', 1000)])] == ['d']


class TestHarvestFeeLoop:
    @pytest.mark.asyncio
    async def test_harvest_submitted(self, orchestrator, sender):
        loop = HarvestFeeLoop(VaultAdapter("vault-address", "manager-address"), orchestrator, interval_seconds=1800)

        assert await loop.run_once() is True
        assert sender.actions() == [['harvest_fee']]
        assert sender.sent[0]['tx_type'] == 'harvest_fee'

    @pytest.mark.asyncio
    async def test_harvest_failure_counted(self, registry, adapters):
        orchestrator = RebalanceOrchestrator(registry, adapters, sender=MockSender(fail_on={1}))
        loop = HarvestFeeLoop(VaultAdapter("vault-address", "manager-address"), orchestrator, interval_seconds=1800)

        assert await loop.run_once() is False
        assert loop.error_count == 1


class TestClaimRewardLoop:
    def test_only_reward_bearing_strategies(self, orchestrator):
        loop = ClaimRewardLoop(orchestrator, interval_seconds=3600)

        assert [s.id for s in loop.claimable()] == ['a']

    @pytest.mark.asyncio
    async def test_one_transaction_per_strategy(self, make_registry, adapters):
        registry = make_registry([('k1', 'kamino_vault'), ('k2', 'kamino_market'), ('j', 'jupiter_lend')])
        sender = MockSender(fail_on={1})
        loop = ClaimRewardLoop(RebalanceOrchestrator(registry, adapters, sender=sender), interval_seconds=3600)

        with pytest.raises(TransactionError, match='k1'):
            await loop.step()

        assert sender.actions() == [['claim_reward'], ['claim_reward']]

    @pytest.mark.asyncio
    async def test_run_skipped_without_rewards(self, make_registry, adapters):
        registry = make_registry([('j', 'jupiter_lend')])
        loop = ClaimRewardLoop(RebalanceOrchestrator(registry, adapters, sender=MockSender()), interval_seconds=1)

        await asyncio.wait_for(loop.run(CancellationToken()), timeout=1)

        assert loop.loop_count == 0
