"""
Integration tests: full rebalance cycle against a simulated chain

RebalanceCycle runs with the real RpcPositionSource, AllocationEngine and
RebalanceOrchestrator. Only the RPC (MockConnection over an in-memory
balance table) and the transaction sender (applies instructions to that
table) are simulated.
"""

from dataclasses import replace

import pytest

from yieldkeeper.allocation.engine import AllocationEngine
from yieldkeeper.allocation.models import MAX_WITHDRAW, FallbackReason, Policy
from yieldkeeper.exceptions import RebalanceError, TransactionError
from yieldkeeper.executor.positions import RpcPositionSource
from yieldkeeper.executor.rebalancer import RebalanceOrchestrator
from yieldkeeper.orchestration.rebalance_loop import RebalanceCycle
from yieldkeeper.orchestration.trigger_scheduler import TriggerScheduler
from yieldkeeper.strategies.registry import StrategyRegistry
from tests.mocks.mock_rpc import MockConnection, StaticResolver, token_balances

pytestmark = pytest.mark.integration

IDLE_ACCOUNT = "idle-account"


class SimulatedChain:
    """
    Balance table plus a sender that applies vault instructions to it.

    Positions live at '<id>-position', strategies are addressed by
    '<id>-address' (see conftest.make_registry).
    """

    def __init__(self, positions, idle=0, liquidity=None, fail_on=()):
        self.balances = {f"{sid}-position": value for sid, value in positions.items()}
        self.balances[IDLE_ACCOUNT] = idle
        for sid, value in (liquidity or {}).items():
            self.balances[f"{sid}-liquidity"] = value
        self.fail_on = set(fail_on)
        self.sent = []

    def connection(self):
        return MockConnection({'getTokenAccountBalance': token_balances(self.balances)})

    def value(self, strategy_id):
        return self.balances[f"{strategy_id}-position"]

    def send_and_confirm(self, instructions, lookup_tables=(), tx_type="unknown", compute_unit_limit=None):
        self.sent.append([(ix.action, ix.data_dict().get('amount')) for ix in instructions])
        if len(self.sent) in self.fail_on:
            raise TransactionError(f"transaction {len(self.sent)} rejected")

        for ix in instructions:
            account = ix.accounts_dict()['strategy'].replace('-address', '-position')
            amount = ix.data_dict()['amount']
            if ix.action == 'withdraw_strategy':
                moved = min(amount, self.balances[account])
                self.balances[account] -= moved
                self.balances[IDLE_ACCOUNT] += moved
            elif ix.action == 'deposit_strategy':
                if amount > self.balances[IDLE_ACCOUNT]:
                    raise TransactionError("insufficient idle funds")
                self.balances[account] += amount
                self.balances[IDLE_ACCOUNT] -= amount
        return f"sig-{len(self.sent)}"


@pytest.fixture
def make_cycle(make_registry, adapters):
    def _create(chain, ids=('a', 'b', 'c'), liquidity_ids=(), resolver=None, policy=Policy.EQUAL_WEIGHT):
        registry = make_registry([(sid, 'kamino_vault') for sid in ids])
        if liquidity_ids:
            registry = StrategyRegistry.from_descriptors([
                replace(s, liquidity_account=f"{s.id}-liquidity") if s.id in liquidity_ids else s
                for s in registry
            ])
        positions = RpcPositionSource(chain.connection(), registry, IDLE_ACCOUNT)
        orchestrator = RebalanceOrchestrator(registry, adapters, sender=chain)
        return RebalanceCycle(positions, AllocationEngine(resolver), orchestrator, policy)
    return _create


class TestEqualWeightCycle:
    """Equal-weight end to end"""

    @pytest.mark.asyncio
    async def test_idle_spread_then_noop(self, make_cycle):
        chain = SimulatedChain({'a': 0, 'b': 0, 'c': 0}, idle=100)
        cycle = make_cycle(chain)

        first = await cycle('deposit')

        assert first.status == 'success'
        assert [chain.value(s) for s in 'abc'] == [34, 33, 33]
        assert chain.balances[IDLE_ACCOUNT] == 0

        second = await cycle('scheduled')

        assert second.status == 'noop'
        assert len(chain.sent) == 3

    @pytest.mark.asyncio
    async def test_single_position_spread(self, make_cycle):
        """[100, 0, 0] -> one withdrawal, two haircut deposits, converges next cycle"""
        chain = SimulatedChain({'a': 100, 'b': 0, 'c': 0})
        cycle = make_cycle(chain)

        first = await cycle('scheduled')

        assert cycle.last_target.values() == [34, 33, 33, 0]
        assert chain.sent == [[('withdraw_strategy', 66)], [('deposit_strategy', 32)], [('deposit_strategy', 32)]]
        assert first.status == 'success'
        assert chain.balances[IDLE_ACCOUNT] == 2

        await cycle('scheduled')
        assert [chain.value(s) for s in 'abc'] == [34, 33, 33]

        assert (await cycle('scheduled')).status == 'noop'

    @pytest.mark.asyncio
    async def test_lock_above_current_is_clamped(self, make_cycle):
        """[50, 50] with a's reserve empty: a stays at 50, nothing moves"""
        chain = SimulatedChain({'a': 50, 'b': 50}, liquidity={'a': 0})
        cycle = make_cycle(chain, ids=('a', 'b'), liquidity_ids=('a',))

        outcome = await cycle('manual')

        assert cycle.last_target.values() == [50, 50, 0]
        assert outcome.status == 'noop'
        assert chain.sent == []


class TestYieldCycle:
    """Yield policy end to end"""

    @pytest.mark.asyncio
    async def test_ceiling_caps_move_to_winner(self, make_cycle):
        """A can release 20 of 100 (liquidity 21 * 0.98 = 20): A 80, B 120"""
        chain = SimulatedChain({'a': 100, 'b': 100}, liquidity={'a': 21})
        cycle = make_cycle(chain, ids=('a', 'b'), liquidity_ids=('a',),
                           resolver=StaticResolver(winner_id='b'), policy=Policy.YIELD)

        outcome = await cycle('scheduled')

        assert cycle.last_target.as_dict()['a'] == 80
        assert cycle.last_target.as_dict()['b'] == 120
        assert outcome.status == 'success'
        assert chain.sent[0] == [('withdraw_strategy', 20)]

    @pytest.mark.asyncio
    async def test_full_exit_uses_max_withdraw(self, make_cycle):
        chain = SimulatedChain({'a': 70, 'b': 30})
        cycle = make_cycle(chain, ids=('a', 'b'), resolver=StaticResolver(winner_id='b'), policy=Policy.YIELD)

        await cycle('scheduled')

        assert chain.sent[0] == [('withdraw_strategy', MAX_WITHDRAW)]
        assert chain.value('a') == 0
        assert chain.value('b') == 99
        assert chain.balances[IDLE_ACCOUNT] == 1

    @pytest.mark.asyncio
    async def test_api_failure_falls_back(self, make_cycle):
        chain = SimulatedChain({'a': 90, 'b': 0, 'c': 0})
        cycle = make_cycle(chain, resolver=StaticResolver(reason=FallbackReason.API_FAIL), policy=Policy.YIELD)

        await cycle('scheduled')

        assert cycle.last_target.policy == Policy.EQUAL_WEIGHT
        assert cycle.last_target.fallback_reason == FallbackReason.API_FAIL
        assert cycle.last_target.values() == [30, 30, 30, 0]


class TestFailures:
    """Failed batches end the cycle; the next cycle recomputes"""

    @pytest.mark.asyncio
    async def test_failed_deposit_raises_and_recovers(self, make_cycle):
        chain = SimulatedChain({'a': 0, 'b': 0, 'c': 0}, idle=90, fail_on={2})
        cycle = make_cycle(chain)

        with pytest.raises(RebalanceError):
            await cycle('scheduled')

        assert chain.value('a') == 30
        assert cycle.last_outcome.signatures == ['sig-1']

        chain.fail_on.clear()
        outcome = await cycle('scheduled')

        assert outcome.status == 'success'
        assert [chain.value(s) for s in 'abc'] == [30, 30, 30]

    @pytest.mark.asyncio
    async def test_scheduler_records_failed_cycle(self, make_cycle):
        chain = SimulatedChain({'a': 0, 'b': 0}, idle=10, fail_on={1})
        scheduler = TriggerScheduler(make_cycle(chain, ids=('a', 'b')), interval_seconds=60, error_backoff_seconds=0)

        assert await scheduler.run_cycle('manual') is False
        assert scheduler.error_count == 1
        assert 'rejected' in scheduler.last_error
