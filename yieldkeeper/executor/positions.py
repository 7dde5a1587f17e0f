"""
Position Source - current per-strategy values, idle balance and liquidity

RpcPositionSource reads token balances through the shared ConnectionManager:
- strategy value: balance of the strategy's position_account
- idle balance: balance of the vault's idle token account
- liquidity: floor(balance * 0.98) of the strategy's liquidity_account
  (strategies without one are unlimited)

Values are rebuilt from chain state every call; nothing is cached across
cycles.
"""

from abc import ABC, abstractmethod
from datetime import datetime, UTC
from typing import List, Optional

from yieldkeeper.allocation.models import UNLIMITED, LiquidityConstraint, PositionSnapshot
from yieldkeeper.exceptions import RpcError
from yieldkeeper.executor.connection import ConnectionManager
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.strategies.registry import IDLE_ID, StrategyRegistry
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

# Share of reserve liquidity considered withdrawable this cycle
LIQUIDITY_RATIO_NUM = 98
LIQUIDITY_RATIO_DEN = 100


class PositionSource(ABC):
    """Read side of the allocation loop"""

    @abstractmethod
    def fetch_positions(self) -> List[PositionSnapshot]:
        """One snapshot per registered strategy (registry order) plus idle"""

    @abstractmethod
    def fetch_liquidity(self) -> List[LiquidityConstraint]:
        """Withdrawable ceiling per strategy"""


class RpcPositionSource(PositionSource):
    """
    Token-balance backed position source.

    Args:
        connection: Shared ConnectionManager
        registry: Strategy registry
        idle_token_account: Vault idle token account address
    """

    def __init__(self, connection: ConnectionManager, registry: StrategyRegistry, idle_token_account: str):
        self.connection = connection
        self.registry = registry
        self.idle_token_account = idle_token_account

    @classmethod
    def from_settings(cls, connection: ConnectionManager, registry: StrategyRegistry, settings) -> "RpcPositionSource":
        return cls(connection, registry, settings.vault.idle_token_account)

    def token_balance(self, account: str) -> Optional[int]:
        """
        Raw token amount of `account`.

        Returns None when the account does not exist (RPC error -32602),
        other errors propagate.
        """
        try:
            result = self.connection.call('getTokenAccountBalance', [account, {'commitment': 'confirmed'}])
        except RpcError as e:
            if e.code == -32602:
                return None
            raise
        return int(result['value']['amount'])

    def fetch_positions(self) -> List[PositionSnapshot]:
        observed_at = datetime.now(UTC)
        snapshots: List[PositionSnapshot] = []

        for strategy in self.registry:
            if not strategy.position_account:
                logger.warning(f"Strategy {strategy.id} has no position_account, reporting 0")
                value = 0
            else:
                value = self.token_balance(strategy.position_account) or 0

            snapshots.append(PositionSnapshot(
                strategy_id=strategy.id,
                value=value,
                observed_at=observed_at,
                strategy_type=strategy.kind_name,
            ))
            metrics.set('strategy_position_value', value, {
                'strategy_id': strategy.id,
                'strategy_type': strategy.kind_name,
            })

        idle = self.token_balance(self.idle_token_account) or 0
        snapshots.append(PositionSnapshot(IDLE_ID, idle, observed_at=observed_at, strategy_type='idle'))

        total = sum(s.value for s in snapshots)
        metrics.set('vault_idle_balance', idle)
        metrics.set('vault_total_value', total)

        logger.debug(f"Positions fetched: total={total}, idle={idle}, strategies={len(snapshots) - 1}")
        return snapshots

    def fetch_liquidity(self) -> List[LiquidityConstraint]:
        constraints: List[LiquidityConstraint] = []
        for strategy in self.registry:
            if not strategy.liquidity_account:
                constraints.append(LiquidityConstraint(strategy.id, UNLIMITED))
                continue

            balance = self.token_balance(strategy.liquidity_account)
            if balance is None:
                logger.warning(f"Liquidity account for {strategy.id} not found, treating as unlimited")
                constraints.append(LiquidityConstraint(strategy.id, UNLIMITED))
                continue

            ceiling = balance * LIQUIDITY_RATIO_NUM // LIQUIDITY_RATIO_DEN
            constraints.append(LiquidityConstraint(strategy.id, ceiling))

        return constraints
