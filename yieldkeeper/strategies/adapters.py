"""
Strategy Adapters

Capability interface {build_deposit, build_withdraw} with one implementation
per strategy kind, selected by a lookup keyed on kind.

Adapters produce Instruction descriptors (program, action, accounts, data).
Byte-level encoding is done by the external TransactionSigner, so every
adapter here only decides WHICH accounts and arguments an operation needs.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from yieldkeeper.exceptions import AdapterError, UnknownStrategyKindError
from yieldkeeper.strategies.registry import StrategyDescriptor, StrategyKind
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

VAULT_PROGRAM = "vault"


@dataclass(frozen=True)
class Instruction:
    """Protocol-level instruction descriptor"""
    program: str
    action: str
    accounts: Tuple[Tuple[str, str], ...] = ()
    data: Tuple[Tuple[str, Any], ...] = ()

    def accounts_dict(self) -> Dict[str, str]:
        return dict(self.accounts)

    def data_dict(self) -> Dict[str, Any]:
        return dict(self.data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'program': self.program,
            'action': self.action,
            'accounts': self.accounts_dict(),
            'data': self.data_dict(),
        }


def make_instruction(program: str, action: str, accounts: Dict[str, str], data: Dict[str, Any]) -> Instruction:
    return Instruction(
        program=program,
        action=action,
        accounts=tuple(accounts.items()),
        data=tuple(data.items()),
    )


@dataclass
class AdapterResult:
    """Instructions for one operation plus the lookup tables they need"""
    instructions: List[Instruction] = field(default_factory=list)
    lookup_tables: List[str] = field(default_factory=list)


class StrategyAdapter:
    """
    Base adapter: vault-side deposit/withdraw into one strategy.

    Subclasses declare the adaptor name and the strategy-specific remaining
    accounts. Withdrawals with amount == MAX_WITHDRAW let the adaptor drain
    the whole position (including yield accrued since the snapshot).
    """

    kind: StrategyKind
    adaptor: str
    supports_rewards = False

    def __init__(self, vault_address: str, manager_address: str):
        self.vault_address = vault_address
        self.manager_address = manager_address

    # ------------------------------------------------------------------ api

    def build_deposit(self, strategy: StrategyDescriptor, amount: int) -> AdapterResult:
        return self._build('deposit_strategy', strategy, amount)

    def build_withdraw(self, strategy: StrategyDescriptor, amount: int) -> AdapterResult:
        return self._build('withdraw_strategy', strategy, amount)

    def build_claim_reward(self, strategy: StrategyDescriptor) -> AdapterResult:
        raise AdapterError(f"{self.adaptor} does not support reward claims")

    # ------------------------------------------------------------ internals

    def _build(self, action: str, strategy: StrategyDescriptor, amount: int) -> AdapterResult:
        if amount < 0:
            raise AdapterError(f"Negative amount {amount} for {strategy.id}")
        if not strategy.address:
            raise AdapterError(f"Strategy {strategy.id} has no resolved address")

        accounts = {
            'vault': self.vault_address,
            'manager': self.manager_address,
            'strategy': strategy.address,
        }
        accounts.update(self.remaining_accounts(strategy))

        instruction = make_instruction(
            VAULT_PROGRAM,
            action,
            accounts,
            {'adaptor': self.adaptor, 'amount': int(amount)},
        )
        return AdapterResult(instructions=[instruction], lookup_tables=self.lookup_tables(strategy))

    def remaining_accounts(self, strategy: StrategyDescriptor) -> Dict[str, str]:
        return {}

    def lookup_tables(self, strategy: StrategyDescriptor) -> List[str]:
        return [strategy.lookup_table] if strategy.lookup_table else []


class KaminoVaultAdapter(StrategyAdapter):
    kind = StrategyKind.KAMINO_VAULT
    adaptor = "kamino_vault"
    supports_rewards = True

    def remaining_accounts(self, strategy: StrategyDescriptor) -> Dict[str, str]:
        accounts = {'kvault': strategy.address}
        if strategy.liquidity_account:
            accounts['reserve_liquidity'] = strategy.liquidity_account
        return accounts

    def build_claim_reward(self, strategy: StrategyDescriptor) -> AdapterResult:
        instruction = make_instruction(
            VAULT_PROGRAM,
            'claim_reward',
            {'vault': self.vault_address, 'manager': self.manager_address, 'strategy': strategy.address},
            {'adaptor': self.adaptor},
        )
        return AdapterResult(instructions=[instruction], lookup_tables=self.lookup_tables(strategy))


class KaminoMarketAdapter(StrategyAdapter):
    kind = StrategyKind.KAMINO_MARKET
    adaptor = "kamino_market"
    supports_rewards = True

    def remaining_accounts(self, strategy: StrategyDescriptor) -> Dict[str, str]:
        return {'reserve': strategy.address}

    def build_claim_reward(self, strategy: StrategyDescriptor) -> AdapterResult:
        instruction = make_instruction(
            VAULT_PROGRAM,
            'claim_reward',
            {'vault': self.vault_address, 'manager': self.manager_address, 'reserve': strategy.address},
            {'adaptor': self.adaptor},
        )
        return AdapterResult(instructions=[instruction], lookup_tables=self.lookup_tables(strategy))


class DriftEarnAdapter(StrategyAdapter):
    kind = StrategyKind.DRIFT_EARN
    adaptor = "drift_earn"

    def remaining_accounts(self, strategy: StrategyDescriptor) -> Dict[str, str]:
        if strategy.market_index is None:
            raise AdapterError(f"Drift strategy {strategy.id} has no market_index")
        return {'spot_market_vault': strategy.address, 'market_index': str(strategy.market_index)}


class JupiterLendAdapter(StrategyAdapter):
    kind = StrategyKind.JUPITER_LEND
    adaptor = "jupiter_lend"

    def remaining_accounts(self, strategy: StrategyDescriptor) -> Dict[str, str]:
        return {'lending': strategy.address}


class VaultAdapter:
    """Vault-level instructions that are not tied to one strategy"""

    def __init__(self, vault_address: str, manager_address: str):
        self.vault_address = vault_address
        self.manager_address = manager_address

    def build_harvest_fee(self) -> AdapterResult:
        instruction = make_instruction(
            VAULT_PROGRAM,
            'harvest_fee',
            {'vault': self.vault_address, 'harvester': self.manager_address},
            {},
        )
        return AdapterResult(instructions=[instruction])


ADAPTER_CLASSES = {
    cls.kind: cls
    for cls in (KaminoVaultAdapter, KaminoMarketAdapter, DriftEarnAdapter, JupiterLendAdapter)
}


class AdapterRegistry:
    """Lookup of one adapter instance per strategy kind"""

    def __init__(self, vault_address: str, manager_address: str):
        self._adapters: Dict[StrategyKind, StrategyAdapter] = {
            kind: cls(vault_address, manager_address) for kind, cls in ADAPTER_CLASSES.items()
        }

    def get(self, kind: Union[StrategyKind, str]) -> StrategyAdapter:
        adapter = self._adapters.get(kind)
        if adapter is None:
            raise UnknownStrategyKindError(f"Unknown strategy type '{kind}'")
        return adapter

    def find(self, kind: Union[StrategyKind, str]) -> Optional[StrategyAdapter]:
        return self._adapters.get(kind)
