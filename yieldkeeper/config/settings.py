"""
Typed settings derived from the raw YAML config.

Every component receives one of these sections instead of digging through
the raw dict. Validation failures surface as ValueError at startup.
"""

from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from yieldkeeper.config.loader import Config
from yieldkeeper.exceptions import ConfigurationError


class RpcSettings(BaseModel):
    url: str
    fallback_url: Optional[str] = None
    ws_url: Optional[str] = None
    timeout_seconds: float = Field(default=30.0, gt=0)
    health_check_seconds: float = Field(default=30.0, gt=0)

    @field_validator('fallback_url', 'ws_url', mode='before')
    @classmethod
    def _empty_to_none(cls, v):
        return v or None


class VaultSettings(BaseModel):
    address: str
    idle_token_account: str
    lookup_table: Optional[str] = None
    asset_mint: str
    asset_symbol: Optional[str] = None
    asset_decimals: int = Field(default=6, ge=0)
    asset_price_usd: float = Field(default=1.0, gt=0)

    @field_validator('lookup_table', 'asset_symbol', mode='before')
    @classmethod
    def _empty_to_none(cls, v):
        return v or None


class SignerSettings(BaseModel):
    # "package.module:ClassName" of an external TransactionSigner implementation
    class_path: Optional[str] = Field(default=None, alias='class')
    key_path: Optional[str] = None
    secret_key: Optional[str] = None

    model_config = {'populate_by_name': True}

    @field_validator('class_path', 'key_path', 'secret_key', mode='before')
    @classmethod
    def _empty_to_none(cls, v):
        return v or None


class YieldApiSettings(BaseModel):
    url: str
    # Token price endpoint (Jupiter price API shape); unset uses vault.asset_price_usd
    price_url: Optional[str] = None
    timeout_seconds: float = Field(default=10.0, gt=0)
    min_tvl_usd: float = Field(default=0.0, ge=0)
    max_dilution: float = Field(default=0.005, ge=0)

    @field_validator('price_url', mode='before')
    @classmethod
    def _empty_to_none(cls, v):
        return v or None


class RebalanceSettings(BaseModel):
    enabled: bool = True
    policy: str = 'yield'
    interval_seconds: float = Field(default=1800.0, gt=0)
    deposit_cooldown_seconds: Optional[float] = None
    min_trigger_amount: int = Field(default=0, ge=0)
    batch_size: int = Field(default=1, ge=1)
    error_backoff_seconds: float = Field(default=12.4, ge=0)

    @field_validator('policy')
    @classmethod
    def _known_policy(cls, v):
        if v not in ('yield', 'equal_weight'):
            raise ValueError(f"unknown policy '{v}'")
        return v

    @model_validator(mode='after')
    def _default_cooldown(self):
        if self.deposit_cooldown_seconds is None:
            self.deposit_cooldown_seconds = self.interval_seconds
        return self


class TransactionSettings(BaseModel):
    confirm_timeout_seconds: float = Field(default=60.0, gt=0)
    confirm_poll_seconds: float = Field(default=1.0, gt=0)
    submit_attempts: int = Field(default=3, ge=1)
    default_priority_fee: int = Field(default=100, ge=0)
    compute_unit_margin: float = Field(default=1.1, ge=1.0)


class WorkerSettings(BaseModel):
    max_memory_mb: int = Field(default=2048, gt=0)
    max_restarts: int = Field(default=3, ge=0)
    restart_base_delay_seconds: float = Field(default=1.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=10.0, gt=0)


class RefreshSettings(BaseModel):
    enabled: bool = True
    interval_seconds: float = Field(default=600.0, gt=0)
    check_seconds: float = Field(default=30.0, gt=0)
    min_position_value: int = Field(default=1_000_000, ge=0)
    batch_size: int = Field(default=2, ge=1)


class PeriodicLoopSettings(BaseModel):
    enabled: bool = False
    interval_seconds: float = Field(default=3600.0, gt=0)
    check_seconds: float = Field(default=30.0, gt=0)


class HealthSettings(BaseModel):
    host: str = '0.0.0.0'
    port: int = Field(default=9090, gt=0)


class ShutdownSettings(BaseModel):
    grace_seconds: float = Field(default=10.0, ge=0)
    safety_timeout_seconds: float = Field(default=15.0, gt=0)


class RebalancerSettings(BaseModel):
    """All typed sections of the YieldKeeper configuration"""

    dry_run: bool = True
    strategies_file: str = 'config/strategies.yaml'
    rpc: RpcSettings
    vault: VaultSettings
    signer: SignerSettings = Field(default_factory=SignerSettings)
    yield_api: YieldApiSettings
    rebalance: RebalanceSettings = Field(default_factory=RebalanceSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    refresh: RefreshSettings = Field(default_factory=RefreshSettings)
    harvest: PeriodicLoopSettings = Field(
        default_factory=lambda: PeriodicLoopSettings(enabled=True, interval_seconds=1800.0)
    )
    rewards: PeriodicLoopSettings = Field(default_factory=PeriodicLoopSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    shutdown: ShutdownSettings = Field(default_factory=ShutdownSettings)

    @classmethod
    def from_config(cls, config: Config) -> "RebalancerSettings":
        """
        Build typed settings from the loaded Config.

        Raises:
            ConfigurationError: If any section fails validation
        """
        raw = dict(config.raw)
        system = raw.pop('system', {}) or {}
        raw.setdefault('dry_run', system.get('dry_run', True))
        try:
            return cls.model_validate(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
