"""
Configuration Loader for YieldKeeper

Loads configuration from YAML file with environment variable interpolation.
Follows Fast Fail principle - crashes immediately if config is invalid.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, PrivateAttr


class Config(BaseModel):
    """
    Master configuration model for YieldKeeper

    Wraps the raw YAML tree and offers dot-notation access. Typed,
    validated views over the tree live in config.settings.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    _raw_config: Dict[str, Any] = PrivateAttr(default_factory=dict)

    def __init__(self, **data):
        """Initialize with raw config data"""
        super().__init__(**data)
        self._raw_config = data

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get nested config value using dot notation

        Example:
            config.get('rebalance.interval_seconds')  # Returns 1800
            config.get('yield_api.max_dilution')      # Returns 0.005

        Args:
            key_path: Dot-separated path to config key
            default: Default value if key not found

        Returns:
            Config value or default
        """
        keys = key_path.split('.')
        value = self._raw_config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def get_required(self, key_path: str) -> Any:
        """
        Get required config value - raises error if missing

        Args:
            key_path: Dot-separated path to config key

        Returns:
            Config value

        Raises:
            ValueError: If key not found
        """
        value = self.get(key_path)
        if value is None:
            raise ValueError(f"Required config key not found: {key_path}")
        return value

    @property
    def raw(self) -> Dict[str, Any]:
        return self._raw_config


def _interpolate_env_vars(config_str: str) -> str:
    """
    Replace ${VAR_NAME} placeholders with environment variables

    Supports:
    - ${VAR_NAME} - Required, crashes if missing
    - ${VAR_NAME:-} - Optional, empty string if missing
    - ${VAR_NAME:-default} - Optional, uses default if missing

    Args:
        config_str: YAML config as string

    Returns:
        Config string with env vars interpolated

    Raises:
        ValueError: If required env var is missing
    """
    pattern = re.compile(r'\$\{(\w+)(:-([^}]*))?\}')

    def replacer(match):
        var_name = match.group(1)
        has_default = match.group(2) is not None
        default_value = match.group(3) if match.group(3) else ""

        value = os.getenv(var_name)

        if value is None:
            if has_default:
                return default_value
            raise ValueError(
                f"Environment variable '{var_name}' is required but not set. "
                f"Check your .env file or environment."
            )

        return value

    return pattern.sub(replacer, config_str)


# Global config cache to avoid duplicate loads
_cached_config: Config | None = None


def load_config(config_path: str | Path = "config/config.yaml") -> Config:
    """
    Load YieldKeeper configuration from YAML file (cached)

    Process:
    1. Return cached config if available
    2. Load .env file (if exists)
    3. Read YAML config
    4. Interpolate environment variables (${VAR})
    5. Parse and validate YAML
    6. Cache and return Config object

    Args:
        config_path: Path to YAML config file

    Returns:
        Config object with loaded configuration

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config is invalid or env vars missing
        yaml.YAMLError: If YAML parsing fails
    """
    global _cached_config

    if _cached_config is not None:
        return _cached_config

    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Config file not found: {config_path}\n"
            f"Expected location: {config_path.absolute()}"
        )

    with open(config_path, 'r') as f:
        config_str = f.read()

    try:
        config_str = _interpolate_env_vars(config_str)
    except ValueError as e:
        raise ValueError(
            f"Failed to interpolate environment variables in {config_path}: {e}"
        ) from e

    try:
        config_dict = yaml.safe_load(config_str)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(
            f"Failed to parse YAML config {config_path}: {e}"
        ) from e

    if not isinstance(config_dict, dict):
        raise ValueError(
            f"Config file {config_path} must contain a YAML dictionary, "
            f"got {type(config_dict)}"
        )

    config = Config(**config_dict)
    _validate_config(config)

    _cached_config = config
    return config


def _validate_config(config: Config) -> None:
    """
    Validate critical configuration settings

    Raises ValueError if any critical settings are invalid.
    Detailed type validation happens in RebalancerSettings.

    Args:
        config: Loaded configuration

    Raises:
        ValueError: If validation fails
    """
    rpc_url = config.get('rpc.url')
    if not rpc_url:
        raise ValueError("rpc.url is required")

    vault_address = config.get('vault.address')
    idle_account = config.get('vault.idle_token_account')
    asset_mint = config.get('vault.asset_mint')

    if not all([vault_address, idle_account, asset_mint]):
        raise ValueError(
            "Vault configuration incomplete. Required: address, idle_token_account, asset_mint"
        )

    policy = config.get('rebalance.policy', 'yield')
    if policy not in ['yield', 'equal_weight']:
        raise ValueError(
            f"rebalance.policy must be one of ['yield', 'equal_weight'], got '{policy}'"
        )
