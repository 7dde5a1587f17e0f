"""
Configuration module for YieldKeeper

Provides unified configuration loading from:
1. config/config.yaml (master configuration)
2. .env file (sensitive values)
3. Environment variables (override)
"""

from .loader import load_config, Config
from .settings import RebalancerSettings

__all__ = ["load_config", "Config", "RebalancerSettings"]
