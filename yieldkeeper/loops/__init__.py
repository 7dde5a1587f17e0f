from .base import PeriodicLoop
from .harvest import HarvestFeeLoop
from .refresh import RefreshLoop
from .rewards import ClaimRewardLoop

__all__ = ["PeriodicLoop", "HarvestFeeLoop", "RefreshLoop", "ClaimRewardLoop"]
