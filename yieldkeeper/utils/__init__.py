from .cancellation import CancellationToken
from .logger import get_logger, setup_logging

__all__ = ["CancellationToken", "get_logger", "setup_logging"]
