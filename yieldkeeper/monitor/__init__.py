from .api import create_app
from .health_check import HealthChecker, HealthStatus

__all__ = ["create_app", "HealthChecker", "HealthStatus"]
