"""
Connection Manager - JSON-RPC transport with health-checked failover

Owns the primary and (optional) fallback RPC endpoints. Every request goes
to the active endpoint; on transport failure the manager fails over to the
other endpoint once per call. A periodic health check moves traffic back to
the primary as soon as it answers getHealth again.

Failover state is mutated only here; every loop shares one instance.
"""

import itertools
import time
from typing import Any, List, Optional

import requests

from yieldkeeper.exceptions import RpcError, TransportError
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


class ConnectionManager:
    """
    Primary/fallback JSON-RPC client.

    Args:
        primary_url: Main RPC endpoint
        fallback_url: Optional secondary endpoint
        timeout_seconds: Per-request timeout
        session: Optional requests session (tests inject a mock)
    """

    def __init__(
        self,
        primary_url: str,
        fallback_url: Optional[str] = None,
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        if not primary_url:
            raise ValueError("primary_url is required")

        self.primary_url = primary_url
        self.fallback_url = fallback_url
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()

        self._active_url = primary_url
        self._ids = itertools.count(1)
        self.failovers = 0
        self.last_failover_at: Optional[float] = None

        display = f"{primary_url[:32]}..." if len(primary_url) > 32 else primary_url
        logger.info(
            f"ConnectionManager initialized: primary={display}, "
            f"fallback={'yes' if fallback_url else 'no'}"
        )

    @classmethod
    def from_settings(cls, settings) -> "ConnectionManager":
        return cls(
            primary_url=settings.rpc.url,
            fallback_url=settings.rpc.fallback_url,
            timeout_seconds=settings.rpc.timeout_seconds,
        )

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def active_url(self) -> str:
        return self._active_url

    @property
    def on_fallback(self) -> bool:
        return self._active_url != self.primary_url

    def _endpoints(self) -> List[str]:
        """Active endpoint first, then the other one"""
        urls = [self._active_url]
        for url in (self.primary_url, self.fallback_url):
            if url and url not in urls:
                urls.append(url)
        return urls

    def _switch_to(self, url: str, reason: str) -> None:
        if url == self._active_url:
            return
        logger.warning(f"RPC failover: switching to {'primary' if url == self.primary_url else 'fallback'} ({reason})")
        self._active_url = url
        self.failovers += 1
        self.last_failover_at = time.time()

    # =========================================================================
    # REQUESTS
    # =========================================================================

    def _post(self, url: str, method: str, params: Optional[list]) -> Any:
        payload = {
            'jsonrpc': '2.0',
            'id': next(self._ids),
            'method': method,
            'params': params or [],
        }
        response = self.session.post(url, json=payload, timeout=self.timeout_seconds)
        response.raise_for_status()
        body = response.json()

        if body.get('error'):
            error = body['error']
            raise RpcError(method, error.get('code', -1), error.get('message', str(error)))

        return body.get('result')

    def call(self, method: str, params: Optional[list] = None) -> Any:
        """
        Send one JSON-RPC request, failing over between endpoints.

        RpcError (the endpoint answered with an error) is raised immediately:
        the other endpoint would answer the same.

        Raises:
            RpcError: JSON-RPC error payload
            TransportError: Every endpoint failed at transport level
        """
        errors = []
        for url in self._endpoints():
            try:
                result = self._post(url, method, params)
            except RpcError:
                raise
            except (requests.RequestException, ValueError) as e:
                errors.append(f"{url[:32]}: {e}")
                logger.warning(f"RPC {method} failed on {url[:32]}: {e}")
                continue

            self._switch_to(url, f"{method} succeeded")
            return result

        raise TransportError(f"RPC {method} failed on all endpoints: {'; '.join(errors)}")

    def health_check(self) -> bool:
        """
        Check the primary endpoint; switch back to it when healthy.

        Returns:
            True if the primary is healthy
        """
        try:
            self._post(self.primary_url, 'getHealth', None)
        except (requests.RequestException, ValueError, RpcError) as e:
            logger.warning(f"Primary RPC unhealthy: {e}")
            if self.fallback_url and not self.on_fallback:
                self._switch_to(self.fallback_url, "primary health check failed")
            return False

        if self.on_fallback:
            self._switch_to(self.primary_url, "primary healthy again")
        return True

    def close(self) -> None:
        self.session.close()


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager(settings=None) -> ConnectionManager:
    """Process-wide connection manager (created from settings on first call)"""
    global _connection_manager
    if _connection_manager is None:
        if settings is None:
            raise RuntimeError("Connection manager not initialized")
        _connection_manager = ConnectionManager.from_settings(settings)
    return _connection_manager


def destroy_connection_manager() -> None:
    global _connection_manager
    if _connection_manager is not None:
        _connection_manager.close()
        _connection_manager = None
        logger.info("Connection manager destroyed")
