"""
Exception hierarchy for YieldKeeper

Propagation policy:
- data-quality problems (no yield match, all filtered) are NOT exceptions,
  they are fallback reason codes
- AdapterError skips a single operation
- TransportError / TransactionError abort the current cycle only
- SubscriptionError ends a websocket session, the watcher reconnects
- ConfigurationError is fatal at startup (Fast Fail)
"""


class YieldKeeperError(Exception):
    """Base class for all YieldKeeper errors"""


class ConfigurationError(YieldKeeperError):
    """Invalid or incomplete configuration"""


class TransportError(YieldKeeperError):
    """Every RPC endpoint failed for a request"""


class RpcError(TransportError):
    """JSON-RPC endpoint answered with an error payload"""

    def __init__(self, method: str, code: int, message: str):
        super().__init__(f"RPC {method} failed ({code}): {message}")
        self.method = method
        self.code = code


class TransactionError(YieldKeeperError):
    """Transaction could not be submitted or confirmed"""


class SimulationError(TransactionError):
    """Simulation returned an execution error"""


class ConfirmationTimeoutError(TransactionError):
    """Signature was not confirmed in time"""


class TransactionFailedError(TransactionError):
    """Transaction landed with an on-chain error"""


class AdapterError(YieldKeeperError):
    """Strategy adapter could not build instructions for an operation"""


class UnknownStrategyKindError(AdapterError):
    """No adapter registered for a strategy kind"""


class YieldApiError(YieldKeeperError):
    """Yield data source unavailable or returned garbage"""


class RebalanceError(YieldKeeperError):
    """A rebalance cycle finished in the failed state"""


class SubscriptionError(TransportError):
    """Websocket subscription request was rejected"""
