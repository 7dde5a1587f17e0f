"""
Transaction submission

send_and_confirm() turns an ordered instruction list into a confirmed
transaction:

1. Simulate with the maximum compute budget, request unitsConsumed * 1.1
2. Ask the RPC for a priority fee estimate (Medium)
3. Sign through the external TransactionSigner and submit (bounded retries)
4. Poll signature status until processed/confirmed/finalized

Key management and byte-level serialization belong to the signer; this
module only drives the RPC conversation.
"""

import importlib
import time
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from yieldkeeper.exceptions import (
    ConfigurationError,
    ConfirmationTimeoutError,
    RpcError,
    SimulationError,
    TransactionError,
    TransactionFailedError,
    TransportError,
)
from yieldkeeper.executor.connection import ConnectionManager
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.strategies.adapters import Instruction
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)

MAX_COMPUTE_UNITS = 1_400_000
CONFIRMED_STATUSES = ('processed', 'confirmed', 'finalized')


class TransactionSigner(ABC):
    """External key-management boundary"""

    @property
    @abstractmethod
    def public_key(self) -> str:
        """Fee payer / manager address"""

    @abstractmethod
    def sign(
        self,
        instructions: Sequence[Instruction],
        compute_unit_limit: int,
        compute_unit_price: Optional[int],
        recent_blockhash: str,
        lookup_tables: Sequence[str]
    ) -> str:
        """Return the signed transaction, base64 encoded"""


class DryRunSigner(TransactionSigner):
    """Placeholder signer for dry-run mode; refuses to sign"""

    def __init__(self, public_key: str = "dry-run"):
        self._public_key = public_key

    @property
    def public_key(self) -> str:
        return self._public_key

    def sign(self, instructions, compute_unit_limit, compute_unit_price, recent_blockhash, lookup_tables) -> str:
        raise TransactionError("DryRunSigner cannot sign transactions (dry_run mode)")


def load_signer(settings) -> TransactionSigner:
    """
    Instantiate the signer named by signer.class ("package.module:ClassName").

    The class is called with the signer settings section. In dry_run mode
    without a signer class a DryRunSigner is returned.

    Raises:
        ConfigurationError: Missing, unimportable or invalid signer class
    """
    class_path = settings.signer.class_path
    if not class_path:
        if settings.dry_run:
            logger.info("No signer configured, using DryRunSigner")
            return DryRunSigner()
        raise ConfigurationError("signer.class is required when dry_run is disabled")

    module_name, _, class_name = class_path.partition(":")
    if not class_name:
        raise ConfigurationError(f"signer.class must look like 'package.module:ClassName', got '{class_path}'")

    try:
        signer_cls = getattr(importlib.import_module(module_name), class_name)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load signer {class_path}: {e}") from e

    signer = signer_cls(settings.signer)
    if not isinstance(signer, TransactionSigner):
        raise ConfigurationError(f"{class_path} is not a TransactionSigner")

    logger.info(f"Signer loaded: {class_path} (public key {signer.public_key})")
    return signer


class TransactionSender:
    """
    Simulate -> fee estimate -> sign/submit -> confirm.

    Args:
        connection: Shared ConnectionManager
        signer: External TransactionSigner
        confirm_timeout_seconds: Max time to wait for confirmation
        confirm_poll_seconds: Delay between signature status polls
        submit_attempts: sendTransaction attempts before giving up
        default_priority_fee: Fee used when the estimate is unavailable
        compute_unit_margin: Multiplier applied to simulated units
        sleep: Injectable sleep (tests)
    """

    def __init__(
        self,
        connection: ConnectionManager,
        signer: TransactionSigner,
        confirm_timeout_seconds: float = 60.0,
        confirm_poll_seconds: float = 1.0,
        submit_attempts: int = 3,
        default_priority_fee: int = 100,
        compute_unit_margin: float = 1.1,
        sleep=time.sleep
    ):
        self.connection = connection
        self.signer = signer
        self.confirm_timeout_seconds = confirm_timeout_seconds
        self.confirm_poll_seconds = confirm_poll_seconds
        self.submit_attempts = submit_attempts
        self.default_priority_fee = default_priority_fee
        self.compute_unit_margin = compute_unit_margin
        self._sleep = sleep

    @classmethod
    def from_settings(cls, connection: ConnectionManager, signer: TransactionSigner, settings) -> "TransactionSender":
        tx = settings.transaction
        return cls(
            connection=connection,
            signer=signer,
            confirm_timeout_seconds=tx.confirm_timeout_seconds,
            confirm_poll_seconds=tx.confirm_poll_seconds,
            submit_attempts=tx.submit_attempts,
            default_priority_fee=tx.default_priority_fee,
            compute_unit_margin=tx.compute_unit_margin,
        )

    # =========================================================================
    # STEPS
    # =========================================================================

    def _latest_blockhash(self) -> str:
        result = self.connection.call('getLatestBlockhash', [{'commitment': 'processed'}])
        return result['value']['blockhash']

    def estimate_compute_units(self, instructions: Sequence[Instruction], lookup_tables: Sequence[str]) -> int:
        """
        Simulate with the maximum budget and add the safety margin.

        Falls back to MAX_COMPUTE_UNITS when the RPC reports no usage.

        Raises:
            SimulationError: Simulation reported an execution error
        """
        encoded = self.signer.sign(
            instructions, MAX_COMPUTE_UNITS, None, self._latest_blockhash(), lookup_tables
        )
        result = self.connection.call('simulateTransaction', [encoded, {
            'encoding': 'base64',
            'replaceRecentBlockhash': True,
            'sigVerify': False,
            'commitment': 'processed',
        }])
        value = (result or {}).get('value') or {}

        if value.get('err'):
            logs = value.get('logs') or []
            raise SimulationError(f"Simulation failed: {value['err']} (last logs: {logs[-3:]})")

        units = value.get('unitsConsumed')
        if not units:
            logger.error("Failed to get required CUs, using default")
            return MAX_COMPUTE_UNITS

        return min(int(units * self.compute_unit_margin), MAX_COMPUTE_UNITS)

    def estimate_priority_fee(
        self,
        instructions: Sequence[Instruction],
        compute_units: int,
        lookup_tables: Sequence[str]
    ) -> int:
        """Priority fee estimate in micro-lamports (default on failure)"""
        encoded = self.signer.sign(instructions, compute_units, None, self._latest_blockhash(), lookup_tables)
        try:
            result = self.connection.call('getPriorityFeeEstimate', [{
                'transaction': encoded,
                'options': {'priorityLevel': 'Medium', 'transactionEncoding': 'base64'},
            }])
        except (RpcError, TransportError) as e:
            logger.error(f"Failed to get fee estimate, using default: {e}")
            return self.default_priority_fee

        if not result or result.get('priorityFeeEstimate') is None:
            logger.error("Failed to get fee estimate, using default")
            return self.default_priority_fee

        return int(result['priorityFeeEstimate'])

    def submit(self, encoded: str) -> str:
        """
        sendTransaction with bounded retries on transport errors.

        RpcError (preflight rejection) is not retried.
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.submit_attempts + 1):
            try:
                return self.connection.call('sendTransaction', [encoded, {
                    'encoding': 'base64',
                    'skipPreflight': False,
                    'preflightCommitment': 'processed',
                    'maxRetries': 5,
                }])
            except RpcError as e:
                raise TransactionError(f"Transaction rejected: {e}") from e
            except TransportError as e:
                last_error = e
                logger.warning(f"sendTransaction attempt {attempt}/{self.submit_attempts} failed: {e}")
                if attempt < self.submit_attempts:
                    self._sleep(min(2 ** (attempt - 1), 5))

        raise TransactionError(f"Failed to send transaction: {last_error}")

    def confirm(self, signature: str) -> None:
        """
        Poll getSignatureStatuses until the signature lands.

        Raises:
            TransactionFailedError: Landed with an error
            ConfirmationTimeoutError: Not seen in time
        """
        deadline = time.monotonic() + self.confirm_timeout_seconds
        while True:
            try:
                result = self.connection.call('getSignatureStatuses', [[signature], {'searchTransactionHistory': False}])
                status = ((result or {}).get('value') or [None])[0]
            except TransportError as e:
                logger.warning(f"Signature status poll failed for {signature[:16]}...: {e}")
                status = None

            if status:
                if status.get('err'):
                    raise TransactionFailedError(f"Transaction {signature} failed: {status['err']}")
                if status.get('confirmationStatus') in CONFIRMED_STATUSES:
                    return

            if time.monotonic() >= deadline:
                raise ConfirmationTimeoutError(
                    f"Transaction {signature} not confirmed within {self.confirm_timeout_seconds:.0f}s"
                )
            self._sleep(self.confirm_poll_seconds)

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def send_and_confirm(
        self,
        instructions: List[Instruction],
        lookup_tables: Sequence[str] = (),
        tx_type: str = "unknown",
        compute_unit_limit: Optional[int] = None
    ) -> str:
        """
        Submit one transaction and wait for confirmation.

        Returns:
            Transaction signature

        Raises:
            TransactionError: Any step failed (TransportError is wrapped)
        """
        if not instructions:
            raise TransactionError("Refusing to send an empty transaction")

        try:
            compute_units = compute_unit_limit or self.estimate_compute_units(instructions, lookup_tables)
            metrics.observe('tx_compute_units', compute_units, {'type': tx_type})

            priority_fee = self.estimate_priority_fee(instructions, compute_units, lookup_tables)
            metrics.observe('tx_priority_fee', priority_fee, {'type': tx_type})

            encoded = self.signer.sign(
                instructions, compute_units, priority_fee, self._latest_blockhash(), lookup_tables
            )
            signature = self.submit(encoded)
            self.confirm(signature)
        except (TransportError, RpcError) as e:
            raise TransactionError(f"Failed to send transaction: {e}") from e

        logger.debug(f"Transaction {signature} confirmed (cu={compute_units}, fee={priority_fee})")
        return signature
