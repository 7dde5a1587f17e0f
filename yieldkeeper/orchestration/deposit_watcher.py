"""
Deposit Watcher

Subscribes to the vault's idle token account over the RPC websocket
(accountSubscribe, jsonParsed) and reports balance increases to the
TriggerScheduler. Reconnects with exponential backoff after any
session failure, including a rejected subscription.
"""

import asyncio
import json
from typing import Any, Dict, Optional

import websockets
import websockets.exceptions

from yieldkeeper.exceptions import SubscriptionError
from yieldkeeper.metrics import bridge as metrics
from yieldkeeper.orchestration.trigger_scheduler import TriggerScheduler
from yieldkeeper.utils.cancellation import CancellationToken
from yieldkeeper.utils.logger import get_logger

logger = get_logger(__name__)


def parse_token_amount(message: Dict[str, Any]) -> Optional[int]:
    """Extract the raw token amount from an accountNotification (None if absent)"""
    if message.get('method') != 'accountNotification':
        return None
    try:
        info = message['params']['result']['value']['data']['parsed']['info']
        return int(info['tokenAmount']['amount'])
    except (KeyError, TypeError, ValueError):
        return None


class DepositWatcher:
    """
    Idle balance subscription.

    Args:
        ws_url: RPC websocket endpoint
        account: Idle token account to watch
        scheduler: Receives on_deposit(balance) for every increase
    """

    RECONNECT_DELAY_INITIAL = 1.0
    RECONNECT_DELAY_MAX = 60.0
    RECONNECT_DELAY_MULTIPLIER = 2.0

    def __init__(
        self,
        ws_url: str,
        account: str,
        scheduler: TriggerScheduler,
        ping_interval: float = 20.0,
        ping_timeout: float = 10.0
    ):
        self.ws_url = ws_url
        self.account = account
        self.scheduler = scheduler
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout

        self.ws = None
        self.last_balance: Optional[int] = None
        self.subscription_id: Optional[int] = None

    def handle_message(self, message: Any) -> None:
        """
        Process one decoded frame.

        Raises:
            SubscriptionError: accountSubscribe was answered with an error
        """
        if not isinstance(message, dict):
            logger.debug(f"Ignoring non-object websocket frame: {type(message).__name__}")
            return

        if message.get('id') == 1 and 'error' in message:
            logger.warning(f"Idle account subscription rejected: {message['error']}")
            raise SubscriptionError(f"accountSubscribe failed: {message['error']}")

        if 'result' in message and message.get('id') == 1:
            self.subscription_id = message['result']
            logger.debug(f"Idle account subscription confirmed: {self.subscription_id}")
            return

        balance = parse_token_amount(message)
        if balance is None:
            return

        previous = self.last_balance
        self.last_balance = balance

        if previous is not None and balance > previous:
            logger.debug(f"Idle balance increased: {previous} -> {balance}")
            self.scheduler.on_deposit(balance)

    async def _session(self) -> None:
        self.ws = await websockets.connect(
            self.ws_url,
            ping_interval=self.ping_interval,
            ping_timeout=self.ping_timeout,
        )
        logger.info(f"Deposit watcher connected, subscribing to {self.account[:8]}...")

        await self.ws.send(json.dumps({
            'jsonrpc': '2.0',
            'id': 1,
            'method': 'accountSubscribe',
            'params': [self.account, {'encoding': 'jsonParsed', 'commitment': 'confirmed'}],
        }))

        async for raw in self.ws:
            self.handle_message(json.loads(raw))

    async def _cleanup_connection(self) -> None:
        if self.ws is not None:
            try:
                await self.ws.close()
            except websockets.exceptions.WebSocketException as e:
                logger.debug(f"Error closing websocket: {e}")
            self.ws = None
        self.subscription_id = None

    async def run(self, token: CancellationToken) -> None:
        """Subscription loop; every session failure reconnects with backoff, only cancellation exits"""
        reconnect_delay = self.RECONNECT_DELAY_INITIAL

        while not token.cancelled:
            session = asyncio.ensure_future(self._session())
            stop = asyncio.ensure_future(token.wait())
            try:
                done, _ = await asyncio.wait({session, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()

            if session not in done:
                session.cancel()
                await asyncio.gather(session, return_exceptions=True)
                await self._cleanup_connection()
                break

            error = session.exception()
            if self.subscription_id is not None:
                reconnect_delay = self.RECONNECT_DELAY_INITIAL
            await self._cleanup_connection()

            if error is None:
                logger.warning(f"Deposit watcher stream ended, reconnecting in {reconnect_delay:.1f}s")
            elif isinstance(error, (websockets.exceptions.WebSocketException, OSError, ValueError, SubscriptionError)):
                logger.warning(f"Deposit watcher connection lost, reconnecting in {reconnect_delay:.1f}s: {error}")
            else:
                metrics.inc('loop_errors_total', {'loop': 'deposit_watcher'})
                logger.error(
                    f"Deposit watcher session failed, reconnecting in {reconnect_delay:.1f}s: {error}",
                    exc_info=error,
                )

            if not await token.sleep(reconnect_delay):
                break
            reconnect_delay = min(reconnect_delay * self.RECONNECT_DELAY_MULTIPLIER, self.RECONNECT_DELAY_MAX)

        logger.info("Deposit watcher stopped")
