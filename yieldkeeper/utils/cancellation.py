"""
Cancellation token shared by every cooperative loop.

A shutdown request cancels the token; loops observe it at their next
suspension point (sleep, wait for trigger) instead of polling a global flag.
"""

import asyncio
from typing import Optional


class CancellationToken:
    """asyncio.Event backed cancellation token"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "shutdown") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Block until the token is cancelled"""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep up to `seconds`, returning early on cancellation.

        Returns:
            True if the full delay elapsed, False if cancelled
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return True
        return False
