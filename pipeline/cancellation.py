"""
Cooperative cancellation for long-running audiobook work.

A CancelToken is created per request and threaded through every call that
may spawn ffmpeg/ffprobe or touch storage. Work checks it before each
expensive step, and the process runner races it against the child process.
"""

import asyncio
from typing import Optional

from errors import Cancelled


class CancelToken:

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise Cancelled()

    async def wait(self):
        await self._event.wait()


def check(token: Optional[CancelToken]):
    """Raise Cancelled when an optional token has fired."""
    if token is not None:
        token.raise_if_cancelled()
