"""
Process-wide run-lock.

Recording, on-demand playback and scheduled playback all drive the same
browser, so at most one of them may hold a session at a time.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from automation_errors import SessionBusy

logger = logging.getLogger(__name__)


class RunLock:
    def __init__(self):
        self._lock = asyncio.Lock()
        self.owner: Optional[str] = None

    def locked(self) -> bool:
        return self._lock.locked()

    async def acquire(self, owner: str, wait: bool = False) -> None:
        """Take the lock, or raise SessionBusy when wait is False and it is held."""
        if not wait and self._lock.locked():
            raise SessionBusy(self.owner)
        await self._lock.acquire()
        self.owner = owner
        logger.debug(f"Run-lock acquired by {owner}")

    def release(self) -> None:
        logger.debug(f"Run-lock released by {self.owner}")
        self.owner = None
        self._lock.release()

    @asynccontextmanager
    async def hold(self, owner: str, wait: bool = False) -> AsyncIterator[None]:
        await self.acquire(owner, wait=wait)
        try:
            yield
        finally:
            self.release()
