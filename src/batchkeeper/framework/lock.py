from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from .exceptions import LockAcquisitionError
from .keys import lock_key

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .store import Store

logger = logging.getLogger(__name__)

# Retry delay bounds while a lock is contended (seconds).
_MIN_RETRY_DELAY = 0.0001
_MAX_RETRY_DELAY = 0.0002


class LockManager:
    """Short-lived named locks on top of the shared store.

    A lock is a key `lock:{name}` holding a random token, written with a
    conditional set and an expiry. Only the holder of the token may release
    it, so a lock that expired and was taken by another caller is never
    released by the previous owner.
    """

    def __init__(self, store: Store, timeout: int = 5, max_wait: float = 60.0) -> None:
        """Initialize the lock manager.

        Args:
            store: The shared store.
            timeout: Default lock expiry in seconds.
            max_wait: Default number of seconds to wait for a contended lock.

        """
        self._store = store
        self._timeout = timeout
        self._max_wait = max_wait

    @asynccontextmanager
    async def hold(
        self,
        name: str,
        timeout: int | None = None,
        max_wait: float | None = None,
    ) -> AsyncIterator[str]:
        """Run the body of an `async with` block while holding `name`.

        Args:
            name: Lock name shared by every caller that must be excluded.
            timeout: Lock expiry in seconds.
            max_wait: Seconds to keep retrying before giving up.

        Yields:
            The token of this acquisition.

        Raises:
            LockAcquisitionError: If the lock was not acquired in time.

        """
        key = lock_key(name)
        token = await self._acquire(
            key,
            timeout if timeout is not None else self._timeout,
            max_wait if max_wait is not None else self._max_wait,
        )
        try:
            yield token
        finally:
            released = await self._store.compare_and_delete(key, token)
            if not released:
                logger.warning(
                    "lock expired before release",
                    extra={"lock": name},
                )

    async def _acquire(self, key: str, timeout: int, max_wait: float) -> str:
        token = uuid.uuid4().hex
        started = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            if await self._store.set(key, token, nx=True, ex=timeout):
                if attempts > 1:
                    logger.debug(
                        "lock acquired after contention",
                        extra={"lock": key, "attempts": attempts},
                    )
                return token

            if time.monotonic() - started > max_wait:
                raise LockAcquisitionError(key, max_wait)

            await asyncio.sleep(random.uniform(_MIN_RETRY_DELAY, _MAX_RETRY_DELAY))  # noqa: S311
