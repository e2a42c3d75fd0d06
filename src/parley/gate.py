"""
Parley - Session gate for credential rotation.

Created by orpheus497

Sync passes, stream reads and group mutations share the transport session
and hold a shared slot while they use it. Credential rotation takes the
exclusive slot: it waits for in-flight users to finish and blocks new ones
until the rotation is complete. A stream read parked on a long poll gives
its slot back as soon as a rotation asks for it.
"""

import asyncio
import contextlib
import logging
from typing import AsyncIterator

logger = logging.getLogger(__name__)


class SessionGate:
    """Shared/exclusive gate around the transport session."""

    def __init__(self) -> None:
        self._condition = asyncio.Condition()
        self._users = 0
        self._rotating = False

    @property
    def rotating(self) -> bool:
        return self._rotating

    @property
    def users(self) -> int:
        return self._users

    @contextlib.asynccontextmanager
    async def shared(self) -> AsyncIterator[None]:
        """Hold a shared slot for one use of the session."""
        async with self._condition:
            await self._condition.wait_for(lambda: not self._rotating)
            self._users += 1
        try:
            yield
        finally:
            async with self._condition:
                self._users -= 1
                self._condition.notify_all()

    @contextlib.asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        """Stop the world: wait for every shared user, then block new ones."""
        async with self._condition:
            await self._condition.wait_for(lambda: not self._rotating)
            self._rotating = True
            # Wakes long-running users waiting in wait_rotation()
            self._condition.notify_all()
            try:
                await self._condition.wait_for(lambda: self._users == 0)
            except asyncio.CancelledError:
                self._rotating = False
                self._condition.notify_all()
                raise
        logger.info("Session gate closed for credential rotation")
        try:
            yield
        finally:
            async with self._condition:
                self._rotating = False
                self._condition.notify_all()
            logger.info("Session gate reopened")

    async def wait_rotation(self) -> None:
        """Return once a rotation has asked for the exclusive slot."""
        async with self._condition:
            await self._condition.wait_for(lambda: self._rotating)

    async def wait_open(self) -> None:
        """Return once no rotation is pending or in progress."""
        async with self._condition:
            await self._condition.wait_for(lambda: not self._rotating)
