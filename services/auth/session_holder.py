"""Shared single-slot holder for the current IG session."""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from core.logging import get_auth_logger_safe
from .models import Session

logger = get_auth_logger_safe("services.auth.session_holder")


class SessionHolder:
    """
    One slot holding the current Session, shared by every caller.

    Reads never block: the held value is immutable, so a reader sees either
    the old or the new session, never a mixture. Writers serialize on an
    asyncio lock, which also provides the single-flight section used for
    refresh.
    """

    def __init__(self, session: Optional[Session] = None):
        self._session = session
        self._lock = asyncio.Lock()
        self._version = 0 if session is None else 1

    def read(self) -> Optional[Session]:
        return self._session

    @property
    def version(self) -> int:
        """Incremented on every replacement."""
        return self._version

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    async def replace(self, session: Session) -> None:
        async with self._lock:
            self._store(session)

    async def clear(self) -> None:
        async with self._lock:
            if self._session is not None:
                logger.info("Session cleared", account_id=self._session.account_id)
            self._session = None
            self._version += 1

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator["SessionHolder"]:
        """Hold the write lock; ``swap`` may only be called inside this block."""
        async with self._lock:
            yield self

    def swap(self, session: Session) -> None:
        """Replace the session while ``exclusive()`` is held."""
        if not self._lock.locked():
            raise RuntimeError("swap() requires the holder's exclusive section")
        self._store(session)

    def _store(self, session: Session) -> None:
        self._session = session
        self._version += 1
        logger.debug("Session replaced", version=self._version, **session.describe())
