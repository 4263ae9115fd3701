"""
Session storage adapters.

The middleware only needs load / store / delete keyed by session id; where
the data lives is up to the application. MemorySessionStorage is the
in-process adapter used for development and tests (use Redis or a database
in production).
"""

import asyncio
import logging
from typing import Dict, Optional, Protocol, runtime_checkable

from .session import Session

logger = logging.getLogger(__name__)


@runtime_checkable
class SessionStorage(Protocol):
    """Interface every session storage adapter implements."""

    async def store_session(self, session: Session) -> bool:
        ...

    async def load_session(self, session_id: str) -> Optional[Session]:
        ...

    async def delete_session(self, session_id: str) -> bool:
        ...


class MemorySessionStorage:
    """
    In-memory session storage.

    Sessions are kept as immutable values; storing a session with an
    existing id replaces it.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def store_session(self, session: Session) -> bool:
        async with self._lock:
            self._sessions[session.id] = session
        logger.debug(f"Stored session {session.id}", extra={"shop": session.shop})
        return True

    async def load_session(self, session_id: str) -> Optional[Session]:
        async with self._lock:
            return self._sessions.get(session_id)

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            removed = self._sessions.pop(session_id, None)
        if removed is not None:
            logger.debug(f"Deleted session {session_id}")
        return removed is not None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions


__all__ = ["SessionStorage", "MemorySessionStorage"]
