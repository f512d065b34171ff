from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession


class SessionContextMixin:
    """Shared session handling for operations classes holding ``self.db``"""

    @asynccontextmanager
    async def _get_session_context(self, session: Optional[AsyncSession] = None):
        """
        Provides a session context. Uses the provided session if available,
        otherwise creates a new transaction that commits on exit.
        """
        if session:
            # If a session is provided, we do not manage its lifecycle
            yield session
        else:
            async with self.db.transaction() as new_session:
                yield new_session
