"""Correlates a validated logout with local sessions."""

import logging
from collections.abc import AsyncIterator

from backchannel_logout.services.errors import SessionStoreError, service_error
from backchannel_logout.services.session_store import SessionRecord, SessionStore

logger = logging.getLogger(__name__)


class SessionCorrelationResolver:
    """Finds the local sessions a logout token refers to.

    Sessions of the client are matched on ``sid`` when the token carries one,
    otherwise on ``subject``. Nothing broader is ever matched.
    """

    def __init__(self, store: SessionStore):
        self._store = store

    async def find_sessions(
        self,
        client_id: str,
        subject: str | None = None,
        sid: str | None = None,
    ) -> AsyncIterator[SessionRecord]:
        """Yield matching sessions. An empty result is not an error.

        Raises:
            BackChannelLogoutError: ``SERVICE_ERROR`` if the store lookup fails.
        """
        if sid is None and subject is None:
            return

        try:
            if sid is not None:
                records = self._store.find(client_id, sid=sid)
            else:
                records = self._store.find(client_id, subject=subject)
            async for record in records:
                yield record
        except SessionStoreError as e:
            logger.error(f"Session lookup failed for client {client_id}: {e}")
            raise service_error("Session lookup failed", e) from e
