"""Local session store contract and implementations.

Sessions are recorded at OIDC login time with the client id, the ID token's
``sub`` and (when the identity provider issued one) its ``sid``, so that a
later logout token can be correlated back to them.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backchannel_logout.models import OIDCSession
from backchannel_logout.models.base import utcnow
from backchannel_logout.services.errors import SessionStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionRecord:
    """A local session and the identity-provider identifiers it was created with."""

    session_id: str
    client_id: str
    subject: str
    sid: str | None = None
    created_at: datetime = field(default_factory=utcnow, compare=False)


class SessionStore(Protocol):
    async def save(self, record: SessionRecord) -> None: ...

    def find(
        self,
        client_id: str,
        sid: str | None = None,
        subject: str | None = None,
    ) -> AsyncIterator[SessionRecord]:
        """Yield the sessions of ``client_id`` matching ``sid``, else ``subject``.

        Raises:
            SessionStoreError: If the store cannot be queried.
        """
        ...

    async def destroy(self, record: SessionRecord) -> None:
        """Destroy ``record``. Destroying an absent session is not an error.

        Raises:
            SessionStoreError: If the store fails to destroy the session.
        """
        ...


def record_from_id_token(
    session_id: str, client_id: str, id_token_claims: Mapping[str, Any]
) -> SessionRecord:
    """Build the record to save when a session is established from an ID token."""
    subject = id_token_claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ValueError("ID token has no sub claim")
    sid = id_token_claims.get("sid")
    return SessionRecord(
        session_id=session_id,
        client_id=client_id,
        subject=subject,
        sid=sid if isinstance(sid, str) and sid else None,
    )


def _require_correlator(sid: str | None, subject: str | None) -> None:
    if sid is None and subject is None:
        raise ValueError("Session lookup needs a sid or a subject")


def _matches(record: SessionRecord, client_id: str, sid: str | None, subject: str | None) -> bool:
    if record.client_id != client_id:
        return False
    if sid is not None:
        return record.sid == sid
    return record.subject == subject


class InMemorySessionStore:
    """Session store for single-process deployments and tests."""

    def __init__(self):
        self._sessions: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    async def save(self, record: SessionRecord) -> None:
        async with self._lock:
            self._sessions[record.session_id] = record

    async def find(
        self,
        client_id: str,
        sid: str | None = None,
        subject: str | None = None,
    ) -> AsyncIterator[SessionRecord]:
        _require_correlator(sid, subject)
        async with self._lock:
            matches = [r for r in self._sessions.values() if _matches(r, client_id, sid, subject)]
        for record in matches:
            yield record

    async def destroy(self, record: SessionRecord) -> None:
        async with self._lock:
            self._sessions.pop(record.session_id, None)


class SQLAlchemySessionStore:
    """Session store backed by the ``oidc_sessions`` table."""

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self._session_factory = session_factory

    async def save(self, record: SessionRecord) -> None:
        try:
            async with self._session_factory() as db:
                await db.merge(
                    OIDCSession(
                        session_id=record.session_id,
                        client_id=record.client_id,
                        subject=record.subject,
                        sid=record.sid,
                        created_at=record.created_at,
                    )
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to save session {record.session_id}: {e}") from e

    async def find(
        self,
        client_id: str,
        sid: str | None = None,
        subject: str | None = None,
    ) -> AsyncIterator[SessionRecord]:
        _require_correlator(sid, subject)
        query = select(OIDCSession).where(OIDCSession.client_id == client_id)
        if sid is not None:
            query = query.where(OIDCSession.sid == sid)
        else:
            query = query.where(OIDCSession.subject == subject)

        try:
            async with self._session_factory() as db:
                result = await db.execute(query.order_by(OIDCSession.created_at))
                rows = list(result.scalars().all())
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to look up sessions for {client_id}: {e}") from e

        for row in rows:
            yield SessionRecord(
                session_id=row.session_id,
                client_id=row.client_id,
                subject=row.subject,
                sid=row.sid,
                created_at=row.created_at,
            )

    async def destroy(self, record: SessionRecord) -> None:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    delete(OIDCSession).where(OIDCSession.session_id == record.session_id)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to destroy session {record.session_id}: {e}") from e

        if not result.rowcount:
            logger.debug(f"Session {record.session_id} was already gone")
