"""Destroys the local sessions matched by a validated logout token."""

import logging
from dataclasses import dataclass, field
from enum import Enum

from backchannel_logout.services.logout_events import LogoutEventPublisher
from backchannel_logout.services.logout_token import LogoutAuthentication
from backchannel_logout.services.session_resolver import SessionCorrelationResolver
from backchannel_logout.services.session_store import SessionStore

logger = logging.getLogger(__name__)


class OutcomeStatus(Enum):
    INVALIDATED = "invalidated"
    FAILED = "failed"


@dataclass(frozen=True)
class InvalidationOutcome:
    session_id: str
    status: OutcomeStatus
    reason: str | None = None


@dataclass
class InvalidationReport:
    """Per-session results of one logout. Advisory: never changes the response."""

    client_id: str
    subject: str | None
    sid: str | None
    token_id: str | None = None
    outcomes: list[InvalidationOutcome] = field(default_factory=list)

    @property
    def invalidated(self) -> list[str]:
        return [o.session_id for o in self.outcomes if o.status is OutcomeStatus.INVALIDATED]

    @property
    def failed(self) -> list[InvalidationOutcome]:
        return [o for o in self.outcomes if o.status is OutcomeStatus.FAILED]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "subject": self.subject,
            "sid": self.sid,
            "token_id": self.token_id,
            "outcomes": [
                {"session_id": o.session_id, "status": o.status.value, "reason": o.reason}
                for o in self.outcomes
            ],
        }


class SessionInvalidationHandler:
    """Destroys every session matched by a logout.

    A session that cannot be destroyed is recorded as failed and the remaining
    sessions are still attempted.
    """

    def __init__(
        self,
        store: SessionStore,
        resolver: SessionCorrelationResolver | None = None,
        publisher: LogoutEventPublisher | None = None,
    ):
        self._store = store
        self._resolver = resolver or SessionCorrelationResolver(store)
        self._publisher = publisher

    async def invalidate(self, authentication: LogoutAuthentication) -> InvalidationReport:
        """Destroy the sessions matched by ``authentication``.

        Raises:
            BackChannelLogoutError: ``SERVICE_ERROR`` if the sessions cannot be looked up.
        """
        report = InvalidationReport(
            client_id=authentication.client_id,
            subject=authentication.subject,
            sid=authentication.session_id,
            token_id=authentication.token_id,
        )

        sessions = self._resolver.find_sessions(
            authentication.client_id,
            subject=authentication.subject,
            sid=authentication.session_id,
        )
        async for record in sessions:
            try:
                await self._store.destroy(record)
            except Exception as e:
                logger.debug(f"Failed to invalidate session {record.session_id}", exc_info=True)
                reason = str(e) or type(e).__name__
                report.outcomes.append(
                    InvalidationOutcome(record.session_id, OutcomeStatus.FAILED, reason)
                )
            else:
                report.outcomes.append(
                    InvalidationOutcome(record.session_id, OutcomeStatus.INVALIDATED)
                )

        if self._publisher is not None:
            await self._publisher.publish_invalidation(report)
        return report
