"""Logout event publisher - operational visibility for back-channel logouts.

The HTTP caller only ever learns whether its token was accepted. What happened
to the individual sessions, and why tokens were rejected, is published here:
logged, kept in a bounded buffer, and passed to registered listeners.
"""

import asyncio
import inspect
import logging
import threading
import uuid
from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Optional

from backchannel_logout.services.errors import BackChannelLogoutError

if TYPE_CHECKING:
    from backchannel_logout.services.session_invalidation import InvalidationReport

logger = logging.getLogger(__name__)


class LogoutEventPublisher:
    """Publishes logout outcomes to the log, a recent-events buffer and listeners."""

    _instance: Optional["LogoutEventPublisher"] = None
    _instance_lock: threading.Lock = threading.Lock()

    BUFFER_SIZE = 1000

    def __init__(self, buffer_size: int | None = None):
        self._listeners: list[Callable] = []
        self._buffer: deque = deque(maxlen=buffer_size or self.BUFFER_SIZE)

    @classmethod
    def get_instance(cls) -> "LogoutEventPublisher":
        """Get or create singleton instance (thread-safe)."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def add_listener(self, callback: Callable) -> None:
        """Add a listener. It receives each event dict, and may be a coroutine function."""
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def get_recent_events(self, count: int = 100) -> list[dict]:
        """Get the most recent events, oldest first."""
        return list(self._buffer)[-count:]

    async def publish_invalidation(self, report: "InvalidationReport") -> dict:
        failed = report.failed
        invalidated = report.invalidated
        level = "warning" if failed else "info"

        for outcome in failed:
            logger.warning(
                f"Session {outcome.session_id} of client {report.client_id} "
                f"was not invalidated: {outcome.reason}",
                extra={
                    "event_type": "session_invalidation_failed",
                    "client_id": report.client_id,
                    "session_id": outcome.session_id,
                },
            )
        logger.info(
            f"Back-channel logout for client {report.client_id} "
            f"(sub={report.subject}, sid={report.sid}): "
            f"{len(invalidated)} invalidated, {len(failed)} failed",
            extra={
                "event_type": "sessions_invalidated",
                "client_id": report.client_id,
                "sid": report.sid,
                "token_id": report.token_id,
            },
        )

        return await self._publish(
            {
                "event_type": "sessions_invalidated",
                "level": level,
                "invalidated_count": len(invalidated),
                "failed_count": len(failed),
                **report.to_dict(),
            }
        )

    async def publish_rejection(self, error: BackChannelLogoutError) -> dict:
        return await self._publish(
            {
                "event_type": "logout_rejected",
                "level": "error" if error.is_service_error else "info",
                "kind": error.kind.value,
                "error_code": error.error.error_code,
                "error_description": error.error.description,
            }
        )

    async def _publish(self, event: dict) -> dict:
        event = {
            "id": str(uuid.uuid4()),
            "created_at": datetime.now(UTC).isoformat(),
            **event,
        }
        self._buffer.append(event)
        await self._notify_listeners(event)
        return event

    async def _notify_listeners(self, event: dict) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Logout event listener failed: {e}")
