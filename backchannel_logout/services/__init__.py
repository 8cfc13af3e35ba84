# Back-Channel Logout Services
from backchannel_logout.services.client_registry import ClientConfig, ClientRegistry
from backchannel_logout.services.errors import (
    BackChannelLogoutError,
    LogoutErrorKind,
    OAuth2Error,
    OAuth2ErrorCode,
)
from backchannel_logout.services.jwks import JwksCache
from backchannel_logout.services.logout_events import LogoutEventPublisher
from backchannel_logout.services.logout_request import LogoutRequest, LogoutRequestConverter
from backchannel_logout.services.logout_token import (
    BACKCHANNEL_LOGOUT_EVENT,
    JwksLogoutTokenDecoder,
    LogoutAuthentication,
    LogoutToken,
    LogoutTokenAuthenticator,
)
from backchannel_logout.services.replay import DatabaseReplayCache, InMemoryReplayCache
from backchannel_logout.services.session_invalidation import (
    InvalidationOutcome,
    InvalidationReport,
    OutcomeStatus,
    SessionInvalidationHandler,
)
from backchannel_logout.services.session_resolver import SessionCorrelationResolver
from backchannel_logout.services.session_store import (
    InMemorySessionStore,
    SessionRecord,
    SQLAlchemySessionStore,
    record_from_id_token,
)

__all__ = [
    "BACKCHANNEL_LOGOUT_EVENT",
    "BackChannelLogoutError",
    "ClientConfig",
    "ClientRegistry",
    "DatabaseReplayCache",
    "InMemoryReplayCache",
    "InMemorySessionStore",
    "InvalidationOutcome",
    "InvalidationReport",
    "JwksCache",
    "JwksLogoutTokenDecoder",
    "LogoutAuthentication",
    "LogoutErrorKind",
    "LogoutEventPublisher",
    "LogoutRequest",
    "LogoutRequestConverter",
    "LogoutToken",
    "LogoutTokenAuthenticator",
    "OAuth2Error",
    "OAuth2ErrorCode",
    "OutcomeStatus",
    "SQLAlchemySessionStore",
    "SessionCorrelationResolver",
    "SessionInvalidationHandler",
    "SessionRecord",
    "record_from_id_token",
]
