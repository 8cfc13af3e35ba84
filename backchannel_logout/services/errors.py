"""Errors raised while processing a back-channel logout request.

Every failure of the logout pipeline is a ``BackChannelLogoutError`` whose
``kind`` tells the endpoint how to answer: client-caused failures become a
400 body, service failures propagate as server errors.
"""

from dataclasses import dataclass
from enum import Enum

from backchannel_logout.core.config import BACKCHANNEL_LOGOUT_VALIDATION_URI


class OAuth2ErrorCode:
    """Error codes emitted in the ``error_code`` field."""

    INVALID_REQUEST = "invalid_request"
    INVALID_TOKEN = "invalid_token"
    SERVER_ERROR = "server_error"


class LogoutErrorKind(Enum):
    """How a logout failure must be reported."""

    INVALID_REQUEST = "invalid_request"
    INVALID_TOKEN = "invalid_token"
    SERVICE_ERROR = "service_error"


@dataclass(frozen=True)
class OAuth2Error:
    """Wire-level description of a failure."""

    error_code: str
    description: str
    uri: str | None = None


class BackChannelLogoutError(Exception):
    """A failure of the back-channel logout pipeline."""

    def __init__(self, kind: LogoutErrorKind, error: OAuth2Error):
        self.kind = kind
        self.error = error
        super().__init__(error.description)

    @property
    def is_service_error(self) -> bool:
        return self.kind is LogoutErrorKind.SERVICE_ERROR


def invalid_request(description: str, uri: str | None = None) -> BackChannelLogoutError:
    return BackChannelLogoutError(
        LogoutErrorKind.INVALID_REQUEST,
        OAuth2Error(OAuth2ErrorCode.INVALID_REQUEST, description, uri),
    )


def invalid_token(description: str, uri: str | None = None) -> BackChannelLogoutError:
    return BackChannelLogoutError(
        LogoutErrorKind.INVALID_TOKEN,
        OAuth2Error(OAuth2ErrorCode.INVALID_TOKEN, description, uri),
    )


def service_error(description: str, cause: BaseException | None = None) -> BackChannelLogoutError:
    """Failure of a collaborator that is not attributable to the caller."""
    error = BackChannelLogoutError(
        LogoutErrorKind.SERVICE_ERROR,
        OAuth2Error(OAuth2ErrorCode.SERVER_ERROR, description),
    )
    error.__cause__ = cause
    return error


def error_uri_for(error: OAuth2Error, default: str = BACKCHANNEL_LOGOUT_VALIDATION_URI) -> str:
    """The ``error_uri`` to render: the error's own, else the validation section."""
    return error.uri or default


class TokenDecodeError(Exception):
    """The token is malformed, unsigned, or its signature does not verify."""


class KeyFetchError(Exception):
    """Verification keys could not be obtained from the identity provider."""


class SessionStoreError(Exception):
    """The session store failed to look up or destroy a session."""


class ReplayCacheError(Exception):
    """The replay cache could not record or look up a token identifier."""
