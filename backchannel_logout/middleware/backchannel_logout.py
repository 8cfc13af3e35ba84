"""OIDC Back-Channel Logout endpoint middleware.

Handles ``POST`` requests to the back-channel logout path carrying a
``logout_token`` form parameter:

- no ``logout_token``: the request is passed on untouched
- malformed parameter or rejected token: 400 with a JSON error body
- token accepted: matching sessions are destroyed and 200 is returned,
  whatever happened to the individual sessions
- collaborator outage: the error propagates and becomes a 500
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import JSONResponse
from starlette.types import ASGIApp

from backchannel_logout.core.config import BACKCHANNEL_LOGOUT_VALIDATION_URI
from backchannel_logout.schemas.logout import LogoutErrorResponse
from backchannel_logout.services.errors import BackChannelLogoutError, error_uri_for
from backchannel_logout.services.logout_events import LogoutEventPublisher
from backchannel_logout.services.logout_request import LogoutRequestConverter
from backchannel_logout.services.logout_token import LogoutTokenAuthenticator
from backchannel_logout.services.session_invalidation import SessionInvalidationHandler

logger = logging.getLogger(__name__)

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"

# Back-Channel Logout 1.0, section 2.8
NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store",
    "Pragma": "no-cache",
}


@dataclass(frozen=True)
class BackChannelLogoutConfig:
    """The collaborators of the logout endpoint."""

    authenticator: LogoutTokenAuthenticator
    invalidation_handler: SessionInvalidationHandler
    converter: LogoutRequestConverter = dataclasses.field(default_factory=LogoutRequestConverter)
    error_uri: str = BACKCHANNEL_LOGOUT_VALIDATION_URI
    publisher: LogoutEventPublisher | None = None


class BackChannelLogoutConfigRef:
    """Holder for the active config.

    Requests read the config once when they start; ``replace`` installs a new
    config with a single reference assignment, so a request never sees a mix
    of old and new collaborators.
    """

    def __init__(self, config: BackChannelLogoutConfig):
        self._config = config

    def get(self) -> BackChannelLogoutConfig:
        return self._config

    def replace(self, **changes) -> BackChannelLogoutConfig:
        config = dataclasses.replace(self._config, **changes)
        self._config = config
        return config


class BackChannelLogoutMiddleware(BaseHTTPMiddleware):
    """Back-channel logout endpoint in front of the rest of the application."""

    def __init__(
        self,
        app: ASGIApp,
        config: BackChannelLogoutConfig | BackChannelLogoutConfigRef,
        path: str = "/logout/connect/back-channel",
    ):
        super().__init__(app)
        if isinstance(config, BackChannelLogoutConfig):
            config = BackChannelLogoutConfigRef(config)
        self.config_ref = config
        self.path = path

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._is_logout_request(request):
            return await call_next(request)

        config = self.config_ref.get()

        # Buffer the body so a delegated request still carries it downstream
        await request.body()
        form = await request.form()

        try:
            logout_request = config.converter.convert(form)
            if logout_request is None:
                return await call_next(request)

            authentication = await config.authenticator.authenticate(logout_request.raw_token)

            # Let invalidation finish even if the caller goes away
            await asyncio.shield(config.invalidation_handler.invalidate(authentication))
        except BackChannelLogoutError as e:
            if config.publisher is not None:
                await config.publisher.publish_rejection(e)
            if e.is_service_error:
                logger.error(f"Back-channel logout failed: {e}", exc_info=True)
                raise
            return self._error_response(e, config)

        return Response(status_code=200, headers=NO_CACHE_HEADERS)

    def _is_logout_request(self, request: Request) -> bool:
        if request.method != "POST" or request.url.path.rstrip("/") != self.path:
            return False
        content_type = request.headers.get("content-type", "")
        return content_type.split(";")[0].strip().lower() == FORM_CONTENT_TYPE

    def _error_response(
        self, error: BackChannelLogoutError, config: BackChannelLogoutConfig
    ) -> JSONResponse:
        body = LogoutErrorResponse(
            error_code=error.error.error_code,
            error_description=error.error.description,
            error_uri=error_uri_for(error.error, config.error_uri),
        )
        return JSONResponse(status_code=400, content=body.model_dump(), headers=NO_CACHE_HEADERS)
