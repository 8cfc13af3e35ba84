"""Logout token decoding and authentication.

The decoder only establishes that the token is a well-formed JWS signed by
the issuing identity provider. Every protocol rule (audience, timestamps,
events, nonce, subject/sid) is checked by ``LogoutTokenAuthenticator`` in a
fixed order, so the first broken rule determines the rejection reason.
"""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol

import jwt as pyjwt
from jwt.exceptions import PyJWTError

from backchannel_logout.services.client_registry import ClientConfig, ClientRegistry
from backchannel_logout.services.errors import (
    BackChannelLogoutError,
    KeyFetchError,
    ReplayCacheError,
    TokenDecodeError,
    invalid_token,
    service_error,
)
from backchannel_logout.services.jwks import JwksCache, find_key, parse_jwks

logger = logging.getLogger(__name__)

BACKCHANNEL_LOGOUT_EVENT = "http://schemas.openid.net/event/backchannel-logout"

# Claim checks the authenticator performs itself
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iss": False,
    "verify_exp": False,
    "verify_iat": False,
    "verify_nbf": False,
    "verify_sub": False,
    "verify_jti": False,
}


def _string_claim(claims: Mapping[str, Any], name: str) -> str | None:
    value = claims.get(name)
    if isinstance(value, str) and value:
        return value
    return None


def _numeric_claim(claims: Mapping[str, Any], name: str) -> float | None:
    value = claims.get(name)
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return value


def _audience_claim(claims: Mapping[str, Any]) -> tuple[str, ...]:
    value = claims.get("aud")
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(aud for aud in value if isinstance(aud, str))
    return ()


@dataclass(frozen=True)
class LogoutToken:
    """Claims of a decoded logout token. Not trusted until authenticated."""

    issuer: str | None
    audience: tuple[str, ...]
    issued_at: float | None
    expires_at: float | None
    jwt_id: str | None
    subject: str | None
    session_id: str | None
    events: Any
    has_nonce: bool
    claims: Mapping[str, Any] = field(repr=False, compare=False)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "LogoutToken":
        return cls(
            issuer=_string_claim(claims, "iss"),
            audience=_audience_claim(claims),
            issued_at=_numeric_claim(claims, "iat"),
            expires_at=_numeric_claim(claims, "exp"),
            jwt_id=_string_claim(claims, "jti"),
            subject=_string_claim(claims, "sub"),
            session_id=_string_claim(claims, "sid"),
            events=claims.get("events"),
            has_nonce="nonce" in claims,
            claims=MappingProxyType(dict(claims)),
        )

    @property
    def has_logout_event(self) -> bool:
        return isinstance(self.events, dict) and isinstance(
            self.events.get(BACKCHANNEL_LOGOUT_EVENT), dict
        )


@dataclass(frozen=True)
class LogoutAuthentication:
    """A validated logout request: who to log out, for which client."""

    client: ClientConfig
    subject: str | None
    session_id: str | None
    token_id: str
    issuer: str

    @property
    def client_id(self) -> str:
        return self.client.client_id


class LogoutTokenDecoder(Protocol):
    async def decode(self, raw_token: str) -> dict[str, Any]:
        """Verify the token signature and return its claims.

        Raises:
            TokenDecodeError: If the token is malformed or its signature is invalid.
            KeyFetchError: If verification keys cannot be obtained.
        """
        ...


class ReplayCache(Protocol):
    async def check_and_remember(self, issuer: str, jti: str, expires_at: float | None) -> bool:
        """Record ``jti`` and return False if it was already recorded.

        Raises:
            ReplayCacheError: If the cache cannot be consulted.
        """
        ...


class JwksLogoutTokenDecoder:
    """Verifies logout tokens against the issuing client's published keys."""

    def __init__(self, registry: ClientRegistry, jwks_cache: JwksCache | None = None):
        self._registry = registry
        self._jwks_cache = jwks_cache
        self._static_key_sets: dict[str, pyjwt.PyJWKSet] = {}

    async def decode(self, raw_token: str) -> dict[str, Any]:
        try:
            header = pyjwt.get_unverified_header(raw_token)
            unverified = pyjwt.decode(raw_token, options={"verify_signature": False})
        except PyJWTError as e:
            raise TokenDecodeError(f"Malformed token: {e}") from e

        issuer = unverified.get("iss")
        if issuer is not None and not isinstance(issuer, str):
            raise TokenDecodeError(f"Issuer claim is not a string: {type(issuer).__name__}")

        client = self._registry.resolve_by_issuer(issuer)
        if client is None:
            raise TokenDecodeError(f"No client registered for issuer {issuer!r}")

        algorithm = header.get("alg")
        if algorithm not in client.signing_algorithms:
            raise TokenDecodeError(
                f"Algorithm {algorithm!r} not allowed for {client.registration_id}"
            )

        kid = header.get("kid")
        signing_key = await self._signing_key(client, kid)
        if signing_key is None:
            raise TokenDecodeError(f"No signing key found for kid={kid}")

        try:
            return pyjwt.decode(
                raw_token,
                signing_key.key,
                algorithms=client.signing_algorithms,
                options=_DECODE_OPTIONS,
            )
        except PyJWTError as e:
            raise TokenDecodeError(f"Signature verification failed: {e}") from e

    async def _signing_key(self, client: ClientConfig, kid: str | None) -> pyjwt.PyJWK | None:
        if client.jwks:
            jwk_set = self._static_key_sets.get(client.registration_id)
            if jwk_set is None:
                jwk_set = parse_jwks(client.jwks)
                self._static_key_sets[client.registration_id] = jwk_set
            return find_key(jwk_set, kid)

        if self._jwks_cache is None:
            raise KeyFetchError(f"No JWKS cache available for {client.jwks_uri}")
        return await self._jwks_cache.get_key(client.jwks_uri, kid)


class LogoutTokenAuthenticator:
    """Turns a raw logout token into a ``LogoutAuthentication``.

    Validation order:
        1. signature and structure (decoder)
        2. issuer is a registered client
        3. audience contains the client id
        4. iat present and not in the future
        5. exp present and not passed
        6. jti present
        7. events contains the back-channel logout event
        8. nonce absent
        9. sub or sid present
        10. jti not seen before (when a replay cache is configured)
    """

    def __init__(
        self,
        decoder: LogoutTokenDecoder,
        registry: ClientRegistry,
        clock_skew_seconds: float = 60,
        replay_cache: ReplayCache | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._decoder = decoder
        self._registry = registry
        self._clock_skew = clock_skew_seconds
        self._replay_cache = replay_cache
        self._clock = clock

    async def authenticate(self, raw_token: str) -> LogoutAuthentication:
        """Validate ``raw_token``.

        Raises:
            BackChannelLogoutError: ``INVALID_TOKEN`` when a rule fails,
                ``SERVICE_ERROR`` when a collaborator is unavailable.
        """
        try:
            claims = await self._decoder.decode(raw_token)
        except TokenDecodeError as e:
            logger.info(f"Logout token could not be decoded: {e}")
            raise invalid_token("Failed to decode the logout token") from e
        except KeyFetchError as e:
            logger.error(f"Signing keys unavailable while decoding logout token: {e}")
            raise service_error("Signing keys are unavailable", e) from e

        token = LogoutToken.from_claims(claims)
        now = self._clock()

        client = self._registry.resolve_by_issuer(token.issuer)
        if client is None:
            raise self._reject(token, "The logout token issuer is not recognized")

        if client.client_id not in token.audience:
            raise self._reject(token, "The logout token audience does not include this client")

        if token.issued_at is None or token.issued_at > now + self._clock_skew:
            raise self._reject(token, "The logout token iat claim is missing or in the future")

        if token.expires_at is None or token.expires_at <= now - self._clock_skew:
            raise self._reject(token, "The logout token exp claim is missing or has expired")

        if token.jwt_id is None:
            raise self._reject(token, "The logout token jti claim is missing")

        if not token.has_logout_event:
            raise self._reject(
                token,
                "The logout token events claim does not contain the back-channel logout event",
            )

        if token.has_nonce:
            raise self._reject(token, "The logout token must not contain a nonce claim")

        if token.subject is None and token.session_id is None:
            raise self._reject(token, "The logout token must contain a sub or sid claim")

        if self._replay_cache is not None:
            try:
                fresh = await self._replay_cache.check_and_remember(
                    token.issuer, token.jwt_id, token.expires_at
                )
            except ReplayCacheError as e:
                logger.error(f"Replay cache unavailable: {e}")
                raise service_error("Replay detection is unavailable", e) from e
            if not fresh:
                raise self._reject(token, "The logout token has already been used")

        logger.debug(
            "Logout token %s accepted for client %s (sub=%s, sid=%s)",
            token.jwt_id,
            client.registration_id,
            token.subject,
            token.session_id,
        )
        return LogoutAuthentication(
            client=client,
            subject=token.subject,
            session_id=token.session_id,
            token_id=token.jwt_id,
            issuer=token.issuer,
        )

    def _reject(self, token: LogoutToken, description: str) -> BackChannelLogoutError:
        logger.info(
            f"Logout token {token.jwt_id or '<no jti>'} from {token.issuer} rejected: {description}"
        )
        return invalid_token(description)
