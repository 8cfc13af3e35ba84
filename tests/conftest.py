"""Pytest configuration and fixtures for back-channel logout tests.

Logout tokens are signed with an RSA key generated once per session. The
identity provider's key set is handed to the decoder as a static JWKS, so no
test needs network access. SQL tests run against SQLite through aiosqlite.
"""

import json
import os
import time
import uuid
from collections.abc import AsyncGenerator, Callable, Iterable
from typing import Any

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Set test environment variables before importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["SESSION_STORE"] = "memory"
os.environ["OIDC_CLIENTS"] = "[]"

import jwt as pyjwt  # noqa: E402
from jwt import api_jws  # noqa: E402
from jwt.algorithms import RSAAlgorithm  # noqa: E402

from backchannel_logout.core.config import OIDCClientSettings, Settings  # noqa: E402
from backchannel_logout.core.database import (  # noqa: E402
    create_engine,
    create_session_factory,
    create_tables,
)
from backchannel_logout.services import (  # noqa: E402
    BACKCHANNEL_LOGOUT_EVENT,
    ClientRegistry,
    InMemorySessionStore,
    JwksLogoutTokenDecoder,
    LogoutEventPublisher,
    LogoutTokenAuthenticator,
)

ISSUER = "https://idp.example"
CLIENT_ID = "rp1"
KEY_ID = "test-key-1"
LOGOUT_PATH = "/logout/connect/back-channel"

TokenFactory = Callable[..., str]


# --- Signing keys ---


def generate_rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def public_jwk(private_key: rsa.RSAPrivateKey, kid: str = KEY_ID) -> dict[str, Any]:
    """Public JWK for ``private_key`` with the given key id."""
    jwk = json.loads(RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "alg": "RS256", "use": "sig"})
    return jwk


@pytest.fixture(scope="session")
def signing_key() -> rsa.RSAPrivateKey:
    return generate_rsa_key()


@pytest.fixture(scope="session")
def jwks(signing_key) -> dict[str, Any]:
    return {"keys": [public_jwk(signing_key)]}


# --- Logout tokens ---


def logout_claims(**overrides: Any) -> dict[str, Any]:
    """Claims of a valid logout token for CLIENT_ID, with ``overrides`` applied."""
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "aud": [CLIENT_ID],
        "iat": now - 5,
        "exp": now + 55,
        "jti": str(uuid.uuid4()),
        "sid": "abc",
        "events": {BACKCHANNEL_LOGOUT_EVENT: {}},
    }
    claims.update(overrides)
    return claims


@pytest.fixture
def make_logout_token(signing_key) -> TokenFactory:
    """Factory signing logout tokens.

    Keyword arguments override claims; ``omit`` lists claims to drop.
    """

    def _make(
        omit: Iterable[str] = (),
        key: rsa.RSAPrivateKey | None = None,
        kid: str | None = KEY_ID,
        **overrides: Any,
    ) -> str:
        claims = logout_claims(**overrides)
        for name in omit:
            claims.pop(name, None)
        headers = {"kid": kid} if kid is not None else {}
        return pyjwt.encode(claims, key or signing_key, algorithm="RS256", headers=headers)

    return _make


def sign_claims(claims: dict[str, Any], key: rsa.RSAPrivateKey, kid: str = KEY_ID) -> str:
    """Sign ``claims`` verbatim, bypassing the claim type checks of ``jwt.encode``."""
    payload = json.dumps(claims).encode()
    return api_jws.encode(payload, key, algorithm="RS256", headers={"kid": kid})


# --- Pipeline collaborators ---


@pytest.fixture
def client_settings(jwks) -> OIDCClientSettings:
    return OIDCClientSettings(
        registration_id="idp",
        issuer=ISSUER,
        client_id=CLIENT_ID,
        jwks=jwks,
    )


@pytest.fixture
def registry(client_settings) -> ClientRegistry:
    return ClientRegistry([client_settings])


@pytest.fixture
def authenticator(registry) -> LogoutTokenAuthenticator:
    return LogoutTokenAuthenticator(JwksLogoutTokenDecoder(registry), registry)


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def publisher() -> LogoutEventPublisher:
    return LogoutEventPublisher()


# --- Database ---


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory bound to a fresh SQLite database with all tables created."""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'logout.db'}")
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


# --- Application ---


@pytest.fixture
def app_settings(client_settings) -> Settings:
    return Settings(
        session_store="memory",
        replay_detection="memory",
        oidc_clients=[client_settings],
        backchannel_logout_path=LOGOUT_PATH,
    )


@pytest.fixture
def app(app_settings, session_store, publisher):
    from backchannel_logout.main import create_app

    return create_app(app_settings, session_store=session_store, publisher=publisher)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Client for the ASGI app. Server errors come back as 500 responses."""
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# --- Circuit Breaker Reset Fixture ---


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Give every test a fresh circuit breaker registry."""
    from backchannel_logout.core.retry import CircuitBreaker

    saved = dict(CircuitBreaker._registry)
    CircuitBreaker._registry.clear()
    yield
    CircuitBreaker._registry.clear()
    CircuitBreaker._registry.update(saved)
