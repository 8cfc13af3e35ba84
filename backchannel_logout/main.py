"""OIDC Back-Channel Logout - FastAPI Application Factory."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from backchannel_logout.api import health_router
from backchannel_logout.core import settings as default_settings
from backchannel_logout.core.config import Settings
from backchannel_logout.core.database import create_engine, create_session_factory, create_tables
from backchannel_logout.core.logging import get_logger, setup_logging
from backchannel_logout.middleware import (
    BackChannelLogoutConfig,
    BackChannelLogoutConfigRef,
    BackChannelLogoutMiddleware,
    replay_cleanup_loop,
)
from backchannel_logout.services import (
    ClientRegistry,
    DatabaseReplayCache,
    InMemoryReplayCache,
    InMemorySessionStore,
    JwksCache,
    JwksLogoutTokenDecoder,
    LogoutEventPublisher,
    LogoutTokenAuthenticator,
    SessionCorrelationResolver,
    SessionInvalidationHandler,
    SQLAlchemySessionStore,
)
from backchannel_logout.services.logout_token import ReplayCache
from backchannel_logout.services.session_store import SessionStore

logger = get_logger("main")


def task_done_callback(task: asyncio.Task[None]) -> None:
    """Log unhandled exceptions from background tasks."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Background task {task.get_name()} failed: {exc}")


@dataclass
class LogoutComponents:
    """Everything the logout endpoint is assembled from."""

    client_registry: ClientRegistry
    jwks_cache: JwksCache
    session_store: SessionStore
    replay_cache: ReplayCache | None
    publisher: LogoutEventPublisher
    config: BackChannelLogoutConfig
    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None


def build_logout_components(
    app_settings: Settings,
    session_store: SessionStore | None = None,
    jwks_cache: JwksCache | None = None,
    publisher: LogoutEventPublisher | None = None,
) -> LogoutComponents:
    """Assemble the logout pipeline from settings.

    ``session_store``, ``jwks_cache`` and ``publisher`` replace the configured
    collaborators when given.
    """
    engine = None
    session_factory = None
    if session_store is None:
        needs_database = app_settings.uses_database
    else:
        needs_database = app_settings.replay_detection == "database"
    if needs_database:
        engine = create_engine(app_settings.database_url, app_settings)
        session_factory = create_session_factory(engine)

    if session_store is None:
        if app_settings.session_store == "database":
            session_store = SQLAlchemySessionStore(session_factory)
        else:
            session_store = InMemorySessionStore()

    replay_cache: ReplayCache | None = None
    if app_settings.replay_detection == "memory":
        replay_cache = InMemoryReplayCache(ttl_seconds=app_settings.replay_ttl_seconds)
    elif app_settings.replay_detection == "database":
        replay_cache = DatabaseReplayCache(
            session_factory, ttl_seconds=app_settings.replay_ttl_seconds
        )

    registry = ClientRegistry(app_settings.oidc_clients)
    jwks_cache = jwks_cache or JwksCache(
        ttl_seconds=app_settings.jwks_cache_ttl_seconds,
        max_stale_seconds=app_settings.jwks_max_stale_seconds,
        timeout=app_settings.jwks_fetch_timeout_seconds,
    )
    publisher = publisher or LogoutEventPublisher.get_instance()

    authenticator = LogoutTokenAuthenticator(
        JwksLogoutTokenDecoder(registry, jwks_cache),
        registry,
        clock_skew_seconds=app_settings.clock_skew_seconds,
        replay_cache=replay_cache,
    )
    invalidation_handler = SessionInvalidationHandler(
        session_store,
        resolver=SessionCorrelationResolver(session_store),
        publisher=publisher,
    )

    return LogoutComponents(
        client_registry=registry,
        jwks_cache=jwks_cache,
        session_store=session_store,
        replay_cache=replay_cache,
        publisher=publisher,
        config=BackChannelLogoutConfig(
            authenticator=authenticator,
            invalidation_handler=invalidation_handler,
            error_uri=app_settings.backchannel_logout_error_uri,
            publisher=publisher,
        ),
        engine=engine,
        session_factory=session_factory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    app_settings: Settings = app.state.settings
    components: LogoutComponents = app.state.logout_components

    setup_logging(app_settings.log_level, app_settings.log_format)
    logger.info(f"Starting {app_settings.app_name} v{app_settings.app_version}")

    for warning in app_settings.check_security_configuration():
        logger.warning(f"Security configuration: {warning}")

    if components.engine is not None:
        await create_tables(components.engine)
        logger.info("Database tables ready")

    tasks: list[asyncio.Task] = []
    if isinstance(components.replay_cache, InMemoryReplayCache | DatabaseReplayCache):
        cleanup_task = asyncio.create_task(
            replay_cleanup_loop(
                components.replay_cache, app_settings.replay_cleanup_interval_seconds
            )
        )
        cleanup_task.add_done_callback(task_done_callback)
        tasks.append(cleanup_task)

    logger.info(
        f"Back-channel logout endpoint at {app_settings.backchannel_logout_path} "
        f"for {len(components.client_registry)} client(s)"
    )

    yield

    # Shutdown
    logger.info("Shutting down...")
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    await components.jwks_cache.close()
    if components.engine is not None:
        await components.engine.dispose()


def create_app(
    app_settings: Settings | None = None,
    session_store: SessionStore | None = None,
    jwks_cache: JwksCache | None = None,
    publisher: LogoutEventPublisher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = app_settings or default_settings
    components = build_logout_components(
        app_settings,
        session_store=session_store,
        jwks_cache=jwks_cache,
        publisher=publisher,
    )

    app = FastAPI(
        title=app_settings.app_name,
        description="OIDC Back-Channel Logout relying party",
        version=app_settings.app_version,
        lifespan=lifespan,
        docs_url="/docs" if app_settings.debug else None,
        redoc_url="/redoc" if app_settings.debug else None,
        openapi_url="/openapi.json" if app_settings.debug else None,
    )

    config_ref = BackChannelLogoutConfigRef(components.config)
    app.state.settings = app_settings
    app.state.logout_components = components
    app.state.client_registry = components.client_registry
    app.state.session_store = components.session_store
    app.state.session_factory = components.session_factory
    app.state.backchannel_logout = config_ref

    app.add_middleware(
        BackChannelLogoutMiddleware,
        config=config_ref,
        path=app_settings.backchannel_logout_path,
    )

    app.include_router(health_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with service information."""
        return {
            "name": app_settings.app_name,
            "version": app_settings.app_version,
            "backchannel_logout": app_settings.backchannel_logout_path,
        }

    return app


# Application instance
app = create_app()
