"""FastAPI application factory.

Run with ``uvicorn restricted_subdomain.main:create_app --factory``.
"""

import logging
from collections.abc import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session, sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from restricted_subdomain.api.routes.health import router as health_router
from restricted_subdomain.api.routes.metrics import router as metrics_router
from restricted_subdomain.config import Settings, get_settings
from restricted_subdomain.context import TenantContext
from restricted_subdomain.db.engine import create_engine_from_settings, create_session_factory
from restricted_subdomain.db.registry import TenantRegistry
from restricted_subdomain.db.scoping import ScopeEngine
from restricted_subdomain.errors import ConfigurationError, ResolutionRejected, ValidationError
from restricted_subdomain.middleware.gatekeeper import GatekeeperConfig, TenantGatekeeper
from restricted_subdomain.session import SessionPartitioner

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: sessionmaker[Session] | None = None,
    declare: Callable[[ScopeEngine], None] | None = None,
) -> FastAPI:
    """Build the application with tenant resolution and scoping wired in.

    Args:
        settings: Settings (defaults to environment settings)
        session_factory: Session factory (defaults to one built from settings)
        declare: Callback declaring the application's scoped entities

    Returns:
        FastAPI application

    Raises:
        ConfigurationError: On missing settings or invalid declarations
    """
    settings = settings or get_settings()
    if not settings.session_secret_key:
        raise ConfigurationError("SESSION_SECRET_KEY must be set")

    if session_factory is None:
        session_factory = create_session_factory(create_engine_from_settings(settings))

    config = GatekeeperConfig.from_settings(settings)
    registry = TenantRegistry(session_factory, config.tenant_model, config.lookup_column)
    context = TenantContext(registry)
    scope = ScopeEngine(context)
    if declare is not None:
        declare(scope)
    scope.configure()
    scope.install(session_factory)

    app = FastAPI(title="Restricted Subdomain API", version="0.1.0")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.tenant_context = context
    app.state.scope_engine = scope
    app.state.session_partitioner = SessionPartitioner(context)
    app.state.gatekeeper_config = config

    app.include_router(health_router, tags=["health"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.exception_handler(ResolutionRejected)
    async def resolution_rejected_handler(request: Request, exc: ResolutionRejected) -> Response:
        return config.not_found_response(exc.identifier)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> Response:
        return JSONResponse(
            status_code=422,
            content={"detail": exc.errors},
        )

    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret_key,
        session_cookie=settings.session_cookie,
    )
    # Added last so it wraps everything, sessions included.
    app.add_middleware(TenantGatekeeper, context=context, config=config)

    logger.info(
        "Tenant gatekeeper enabled: lookup %s, %d scoped entities",
        config.lookup_column,
        len(scope.declarations),
    )
    return app
