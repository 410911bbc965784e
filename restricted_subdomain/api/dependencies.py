"""FastAPI dependencies exposing the request's tenant.

The gatekeeper middleware has already bound (or deliberately not bound) a
tenant by the time any of these run.
"""

from collections.abc import Generator
from typing import Annotated, Any

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from restricted_subdomain.context import TenantContext
from restricted_subdomain.db.engine import session_scope
from restricted_subdomain.errors import ResolutionRejected
from restricted_subdomain.session import PartitionedSession


def get_tenant_context(request: Request) -> TenantContext:
    """Return the application's tenant context."""
    return request.app.state.tenant_context  # type: ignore[no-any-return]


TenantContextDep = Annotated[TenantContext, Depends(get_tenant_context)]


def _request_identifier(request: Request) -> str:
    resolution = getattr(request.state, "tenant_resolution", None)
    return resolution.identifier if resolution is not None else ""


async def get_current_tenant(context: TenantContextDep) -> Any | None:
    """Return the bound tenant, or None on a global subdomain."""
    return context.current()


async def get_current_identifier(context: TenantContextDep) -> str | None:
    """Return the bound tenant's identifier, e.g. ``"secksi"``."""
    return context.current_identifier()


async def require_tenant(request: Request, context: TenantContextDep) -> Any:
    """Require a bound tenant.

    Use on routes that must not be reachable from a global subdomain.

    Raises:
        ResolutionRejected: If no tenant is bound
    """
    tenant = context.current()
    if tenant is None:
        raise ResolutionRejected(_request_identifier(request))
    return tenant


async def require_no_tenant(request: Request, context: TenantContextDep) -> None:
    """Require that no tenant is bound.

    Use on routes that are only reachable from a global subdomain.

    Raises:
        ResolutionRejected: If a tenant is bound
    """
    if context.current() is not None:
        raise ResolutionRejected(_request_identifier(request))


async def get_tenant_session(request: Request) -> PartitionedSession:
    """Return the request session restricted to the bound tenant."""
    return PartitionedSession(request.session, request.app.state.session_partitioner)


def get_db(request: Request) -> Generator[Session, None, None]:
    """FastAPI dependency for a tenant-scoped database session.

    Yields:
        Session instance
    """
    yield from session_scope(request.app.state.session_factory)
