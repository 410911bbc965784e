"""Restricted subdomains - re-exports for convenience."""

from restricted_subdomain.context import TenantContext
from restricted_subdomain.db.registry import TenantRegistry
from restricted_subdomain.db.scoping import ScopedEntityDeclaration, ScopeEngine, ScopeMode
from restricted_subdomain.errors import (
    ConfigurationError,
    ResolutionRejected,
    TenancyError,
    TenantContextLeak,
    TenantMissingError,
    ValidationError,
)
from restricted_subdomain.middleware.gatekeeper import (
    GatekeeperConfig,
    Resolution,
    ResolutionOutcome,
    TenantGatekeeper,
)
from restricted_subdomain.session import PartitionedSession, SessionPartitioner

__all__ = [
    "ConfigurationError",
    "GatekeeperConfig",
    "PartitionedSession",
    "Resolution",
    "ResolutionOutcome",
    "ResolutionRejected",
    "ScopeEngine",
    "ScopeMode",
    "ScopedEntityDeclaration",
    "SessionPartitioner",
    "TenancyError",
    "TenantContext",
    "TenantContextLeak",
    "TenantGatekeeper",
    "TenantMissingError",
    "TenantRegistry",
    "ValidationError",
]
