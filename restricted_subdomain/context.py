"""Execution-local tenant context.

The active tenant lives in a ``ContextVar`` so every asyncio task and every
thread sees its own binding. Nested bindings restore the outer value through
``ContextVar`` tokens, whatever way the nested block exits.
"""

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Any, TypeVar

from restricted_subdomain.db.registry import TenantRegistry
from restricted_subdomain.errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TenantContext:
    """Holds the tenant bound to the current request, task or block."""

    def __init__(self, registry: TenantRegistry | None = None, name: str = "current_tenant") -> None:
        """Initialize tenant context.

        Args:
            registry: Registry used to resolve string identifiers
            name: Name of the underlying context variable
        """
        self.registry = registry
        self._current: ContextVar[Any | None] = ContextVar(name, default=None)

    def _coerce(self, tenant_or_identifier: Any) -> Any | None:
        if tenant_or_identifier is None:
            return None
        if self.registry is None:
            if isinstance(tenant_or_identifier, str):
                raise ConfigurationError(
                    "TenantContext needs a registry to bind identifier "
                    f"{tenant_or_identifier!r}"
                )
            return tenant_or_identifier
        if self.registry.is_tenant(tenant_or_identifier):
            return tenant_or_identifier
        return self.registry.find_by_key(tenant_or_identifier)

    def bind(self, tenant_or_identifier: Any) -> Token[Any | None]:
        """Bind a tenant for the current execution unit.

        Identifiers are looked up through the registry first; an identifier
        that resolves to nothing binds no tenant.

        Args:
            tenant_or_identifier: Tenant instance, identifier, or None

        Returns:
            Token that restores the previous binding
        """
        return self._current.set(self._coerce(tenant_or_identifier))

    def clear(self) -> None:
        """Bind no tenant."""
        self._current.set(None)

    def reset(self, token: Token[Any | None]) -> None:
        """Restore the binding that was active before ``token`` was issued."""
        self._current.reset(token)

    def current(self) -> Any | None:
        """Return the tenant bound to the calling execution unit."""
        return self._current.get()

    def current_id(self) -> Any | None:
        """Primary key of the bound tenant, or None."""
        tenant = self.current()
        if tenant is None:
            return None
        if self.registry is None:
            return tenant.id
        return self.registry.id_of(tenant)

    def current_identifier(self) -> str | None:
        """Lookup value of the bound tenant, e.g. ``"secksi"``, or None."""
        tenant = self.current()
        if tenant is None:
            return None
        if self.registry is None:
            return str(tenant)
        return self.registry.key_of(tenant)

    @contextmanager
    def scoped(self, tenant_or_identifier: Any) -> Iterator[Any | None]:
        """Bind a tenant for the duration of a ``with`` block.

        Yields:
            The bound tenant, or None
        """
        token = self.bind(tenant_or_identifier)
        try:
            yield self._current.get()
        finally:
            self._current.reset(token)

    @contextmanager
    def unscoped(self) -> Iterator[None]:
        """Run a ``with`` block with no tenant bound."""
        with self.scoped(None):
            yield

    def run_scoped(self, tenant_or_identifier: Any, body: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call body with a tenant bound, restoring the prior binding after."""
        with self.scoped(tenant_or_identifier):
            return body(*args, **kwargs)

    def run_unscoped(self, body: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Call body with no tenant bound."""
        return self.run_scoped(None, body, *args, **kwargs)

    def for_each_tenant(self, body: Callable[[Any], T]) -> list[T]:
        """Call body once per tenant with that tenant bound.

        Useful for console and background tasks that must run per tenant.

        Args:
            body: Callable receiving the bound tenant

        Returns:
            Results of body, in registry order
        """
        if self.registry is None:
            raise ConfigurationError("TenantContext needs a registry to enumerate tenants")

        results = []
        for tenant in self.registry.all():
            with self.scoped(tenant):
                results.append(body(tenant))
        return results
