"""Tenant lookup by identifier."""

import importlib
import logging
from collections.abc import Callable
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.orm import Mapper, Session, sessionmaker

from restricted_subdomain.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Execution option understood by the scoping hook; registry reads are never
# filtered by the tenant they are trying to find.
SKIP_TENANT_SCOPE = "skip_tenant_scope"

TenantModelRef = type | str | Callable[[], type]


def resolve_model(ref: TenantModelRef) -> type:
    """Turn a class, ``"module:Class"`` path or zero-arg callable into a class.

    Raises:
        ConfigurationError: If the reference cannot be resolved
    """
    if isinstance(ref, type):
        return ref

    if isinstance(ref, str):
        module_name, _, attr = ref.partition(":")
        if not attr:
            module_name, _, attr = ref.rpartition(".")
        try:
            module = importlib.import_module(module_name)
            return getattr(module, attr)  # type: ignore[no-any-return]
        except (ImportError, AttributeError, ValueError) as e:
            raise ConfigurationError(f"Cannot import tenant model {ref!r}") from e

    if callable(ref):
        return ref()

    raise ConfigurationError(f"Unsupported tenant model reference: {ref!r}")


class TenantRegistry:
    """Resolves tenant identifiers to tenant records.

    Lookups are exact and case-sensitive against the configured column. A
    miss is a normal outcome and returns ``None``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        model: TenantModelRef = "restricted_subdomain.db.models:Agency",
        lookup_column: str = "code",
    ) -> None:
        """Initialize registry.

        Args:
            session_factory: Factory for short-lived lookup sessions
            model: Tenant model class, import path, or callable returning it
            lookup_column: Column holding the subdomain identifier
        """
        self._session_factory = session_factory
        self._model_ref = model
        self._model: type | None = None
        self.lookup_column = lookup_column

    @property
    def model(self) -> type:
        """Tenant model class, resolved on first use."""
        if self._model is None:
            model = resolve_model(self._model_ref)
            mapper = inspect(model, raiseerr=False)
            if not isinstance(mapper, Mapper):
                raise ConfigurationError(f"{model!r} is not a mapped class")
            if self.lookup_column not in mapper.columns:
                raise ConfigurationError(
                    f"{model.__name__} has no column {self.lookup_column!r}"
                )
            if len(mapper.primary_key) != 1:
                raise ConfigurationError(
                    f"{model.__name__} must have a single-column primary key"
                )
            self._model = model
        return self._model

    @property
    def _pk_attr(self) -> str:
        mapper = inspect(self.model)
        return mapper.get_property_by_column(mapper.primary_key[0]).key

    def find_by_key(self, identifier: Any) -> Any | None:
        """Find tenant whose lookup column equals identifier.

        Args:
            identifier: Subdomain identifier

        Returns:
            Tenant instance or None if not found
        """
        if identifier is None:
            return None
        identifier = str(identifier)
        if not identifier.strip():
            return None

        column = getattr(self.model, self.lookup_column)
        stmt = select(self.model).where(column == identifier).limit(1)
        with self._session_factory() as session:
            tenant = session.scalars(
                stmt, execution_options={SKIP_TENANT_SCOPE: True}
            ).first()

        if tenant is None:
            logger.debug("No tenant with %s=%r", self.lookup_column, identifier)
        return tenant

    def exists(self, identifier: Any) -> bool:
        """Check whether a tenant with this identifier exists."""
        return self.find_by_key(identifier) is not None

    def find_by_id(self, tenant_id: Any) -> Any | None:
        """Find tenant by primary key."""
        with self._session_factory() as session:
            return session.get(
                self.model, tenant_id, execution_options={SKIP_TENANT_SCOPE: True}
            )

    def all(self) -> list[Any]:
        """List every tenant ordered by primary key."""
        stmt = select(self.model).order_by(getattr(self.model, self._pk_attr))
        with self._session_factory() as session:
            return list(
                session.scalars(stmt, execution_options={SKIP_TENANT_SCOPE: True}).all()
            )

    def key_of(self, tenant: Any) -> str:
        """Lookup value of a tenant, used as its session partition key."""
        return str(getattr(tenant, self.lookup_column))

    def id_of(self, tenant: Any) -> Any:
        """Primary key value of a tenant."""
        return getattr(tenant, self._pk_attr)

    def is_tenant(self, value: Any) -> bool:
        """Check whether value is an instance of the tenant model."""
        return isinstance(value, self.model)
