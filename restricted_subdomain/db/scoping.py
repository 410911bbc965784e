"""Tenant scoping for restricted entities.

Entities are declared once, either DIRECT (they carry the tenant foreign
key) or DELEGATE (they reach a tenant through an association to a DIRECT
entity). ``ScopeEngine.install`` hooks a session so that while a tenant is
bound:

- ORM selects carry ``with_loader_criteria`` options for every declared
  entity, wherever it appears in the statement; DELEGATE result entities
  are additionally inner-joined to their delegate;
- ORM updates and deletes of a declared entity go through
  ``ScopeEngine.apply_scope``;
- every pending DIRECT entity gets its tenant key filled in before flush.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from sqlalchemy import Delete, Select, Update, and_, event, inspect, select
from sqlalchemy.orm import (
    Mapper,
    ORMExecuteState,
    Session,
    UOWTransaction,
    aliased,
    sessionmaker,
    with_loader_criteria,
)
from sqlalchemy.orm.util import LoaderCriteriaOption

from restricted_subdomain.context import TenantContext
from restricted_subdomain.db.registry import SKIP_TENANT_SCOPE
from restricted_subdomain.errors import ConfigurationError, TenantMissingError

logger = logging.getLogger(__name__)

StatementT = TypeVar("StatementT", Select[Any], Update, Delete)

# Session info key under which an installed engine is recorded.
SCOPE_ENGINE_INFO_KEY = "tenant_scope_engine"


class ScopeMode(str, Enum):
    """How an entity reaches its tenant."""

    DIRECT = "direct"
    DELEGATE = "delegate"


@dataclass(frozen=True)
class ScopedEntityDeclaration:
    """Static scoping configuration of one entity type."""

    entity_type: type
    mode: ScopeMode
    foreign_key: str | None = None
    delegate_association: str | None = None
    delegate_foreign_key: str | None = None

    @property
    def tenant_field(self) -> str:
        """Name reported when the tenant is missing, e.g. ``agency``."""
        if self.foreign_key and self.foreign_key.endswith("_id"):
            return self.foreign_key[: -len("_id")]
        return self.foreign_key or "tenant"


@dataclass(frozen=True)
class DelegateJoin:
    """Resolved attribute names for a DELEGATE declaration."""

    delegate_type: type
    entity_key: str
    delegate_key: str
    tenant_key: str


def _mapper_of(entity_type: type) -> Mapper[Any]:
    mapper = inspect(entity_type, raiseerr=False)
    if not isinstance(mapper, Mapper):
        raise ConfigurationError(f"{entity_type!r} is not a mapped class")
    return mapper


def _single_key(mapper: Mapper[Any], columns: Any, what: str) -> str:
    columns = list(columns)
    if len(columns) != 1:
        raise ConfigurationError(
            f"{mapper.class_.__name__}: {what} must be a single column, got {len(columns)}"
        )
    return mapper.get_property_by_column(columns[0]).key


class ScopeEngine:
    """Registry of scoped entities and the filter applied to their queries."""

    def __init__(self, context: TenantContext) -> None:
        """Initialize scope engine.

        Args:
            context: Tenant context consulted when a statement is scoped
        """
        self._context = context
        self._declarations: dict[type, ScopedEntityDeclaration] = {}
        self._delegate_joins: dict[type, DelegateJoin] = {}

    def declare(
        self,
        entity_type: type,
        mode: ScopeMode | str,
        *,
        foreign_key: str | None = None,
        delegate_association: str | None = None,
        delegate_foreign_key: str | None = None,
    ) -> ScopedEntityDeclaration:
        """Declare an entity type as restricted to the bound tenant.

        Args:
            entity_type: Mapped class
            mode: DIRECT or DELEGATE
            foreign_key: Tenant foreign key attribute (DIRECT)
            delegate_association: Relationship to a DIRECT entity (DELEGATE)
            delegate_foreign_key: Attribute on the delegate pointing back at
                ``entity_type``; derived from the relationship when omitted

        Returns:
            The recorded declaration

        Raises:
            ConfigurationError: On missing parameters or a conflicting
                redeclaration
        """
        mode = ScopeMode(mode)
        mapper = _mapper_of(entity_type)

        if mode is ScopeMode.DIRECT:
            if not foreign_key:
                raise ConfigurationError(
                    f"{entity_type.__name__}: DIRECT scoping requires foreign_key"
                )
            if not mapper.has_property(foreign_key):
                raise ConfigurationError(
                    f"{entity_type.__name__} has no attribute {foreign_key!r}"
                )
            declaration = ScopedEntityDeclaration(entity_type, mode, foreign_key=foreign_key)
        else:
            if not delegate_association:
                raise ConfigurationError(
                    f"{entity_type.__name__}: DELEGATE scoping requires delegate_association"
                )
            declaration = ScopedEntityDeclaration(
                entity_type,
                mode,
                delegate_association=delegate_association,
                delegate_foreign_key=delegate_foreign_key,
            )

        existing = self._declarations.get(entity_type)
        if existing is not None:
            if existing != declaration:
                raise ConfigurationError(
                    f"{entity_type.__name__} is already declared as {existing.mode.value} "
                    "with different parameters"
                )
            return existing

        self._declarations[entity_type] = declaration
        logger.debug("Declared %s as %s-scoped", entity_type.__name__, mode.value)
        return declaration

    def is_scoped(self, entity_type: type) -> bool:
        """Check whether entity type (or a mapped base of it) is declared."""
        return self.declaration_for(entity_type) is not None

    def declaration_for(self, entity_type: type) -> ScopedEntityDeclaration | None:
        """Find the declaration governing entity type, walking its bases."""
        for klass in entity_type.__mro__:
            declaration = self._declarations.get(klass)
            if declaration is not None:
                return declaration
        return None

    @property
    def declarations(self) -> list[ScopedEntityDeclaration]:
        """All recorded declarations."""
        return list(self._declarations.values())

    def configure(self) -> None:
        """Validate every declaration; call once mappers are complete.

        Raises:
            ConfigurationError: If a delegate association cannot be resolved
        """
        for declaration in self._declarations.values():
            if declaration.mode is ScopeMode.DELEGATE:
                self._delegate_join(declaration)

    def _delegate_join(self, declaration: ScopedEntityDeclaration) -> DelegateJoin:
        cached = self._delegate_joins.get(declaration.entity_type)
        if cached is not None:
            return cached

        entity_type = declaration.entity_type
        mapper = _mapper_of(entity_type)
        name = declaration.delegate_association
        if name not in mapper.relationships:
            raise ConfigurationError(f"{entity_type.__name__} has no relationship {name!r}")
        relationship = mapper.relationships[name]
        delegate_type = relationship.mapper.class_

        delegate_declaration = self._declarations.get(delegate_type)
        if delegate_declaration is None or delegate_declaration.mode is not ScopeMode.DIRECT:
            raise ConfigurationError(
                f"{entity_type.__name__}.{name} points at {delegate_type.__name__}, "
                "which must itself be declared DIRECT"
            )

        delegate_mapper = relationship.mapper
        if declaration.delegate_foreign_key:
            if not delegate_mapper.has_property(declaration.delegate_foreign_key):
                raise ConfigurationError(
                    f"{delegate_type.__name__} has no attribute "
                    f"{declaration.delegate_foreign_key!r}"
                )
            delegate_key = declaration.delegate_foreign_key
            entity_key = _single_key(mapper, mapper.primary_key, "primary key")
        else:
            delegate_key = _single_key(
                delegate_mapper, relationship.remote_side, f"{name} foreign key"
            )
            entity_key = _single_key(mapper, relationship.local_columns, f"{name} local key")

        join = DelegateJoin(
            delegate_type=delegate_type,
            entity_key=entity_key,
            delegate_key=delegate_key,
            tenant_key=delegate_declaration.foreign_key,  # type: ignore[arg-type]
        )
        self._delegate_joins[entity_type] = join
        return join

    def apply_scope(self, entity_type: type, statement: StatementT) -> StatementT:
        """Restrict statement to rows of the bound tenant.

        With no tenant bound the statement is returned unchanged; that is
        the global mode used by console tasks and global subdomains.

        Args:
            entity_type: Declared entity type the statement targets
            statement: Select, Update or Delete statement

        Returns:
            Scoped statement
        """
        declaration = self.declaration_for(entity_type)
        if declaration is None or self._context.current() is None:
            return statement

        tenant_id = self._context.current_id()

        if declaration.mode is ScopeMode.DIRECT:
            column = getattr(entity_type, declaration.foreign_key)  # type: ignore[arg-type]
            return statement.where(column == tenant_id)

        join = self._delegate_join(declaration)
        entity_key = getattr(entity_type, join.entity_key)

        if isinstance(statement, Select):
            # Inner join on the delegate; loaded rows stay writable.
            delegate = aliased(join.delegate_type)
            return statement.join_from(
                entity_type,
                delegate,
                and_(
                    getattr(delegate, join.delegate_key) == entity_key,
                    getattr(delegate, join.tenant_key) == tenant_id,
                ),
            )

        owned = select(getattr(join.delegate_type, join.delegate_key)).where(
            getattr(join.delegate_type, join.tenant_key) == tenant_id
        )
        return statement.where(entity_key.in_(owned))

    def select(self, entity_type: type) -> Select[Any]:
        """Build a select for entity type with the current scope applied."""
        return self.apply_scope(entity_type, select(entity_type))

    def before_create(self, instance: Any) -> None:
        """Assign the bound tenant to a new DIRECT entity.

        Raises:
            TenantMissingError: If no tenant is bound
        """
        declaration = self.declaration_for(type(instance))
        if declaration is None or declaration.mode is not ScopeMode.DIRECT:
            return

        if self._context.current() is None:
            logger.warning(
                "Refusing to create %s without a tenant", type(instance).__name__
            )
            raise TenantMissingError(declaration.tenant_field)

        setattr(instance, declaration.foreign_key, self._context.current_id())  # type: ignore[arg-type]

    def is_enforced(self, entity: Any) -> bool:
        """Check whether lookups of entity are currently tenant-filtered."""
        if self._context.current() is None:
            return False
        mapper = inspect(entity, raiseerr=False)
        entity_type = getattr(mapper, "class_", entity)
        return isinstance(entity_type, type) and self.is_scoped(entity_type)

    def loader_criteria(self) -> list[LoaderCriteriaOption]:
        """Global criteria restricting every declared entity to the bound tenant.

        Applied as statement options, the criteria reach each occurrence of
        an entity: ``select_from``, joins, aliases, subqueries and
        relationship loads. Empty when no tenant is bound.
        """
        if self._context.current() is None:
            return []

        tenant_id = self._context.current_id()
        options = []
        for declaration in self._declarations.values():
            entity_type = declaration.entity_type
            if declaration.mode is ScopeMode.DIRECT:
                criteria = getattr(entity_type, declaration.foreign_key) == tenant_id  # type: ignore[arg-type]
            else:
                join = self._delegate_join(declaration)
                owned = select(getattr(join.delegate_type, join.delegate_key)).where(
                    getattr(join.delegate_type, join.tenant_key) == tenant_id
                )
                criteria = getattr(entity_type, join.entity_key).in_(owned)
            options.append(with_loader_criteria(entity_type, criteria, include_aliases=True))
        return options

    def install(self, target: Any) -> None:
        """Hook scoping into a Session class, sessionmaker, or session.

        For a sessionmaker or session the engine is also recorded in the
        session ``info`` so ``TenantSession.get`` can consult it.

        Args:
            target: Event target accepted by SQLAlchemy session events
        """
        if not event.contains(target, "do_orm_execute", self._on_do_orm_execute):
            event.listen(target, "do_orm_execute", self._on_do_orm_execute)
        if not event.contains(target, "before_flush", self._on_before_flush):
            event.listen(target, "before_flush", self._on_before_flush)

        info = _session_info(target)
        if info is not None:
            info[SCOPE_ENGINE_INFO_KEY] = self

    def uninstall(self, target: Any) -> None:
        """Remove hooks added by ``install``."""
        if event.contains(target, "do_orm_execute", self._on_do_orm_execute):
            event.remove(target, "do_orm_execute", self._on_do_orm_execute)
        if event.contains(target, "before_flush", self._on_before_flush):
            event.remove(target, "before_flush", self._on_before_flush)

        info = _session_info(target)
        if info is not None and info.get(SCOPE_ENGINE_INFO_KEY) is self:
            del info[SCOPE_ENGINE_INFO_KEY]

    @staticmethod
    def unscoped_options() -> dict[str, bool]:
        """Execution options that bypass the scoping hook for one statement."""
        return {SKIP_TENANT_SCOPE: True}

    def _on_do_orm_execute(self, state: ORMExecuteState) -> None:
        if state.is_column_load or state.execution_options.get(SKIP_TENANT_SCOPE, False):
            return
        statement = state.statement
        if not isinstance(statement, (Select, Update, Delete)):
            return
        if self._context.current() is None:
            return

        if isinstance(statement, Select):
            statement = statement.options(*self.loader_criteria())
            # Top-level DELEGATE entities also get the inner join.
            for mapper in state.all_mappers:
                declaration = self.declaration_for(mapper.class_)
                if declaration is not None and declaration.mode is ScopeMode.DELEGATE:
                    statement = self.apply_scope(mapper.class_, statement)
        else:
            for mapper in state.all_mappers:
                if self.is_scoped(mapper.class_):
                    statement = self.apply_scope(mapper.class_, statement)
        state.statement = statement

    def _on_before_flush(
        self, session: Session, flush_context: UOWTransaction, instances: Any
    ) -> None:
        for instance in list(session.new):
            self.before_create(instance)


def _session_info(target: Any) -> dict[str, Any] | None:
    if isinstance(target, sessionmaker):
        return target.kw.setdefault("info", {})  # type: ignore[no-any-return]
    if isinstance(target, Session):
        return target.info
    return None


class TenantSession(Session):
    """Session whose primary key lookups honour tenant scoping.

    ``Session.get`` normally answers from the identity map without emitting
    SQL, which would hand back a row loaded earlier under another tenant or
    in global mode. While a tenant is bound and the entity is scoped, the
    lookup is always reloaded through the scoped query.
    """

    def get(self, entity: Any, ident: Any, **kw: Any) -> Any:
        scope = self.info.get(SCOPE_ENGINE_INFO_KEY)
        if scope is not None and scope.is_enforced(entity):
            kw["populate_existing"] = True
        return super().get(entity, ident, **kw)
