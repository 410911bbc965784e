"""Shared pytest fixtures for all test suites."""

from collections.abc import Generator

import pytest
from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from restricted_subdomain.context import TenantContext
from restricted_subdomain.db.engine import create_session_factory
from restricted_subdomain.db.models import Agency, Base
from restricted_subdomain.db.registry import TenantRegistry
from restricted_subdomain.db.scoping import ScopeEngine, ScopeMode
from tests.models import Credential, Member, Thing


def declare_test_models(scope: ScopeEngine) -> None:
    """Declare the test suite's restricted models."""
    scope.declare(Thing, ScopeMode.DIRECT, foreign_key="agency_id")
    scope.declare(Credential, ScopeMode.DIRECT, foreign_key="agency_id")
    scope.declare(Member, ScopeMode.DELEGATE, delegate_association="credentials")


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    """In-memory sqlite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to the test engine."""
    return create_session_factory(engine)


@pytest.fixture
def registry(session_factory: sessionmaker[Session]) -> TenantRegistry:
    """Agency registry looked up by code."""
    return TenantRegistry(session_factory, Agency, "code")


@pytest.fixture
def context(registry: TenantRegistry) -> TenantContext:
    """Tenant context backed by the agency registry."""
    return TenantContext(registry)


@pytest.fixture
def scope(context: TenantContext, session_factory: sessionmaker[Session]) -> ScopeEngine:
    """Scope engine with the test models declared and installed."""
    scope = ScopeEngine(context)
    declare_test_models(scope)
    scope.configure()
    scope.install(session_factory)
    return scope


@pytest.fixture
def agencies(session_factory: sessionmaker[Session]) -> dict[str, Agency]:
    """Three agencies: agency_1, agency_2, agency_3."""
    with session_factory() as session:
        created = {code: Agency(code=code) for code in ("agency_1", "agency_2", "agency_3")}
        session.add_all(created.values())
        session.commit()
    return created


@pytest.fixture
def things(
    scope: ScopeEngine,
    context: TenantContext,
    session_factory: sessionmaker[Session],
    agencies: dict[str, Agency],
) -> None:
    """agency_1 owns 1 thing, agency_2 owns 2, agency_3 owns 3."""
    for count, code in enumerate(("agency_1", "agency_2", "agency_3"), start=1):
        with context.scoped(code), session_factory() as session:
            session.add_all(Thing(name=f"{code}-{i}") for i in range(count))
            session.commit()


@pytest.fixture
def members(
    scope: ScopeEngine,
    context: TenantContext,
    session_factory: sessionmaker[Session],
    agencies: dict[str, Agency],
) -> dict[str, Member]:
    """alice belongs to agency_1 and agency_2, bob to agency_2, carol to agency_3."""
    with session_factory() as session:
        created = {
            name: Member(email=f"{name}@example.com") for name in ("alice", "bob", "carol")
        }
        session.add_all(created.values())
        session.commit()

    memberships = [
        ("agency_1", "alice"),
        ("agency_2", "alice"),
        ("agency_2", "bob"),
        ("agency_3", "carol"),
    ]
    for code, name in memberships:
        with context.scoped(code), session_factory() as session:
            session.add(Credential(member_id=created[name].id))
            session.commit()

    return created
