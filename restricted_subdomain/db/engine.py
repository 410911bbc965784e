"""Database engine and session factory."""

from collections.abc import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from restricted_subdomain.config import Settings
from restricted_subdomain.db.scoping import TenantSession
from restricted_subdomain.errors import ConfigurationError


def create_engine_from_settings(settings: Settings) -> Engine:
    """Create SQLAlchemy engine from settings.

    In-memory sqlite URLs share one connection so that every session sees
    the same database.

    Raises:
        ConfigurationError: If DATABASE_URL is unset or empty.
    """
    database_url = settings.database_url

    if not database_url:
        raise ConfigurationError(
            "DATABASE_URL must be set to a valid connection string. "
            "Please configure the database_url setting."
        )

    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_engine(database_url, pool_pre_ping=True, echo=False)


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create sessionmaker for creating database sessions.

    Instances stay readable after their session closes, which the tenant
    registry relies on when it hands a looked-up tenant to the context.

    Args:
        engine: SQLAlchemy engine

    Returns:
        Sessionmaker bound to the engine
    """
    return sessionmaker(bind=engine, class_=TenantSession, expire_on_commit=False)


def session_scope(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a session and close it afterwards.

    Args:
        session_factory: Factory the session is drawn from

    Yields:
        Session instance
    """
    with session_factory() as session:
        yield session
