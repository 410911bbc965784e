"""Integration tests for the application with the gatekeeper wired in."""

from typing import Annotated, Any

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from restricted_subdomain.api.dependencies import (
    get_current_identifier,
    get_db,
    get_tenant_session,
    require_no_tenant,
    require_tenant,
)
from restricted_subdomain.config import Settings
from restricted_subdomain.db.models import Agency
from restricted_subdomain.main import create_app
from restricted_subdomain.session import PartitionedSession
from tests.conftest import declare_test_models
from tests.models import Thing

handled: list[str | None] = []


def add_routes(app: FastAPI) -> None:
    """Register routes exercising the tenant dependencies."""

    @app.get("/things")
    def list_things(
        db: Annotated[Session, Depends(get_db)],
        identifier: Annotated[str | None, Depends(get_current_identifier)],
    ) -> dict[str, Any]:
        handled.append(identifier)
        rows = db.scalars(select(Thing)).all()
        return {"identifier": identifier, "count": len(rows)}

    @app.post("/things")
    def create_thing(db: Annotated[Session, Depends(get_db)]) -> dict[str, Any]:
        thing = Thing(name="posted")
        db.add(thing)
        db.commit()
        return {"agency_id": thing.agency_id}

    @app.get("/boom")
    def boom() -> None:
        raise RuntimeError("boom")

    @app.get("/dashboard", dependencies=[Depends(require_tenant)])
    async def dashboard() -> dict[str, str]:
        return {"page": "dashboard"}

    @app.get("/portal", dependencies=[Depends(require_no_tenant)])
    async def portal() -> dict[str, str]:
        return {"page": "portal"}

    @app.put("/session/{key}/{value}")
    async def write_session(
        key: str, value: str, session: Annotated[PartitionedSession, Depends(get_tenant_session)]
    ) -> dict[str, str]:
        session[key] = value
        return {key: value}

    @app.get("/session/{key}")
    async def read_session(
        key: str, session: Annotated[PartitionedSession, Depends(get_tenant_session)]
    ) -> dict[str, str | None]:
        return {key: session.get(key)}

    @app.delete("/session")
    async def reset_session(
        session: Annotated[PartitionedSession, Depends(get_tenant_session)]
    ) -> dict[str, bool]:
        session.reset()
        return {"reset": True}


def make_settings(**overrides: Any) -> Settings:
    """Settings for an in-memory test application."""
    values: dict[str, Any] = {
        "database_url": "sqlite:///:memory:",
        "session_secret_key": "test-secret",
        "global_identifiers": ["acme"],
    }
    values.update(overrides)
    return Settings(**values)


def seed_things(app: FastAPI, session_factory: sessionmaker[Session]) -> None:
    """agency_1 owns 1 thing, agency_2 owns 2, agency_3 owns 3."""
    context = app.state.tenant_context
    for count, code in enumerate(("agency_1", "agency_2", "agency_3"), start=1):
        with context.scoped(code), session_factory() as session:
            session.add_all(Thing(name=f"{code}-{i}") for i in range(count))
            session.commit()


@pytest.fixture
def app(session_factory: sessionmaker[Session], agencies: dict[str, Agency]) -> FastAPI:
    """Application with test routes and six seeded things."""
    app = create_app(make_settings(), session_factory=session_factory, declare=declare_test_models)
    add_routes(app)
    seed_things(app, session_factory)
    handled.clear()
    return app


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    """Create test client."""
    return TestClient(app)


def host(identifier: str) -> dict[str, str]:
    """Headers addressing a subdomain."""
    return {"host": f"{identifier}.example.com"}


class TestResolution:
    """Test request resolution end to end."""

    def test_bound_request_is_scoped(self, client: TestClient) -> None:
        """Test agency_3 only sees its three things."""
        response = client.get("/things", headers=host("agency_3"))

        assert response.status_code == 200
        assert response.json() == {"identifier": "agency_3", "count": 3}

    def test_global_identifier_sees_everything(self, client: TestClient) -> None:
        """Test an allow-listed subdomain runs unbound without an agency row."""
        response = client.get("/things", headers=host("acme"))

        assert response.status_code == 200
        assert response.json() == {"identifier": None, "count": 6}

    def test_unknown_identifier_is_rejected(self, client: TestClient) -> None:
        """Test an unknown subdomain never reaches the handler."""
        response = client.get("/things", headers=host("ghost"))

        assert response.status_code == 400
        assert response.headers["content-type"].startswith("text/html")
        assert "<em>ghost</em> is not a valid subdomain" in response.text
        assert handled == []

    def test_default_test_host_is_rejected(self, client: TestClient) -> None:
        """Test requests without a known subdomain are rejected."""
        response = client.get("/things")

        assert response.status_code == 400
        assert "testserver" in response.text

    def test_context_cleared_after_failure(self, app: FastAPI) -> None:
        """Test a failing handler does not leave the tenant bound."""
        client = TestClient(app, raise_server_exceptions=False)

        assert client.get("/boom", headers=host("agency_1")).status_code == 500
        response = client.get("/things", headers=host("acme"))

        assert response.json() == {"identifier": None, "count": 6}
        assert app.state.tenant_context.current() is None

    def test_header_resolution(
        self, session_factory: sessionmaker[Session], agencies: dict[str, Agency]
    ) -> None:
        """Test a configured header overrides the host."""
        app = create_app(
            make_settings(tenant_header="X-Subdomain"),
            session_factory=session_factory,
            declare=declare_test_models,
        )
        add_routes(app)
        seed_things(app, session_factory)
        client = TestClient(app)

        response = client.get(
            "/things", headers={**host("agency_1"), "X-Subdomain": "agency_2"}
        )

        assert response.json() == {"identifier": "agency_2", "count": 2}

    def test_custom_rejection_response(
        self, session_factory: sessionmaker[Session], agencies: dict[str, Agency]
    ) -> None:
        """Test rejection status and body come from settings."""
        app = create_app(
            make_settings(not_found_status=404, not_found_body="missing: {identifier}"),
            session_factory=session_factory,
        )
        client = TestClient(app)

        response = client.get("/health", headers=host("ghost"))

        assert response.status_code == 404
        assert response.text == "missing: ghost"


class TestDependencies:
    """Test the route-level tenant requirements."""

    def test_require_tenant_allows_bound(self, client: TestClient) -> None:
        """Test tenant-only pages work on a tenant subdomain."""
        assert client.get("/dashboard", headers=host("agency_1")).json() == {"page": "dashboard"}

    def test_require_tenant_rejects_global(self, client: TestClient) -> None:
        """Test tenant-only pages are rejected on a global subdomain."""
        response = client.get("/dashboard", headers=host("acme"))

        assert response.status_code == 400
        assert "acme" in response.text

    def test_require_no_tenant(self, client: TestClient) -> None:
        """Test global-only pages reject tenant subdomains."""
        assert client.get("/portal", headers=host("acme")).json() == {"page": "portal"}
        assert client.get("/portal", headers=host("agency_1")).status_code == 400

    def test_create_stamps_tenant(self, client: TestClient, agencies: dict[str, Agency]) -> None:
        """Test records created on a subdomain belong to it."""
        response = client.post("/things", headers=host("agency_2"))

        assert response.status_code == 200
        assert response.json() == {"agency_id": agencies["agency_2"].id}

    def test_create_without_tenant_is_validation_error(self, client: TestClient) -> None:
        """Test creating a scoped record on a global subdomain is a 422."""
        response = client.post("/things", headers=host("acme"))

        assert response.status_code == 422
        assert response.json() == {"detail": {"agency": ["is missing"]}}


class TestPartitionedSession:
    """Test session partitioning across subdomains sharing one cookie."""

    def test_partitions_are_isolated(self, client: TestClient) -> None:
        """Test two agencies writing the same key keep separate values."""
        client.put("/session/x/1", headers=host("agency_1"))
        client.put("/session/x/2", headers=host("agency_2"))

        assert client.get("/session/x", headers=host("agency_1")).json() == {"x": "1"}
        assert client.get("/session/x", headers=host("agency_2")).json() == {"x": "2"}
        assert client.get("/session/x", headers=host("acme")).json() == {"x": None}

    def test_reset_keeps_other_partitions(self, client: TestClient) -> None:
        """Test resetting one agency's session keeps everything else."""
        client.put("/session/x/1", headers=host("agency_1"))
        client.put("/session/x/2", headers=host("agency_2"))
        client.put("/session/y/3", headers=host("acme"))

        client.delete("/session", headers=host("agency_1"))

        assert client.get("/session/x", headers=host("agency_1")).json() == {"x": None}
        assert client.get("/session/x", headers=host("agency_2")).json() == {"x": "2"}
        assert client.get("/session/y", headers=host("acme")).json() == {"y": "3"}
