"""Tenant gatekeeper middleware.

Every HTTP or websocket request is resolved to a tenant before the
application sees it:

1. The identifier comes from the configured header, or else from the first
   label of the ``Host`` header (``secksi.example.com`` -> ``secksi``).
2. Identifiers in the global allow-list run with no tenant bound, with
   access to every tenant's data (e.g. a login portal).
3. Otherwise the identifier is looked up in the tenant registry. A hit is
   bound for the request and unbound afterwards on every exit path; a miss
   is rejected with the configured not-found response and the application
   is never called.
"""

import html
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from starlette import status
from starlette.concurrency import run_in_threadpool
from starlette.requests import HTTPConnection
from starlette.responses import HTMLResponse
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from restricted_subdomain.config import DEFAULT_NOT_FOUND_BODY, Settings
from restricted_subdomain.context import TenantContext
from restricted_subdomain.db.registry import TenantModelRef, TenantRegistry
from restricted_subdomain.errors import ConfigurationError, TenantContextLeak
from restricted_subdomain.utils.logging import StructuredTenantLogger
from restricted_subdomain.utils.metrics import PrometheusTenantMetrics

logger = logging.getLogger(__name__)

_DISALLOWED = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_identifier(value: str) -> str:
    """Strip everything but letters, digits, hyphen and underscore."""
    return _DISALLOWED.sub("", value)


def identifier_from_host(host: str) -> str:
    """Return the first dot-delimited label of a host, port removed.

    Subdomains therefore can never contain a period.
    """
    hostname = host.split(":", 1)[0]
    return hostname.split(".", 1)[0]


class ResolutionOutcome(str, Enum):
    """Result of resolving a request identifier."""

    GLOBAL = "global"
    BOUND = "bound"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Resolution:
    """Outcome of one request's resolution."""

    outcome: ResolutionOutcome
    identifier: str
    tenant: Any | None = None


@dataclass(frozen=True)
class GatekeeperConfig:
    """Gatekeeper configuration.

    ``not_found_body`` may contain ``{identifier}``, replaced by the
    HTML-escaped rejected identifier.
    """

    tenant_model: TenantModelRef = "restricted_subdomain.db.models:Agency"
    lookup_column: str = "code"
    header_name: str | None = None
    global_identifiers: tuple[str, ...] = ()
    not_found_status: int = status.HTTP_400_BAD_REQUEST
    not_found_body: str = DEFAULT_NOT_FOUND_BODY

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatekeeperConfig":
        """Build configuration from application settings."""
        return cls(
            tenant_model=settings.tenant_model,
            lookup_column=settings.tenant_lookup_column,
            header_name=settings.tenant_header,
            global_identifiers=tuple(settings.global_identifiers),
            not_found_status=settings.not_found_status,
            not_found_body=settings.not_found_body,
        )

    def not_found_response(self, identifier: str) -> HTMLResponse:
        """Render the rejection response for identifier."""
        body = self.not_found_body.replace("{identifier}", html.escape(identifier))
        return HTMLResponse(body, status_code=self.not_found_status)


class TenantGatekeeper:
    """ASGI middleware binding the request's tenant around the application."""

    def __init__(
        self,
        app: ASGIApp,
        context: TenantContext,
        config: GatekeeperConfig | None = None,
    ) -> None:
        """Initialize gatekeeper.

        Args:
            app: Downstream ASGI application
            context: Tenant context bound for each request
            config: Resolution configuration (defaults apply when omitted)

        Raises:
            ConfigurationError: If the context has no registry
        """
        if context.registry is None:
            raise ConfigurationError("TenantGatekeeper needs a TenantContext with a registry")
        self.app = app
        self.context = context
        self.config = config or GatekeeperConfig()
        self._registry: TenantRegistry = context.registry
        self._logger = StructuredTenantLogger()
        self._metrics = PrometheusTenantMetrics()

    def extract_identifier(self, conn: HTTPConnection) -> str:
        """Derive the tenant identifier from a request.

        Args:
            conn: Incoming request or websocket connection

        Returns:
            Sanitized identifier, possibly empty
        """
        raw = None
        if self.config.header_name:
            raw = conn.headers.get(self.config.header_name)
        if raw is None:
            raw = identifier_from_host(conn.headers.get("host", ""))
        return sanitize_identifier(raw)

    async def resolve(self, identifier: str) -> Resolution:
        """Resolve identifier to an outcome.

        Args:
            identifier: Sanitized identifier

        Returns:
            GLOBAL for allow-listed identifiers, BOUND with the tenant on a
            registry hit, REJECTED on a miss or blank identifier
        """
        if identifier in self.config.global_identifiers:
            return Resolution(ResolutionOutcome.GLOBAL, identifier)

        if not identifier.strip():
            return Resolution(ResolutionOutcome.REJECTED, identifier)

        tenant = await run_in_threadpool(self._registry.find_by_key, identifier)
        if tenant is None:
            return Resolution(ResolutionOutcome.REJECTED, identifier)
        return Resolution(ResolutionOutcome.BOUND, identifier, tenant)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        conn = HTTPConnection(scope)
        started = time.perf_counter()
        identifier = self.extract_identifier(conn)
        resolution = await self.resolve(identifier)
        latency_ms = (time.perf_counter() - started) * 1000

        tenant_id = None
        if resolution.tenant is not None:
            tenant_id = self._registry.id_of(resolution.tenant)
        self._logger.log_resolution(
            identifier, resolution.outcome.value, latency_ms, tenant_id, scope.get("path")
        )
        self._metrics.record_resolution(resolution.outcome.value, latency_ms)

        if resolution.outcome is ResolutionOutcome.REJECTED:
            if scope["type"] == "websocket":
                await WebSocketClose(code=status.WS_1008_POLICY_VIOLATION)(scope, receive, send)
            else:
                await self.config.not_found_response(identifier)(scope, receive, send)
            return

        scope.setdefault("state", {})["tenant_resolution"] = resolution

        self.context.bind(resolution.tenant)
        try:
            await self.app(scope, receive, send)
        finally:
            self._unbind()

    def _unbind(self) -> None:
        try:
            self.context.clear()
        except Exception as e:
            logger.critical("Failed to clear tenant context; aborting to avoid a leak", exc_info=True)
            raise TenantContextLeak("tenant context could not be cleared") from e
