"""Structured logging for tenant resolution."""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class StructuredTenantLogger:
    """Structured logger for gatekeeper resolutions."""

    def log_resolution(
        self,
        identifier: str,
        outcome: str,
        latency_ms: float,
        tenant_id: Any | None = None,
        path: str | None = None,
    ) -> None:
        """Log one request's tenant resolution with structured data."""
        log_data: dict[str, Any] = {
            "identifier": identifier,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if tenant_id is not None:
            log_data["tenant_id"] = tenant_id
        if path is not None:
            log_data["path"] = path

        log_msg = f"Tenant resolution: {identifier!r} - {outcome}"

        if outcome in ("bound", "global"):
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})
