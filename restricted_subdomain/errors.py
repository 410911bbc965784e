"""Error taxonomy for tenant resolution, scoping and configuration."""


class TenancyError(Exception):
    """Base class for all tenancy errors."""


class ConfigurationError(TenancyError):
    """Raised at startup or declaration time for a broken scoping setup."""


class ResolutionRejected(TenancyError):
    """Raised when a request identifier does not map to a tenant.

    Terminal for the request: it is rendered as the configured not-found
    response and never retried.
    """

    def __init__(self, identifier: str) -> None:
        self.identifier = identifier
        super().__init__(f"{identifier!r} is not a valid subdomain")


class ValidationError(TenancyError):
    """A record failed tenancy validation before it was written."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field} {message}")

    @property
    def errors(self) -> dict[str, list[str]]:
        """Errors keyed by field name."""
        return {self.field: [self.message]}


class TenantMissingError(ValidationError):
    """A directly scoped record was created while no tenant was bound."""

    def __init__(self, field: str = "tenant") -> None:
        super().__init__(field, "is missing")


class TenantContextLeak(BaseException):
    """Clearing the tenant context failed after a request.

    Derives from BaseException so that no ``except Exception`` handler can
    hide a binding that would otherwise leak into the next request.
    """
