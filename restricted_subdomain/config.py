"""Typed settings configuration - single source of truth."""

import json
from functools import lru_cache
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_NOT_FOUND_BODY = (
    "<h1>400 Subdomain Not Found</h1><p><em>{identifier}</em> is not a valid subdomain; "
    "are you sure you spelled it correctly?</p>"
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    database_url: str | None = None

    # Cookie sessions
    session_secret_key: str = ""
    session_cookie: str = "session"

    # Tenant lookup
    tenant_model: str = "restricted_subdomain.db.models:Agency"
    tenant_lookup_column: str = "code"

    # Resolution; GLOBAL_IDENTIFIERS=www,login or a JSON array
    tenant_header: str | None = None
    global_identifiers: Annotated[list[str], NoDecode] = []

    # Rejection response
    not_found_status: int = 400
    not_found_body: str = DEFAULT_NOT_FOUND_BODY

    @field_validator("global_identifiers", mode="before")
    @classmethod
    def split_identifiers(cls, v: Any) -> Any:
        """Accept a comma-separated string or a JSON array."""
        if not isinstance(v, str):
            return v
        if v.strip().startswith("["):
            return json.loads(v)
        return [item.strip() for item in v.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
