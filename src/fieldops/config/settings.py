from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="FIELDOPS_",
        env_file=".env",
        extra="ignore",
    )

    # Runtime
    ENVIRONMENT: str = Field(default="dev", description="dev|test|prod")
    HOST: str = Field(default="0.0.0.0", description="Bind host")
    PORT: int = Field(default=7920, description="Bind port")
    LOG_LEVEL: str = Field(default="INFO", description="Root log level")

    # Actor headers (dev only: trust identity forwarded by an upstream gateway)
    TRUST_ACTOR_HEADERS: bool = Field(
        default=False,
        description="Read the actor from request headers instead of the auth layer",
    )
    ACTOR_ID_HEADER: str = Field(default="x-actor-id", description="Actor id header name")
    ACTOR_ROLE_HEADER: str = Field(default="x-actor-role", description="Actor role header name")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///fieldops_dev.db")

    # Role hierarchy
    # database: load active roles from the roles table at startup
    # fallback: use the built-in constant table (bootstrap / tests)
    ROLE_SOURCE: str = Field(default="database", description="database|fallback")
    ROLE_LOAD_TIMEOUT_SECONDS: float = Field(
        default=5.0,
        description="Upper bound for the startup role load before falling back",
    )
    ROLE_FALLBACK_ON_ERROR: bool = Field(
        default=True,
        description="Use the constant role table when the datastore is slow or unreachable",
    )

    # Entity metadata
    METADATA_PATH: str = Field(
        default="",
        description="Optional directory of extra entity YAML files merged over the built-ins",
    )
    STRICT_RLS_COVERAGE: bool = Field(
        default=True,
        description="Require an explicit RLS policy for every permitted (role, resource) pair",
    )

    # Query
    DEFAULT_PAGE_SIZE: int = Field(default=50, description="Default list page size")
    MAX_PAGE_SIZE: int = Field(default=200, description="Hard cap on list page size")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
