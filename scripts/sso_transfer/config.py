"""Configuration via environment variables with secret reference support.

Supports:
  - Environment variables and .env files (local runs)
  - AWS Secrets Manager / GCP Secret Manager references for passwords and keys
  - file:// references for the .p8 signing key downloaded from the provider
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from scripts.sso_transfer.secrets import resolve_database_url, resolve_secret

TOKEN_URL = "https://appleid.apple.com/auth/token"
MIGRATION_URL = "https://appleid.apple.com/auth/usermigrationinfo"
ASSERTION_AUDIENCE = "https://appleid.apple.com"


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    min_connections: int = 1
    max_connections: int = 10


@dataclass(frozen=True)
class TransferApiConfig:
    client_id: str
    team_id: str
    key_id: str
    private_key_pem: str = field(repr=False)
    # team receiving the users
    target_team_id: str = ""
    token_url: str = TOKEN_URL
    migration_url: str = MIGRATION_URL
    audience: str = ASSERTION_AUDIENCE
    scope: str = "user.migration"
    assertion_ttl_seconds: int = 3600
    retry_count: int = 3
    retry_backoff_seconds: float = 1.0
    request_timeout: float = 30.0


@dataclass(frozen=True)
class MigrationConfig:
    read_database: DatabaseConfig
    write_database: DatabaseConfig
    transfer: Optional[TransferApiConfig] = None
    page_size: int = 50
    stage_workers: int = 10
    # legacy_auth.user_providers.provider_id for the Sign-In provider
    provider_id: int = 4
    # users_services.service_id for email aliases
    alias_service_id: int = 2
    legacy_schema: str = "legacy_auth"


def _required(name: str) -> str:
    value = os.environ.get(name, "")
    if not value:
        raise ValueError(f"{name} environment variable is required")
    return value


def load_transfer_config() -> Optional[TransferApiConfig]:
    """Transfer API settings, or None when SSO_CLIENT_ID is not set.

    Seed-table runs (--skip-provision) never talk to the provider, so the
    API credentials are only mandatory once a client id is configured.
    """
    load_dotenv()

    client_id = os.environ.get("SSO_CLIENT_ID", "")
    if not client_id:
        return None

    return TransferApiConfig(
        client_id=client_id,
        team_id=_required("SSO_TEAM_ID"),
        key_id=_required("SSO_KEY_ID"),
        private_key_pem=resolve_secret(_required("SSO_PRIVATE_KEY_PEM")),
        target_team_id=_required("SSO_TARGET_TEAM_ID"),
        retry_count=int(os.environ.get("SSO_RETRY_COUNT", "3")),
        retry_backoff_seconds=float(os.environ.get("SSO_RETRY_BACKOFF_SECONDS", "1.0")),
        request_timeout=float(os.environ.get("SSO_REQUEST_TIMEOUT", "30")),
    )


def load_config() -> MigrationConfig:
    """Load configuration from environment variables."""
    load_dotenv()

    min_conn = int(os.environ.get("DB_MIN_CONNECTIONS", "1"))
    max_conn = int(os.environ.get("DB_MAX_CONNECTIONS", "10"))

    page_size = int(os.environ.get("MIGRATION_PAGE_SIZE", "50"))
    if page_size < 1:
        raise ValueError("MIGRATION_PAGE_SIZE must be at least 1")

    return MigrationConfig(
        read_database=DatabaseConfig(
            url=resolve_database_url("read"),
            min_connections=min_conn,
            max_connections=max_conn,
        ),
        write_database=DatabaseConfig(
            url=resolve_database_url("write"),
            min_connections=min_conn,
            max_connections=max_conn,
        ),
        transfer=load_transfer_config(),
        page_size=page_size,
        stage_workers=int(os.environ.get("MIGRATION_STAGE_WORKERS", "10")),
        provider_id=int(os.environ.get("MIGRATION_PROVIDER_ID", "4")),
        alias_service_id=int(os.environ.get("MIGRATION_ALIAS_SERVICE_ID", "2")),
        legacy_schema=os.environ.get("MIGRATION_LEGACY_SCHEMA", "legacy_auth"),
    )
