"""Shared fixtures: throwaway signing keys, configs and in-memory fakes."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from scripts.sso_transfer.config import DatabaseConfig, MigrationConfig, TransferApiConfig
from tests.fakes import FakeStore, FakeTransferClient


@pytest.fixture(scope="session")
def ec_private_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def ec_private_key_pem(ec_private_key) -> str:
    return ec_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def transfer_config(ec_private_key_pem) -> TransferApiConfig:
    return TransferApiConfig(
        client_id="com.example.sso",
        team_id="TEAM123456",
        key_id="KEY1234567",
        private_key_pem=ec_private_key_pem,
        target_team_id="TARGET0001",
        retry_count=3,
        retry_backoff_seconds=0,
    )


@pytest.fixture
def migration_config(transfer_config) -> MigrationConfig:
    return MigrationConfig(
        read_database=DatabaseConfig(url="postgresql://reader@localhost/accounts"),
        write_database=DatabaseConfig(url="postgresql://writer@localhost/accounts"),
        transfer=transfer_config,
        page_size=2,
        stage_workers=2,
    )


@pytest.fixture
def mock_pool():
    """Replace psycopg2's pool; yields (pool, connection, cursor) mocks."""
    with patch("psycopg2.pool.ThreadedConnectionPool") as pool_cls:
        pool = pool_cls.return_value
        conn = MagicMock()
        cur = MagicMock()
        pool.getconn.return_value = conn
        conn.cursor.return_value.__enter__.return_value = cur
        yield pool, conn, cur


@pytest.fixture
def fake_store() -> FakeStore:
    return FakeStore(page_size=2)


@pytest.fixture
def fake_client() -> FakeTransferClient:
    return FakeTransferClient()
