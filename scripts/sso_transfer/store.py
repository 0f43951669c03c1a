"""Record store: the queries the migration pipeline runs.

There is some very unintuitive column naming in the source tables. Read the
comments carefully before changing any of these queries:

  - ``legacy_auth.user_providers.id`` drives link iteration; it is not a user id.
  - ``legacy_auth.user_providers.user_id`` points at ``legacy_auth.users.id``,
    which is **not** ``users.user_id``. The bridge is
    ``legacy_auth.users.external_key = users.auth_user_id``.
  - ``transfer_migration.user_id`` *is* ``users.user_id``.

Every query is blocking psycopg2 code run via ``asyncio.to_thread``. A
semaphore sized to the pool keeps a page-wide scatter from exhausting the
connection pool.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional, TypeVar

from scripts.sso_transfer.db import Database
from scripts.sso_transfer.models import IdentityLinkRecord, MigrationSeed, UserProfile

logger = logging.getLogger("sso_transfer.store")

T = TypeVar("T")

SEED_TABLE = "transfer_migration"


class RecordStore:
    """Async façade over the read and write databases."""

    def __init__(
        self,
        read_db: Database,
        write_db: Database,
        page_size: int,
        provider_id: int = 4,
        alias_service_id: int = 2,
        legacy_schema: str = "legacy_auth",
    ) -> None:
        self.read_db = read_db
        self.write_db = write_db
        self.page_size = page_size
        self.provider_id = provider_id
        self.alias_service_id = alias_service_id
        self.legacy_schema = legacy_schema
        self._read_slots = asyncio.Semaphore(read_db.max_connections)
        self._write_slots = asyncio.Semaphore(write_db.max_connections)

    async def _read(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._read_slots:
            return await asyncio.to_thread(fn, *args)

    async def _write(self, fn: Callable[..., T], *args: Any) -> T:
        async with self._write_slots:
            return await asyncio.to_thread(fn, *args)

    # ------------------------------------------------------------------
    # Pagination
    # ------------------------------------------------------------------

    async def page_link_records(
        self, start_row_id: int, end_row_id: int
    ) -> list[IdentityLinkRecord]:
        """One page of provider links with ``row_id`` in [start, end], inclusive.

        The inner join drops links whose legacy user row is gone; without it
        there is no way to reach ``users``.
        """
        if start_row_id > end_row_id:
            return []

        auth = self.legacy_schema
        sql = f"""
            SELECT up.id, lu.external_key, up.provider_user_id
            FROM {auth}.user_providers up
            JOIN {auth}.users lu ON lu.id = up.user_id
            WHERE up.id BETWEEN %s AND %s
              AND up.provider_id = %s
            ORDER BY up.id ASC
            LIMIT %s
        """
        rows = await self._read(
            self.read_db.fetch_all,
            sql,
            (start_row_id, end_row_id, self.provider_id, self.page_size),
        )
        return [
            IdentityLinkRecord(
                row_id=row_id,
                legacy_user_ref=str(legacy_ref),
                provider_user_ref=provider_ref,
            )
            for row_id, legacy_ref, provider_ref in rows
        ]

    async def page_migration_seeds(
        self, start_user_id: int, end_user_id: int
    ) -> list[MigrationSeed]:
        """One page of un-migrated seeds with ``user_id`` in [start, end], inclusive."""
        if start_user_id > end_user_id:
            return []

        sql = f"""
            SELECT user_id, transfer_token
            FROM {SEED_TABLE}
            WHERE user_id BETWEEN %s AND %s
              AND migrated = FALSE
            ORDER BY user_id ASC
            LIMIT %s
        """
        rows = await self._read(
            self.read_db.fetch_all,
            sql,
            (start_user_id, end_user_id, self.page_size),
        )
        return [MigrationSeed(user_id=u, transfer_token=t) for u, t in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _upsert_seed_sync(self, user_id: int, transfer_token: str) -> int:
        with self.write_db.transaction() as cur:
            return self.write_db.upsert_batch(
                cur,
                SEED_TABLE,
                ["user_id", "transfer_token", "migrated"],
                [(user_id, transfer_token, False)],
                conflict_columns=["user_id"],
                update_columns=["transfer_token"],
                touch_columns=["updated_at"],
            )

    async def upsert_seed(self, user_id: int, transfer_token: str) -> int:
        """Insert a seed, or replace the token of the existing row for ``user_id``.

        ``migrated`` is left untouched on conflict.
        """
        return await self._write(self._upsert_seed_sync, user_id, transfer_token)

    # ------------------------------------------------------------------
    # Point lookups
    # ------------------------------------------------------------------

    async def resolve_user_id(self, legacy_user_ref: str) -> Optional[int]:
        """Map a legacy auth account to ``users.user_id``.

        None means the application user was deleted without its legacy auth
        data, which happens and is not an error.
        """
        row = await self._read(
            self.read_db.fetch_one,
            "SELECT user_id FROM users WHERE auth_user_id = %s LIMIT 1",
            (legacy_user_ref,),
        )
        return row[0] if row else None

    async def fetch_profile(self, user_id: int) -> Optional[UserProfile]:
        """Primary email plus the target-system account id, if one is linked."""
        # left join: the user row is required, the target account is not
        row = await self._read(
            self.read_db.fetch_one,
            """
            SELECT u.email, ta.target_uid
            FROM users u
            LEFT OUTER JOIN user_target_accounts ta ON ta.user_id = u.user_id
            WHERE u.user_id = %s
            LIMIT 1
            """,
            (user_id,),
        )
        if row is None:
            return None
        email, target_uid = row
        return UserProfile(email=email or "", target_user_id=target_uid or None)

    async def fetch_alternate_emails(self, user_id: int) -> list[str]:
        """Confirmed email aliases for a user.

        The (user_id, service_id, username) key is the only index on
        users_services, so this is the expensive query of the whole run. Only
        call it for users that have a target-system account.
        """
        rows = await self._read(
            self.read_db.fetch_all,
            """
            SELECT username
            FROM users_services
            WHERE user_id = %s
              AND service_id = %s
              AND confirmed = 1
            """,
            (user_id, self.alias_service_id),
        )
        return [username for (username,) in rows if username]
