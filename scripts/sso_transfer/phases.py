"""Migration phases.

The migration runs in two logical phases:

1. Provision: page provider links, resolve each to a user, exchange the
   provider identifier for a transfer_sub, persist it to transfer_migration.
2. Output: build a CSV row for each seed and append it to the output file.

Phase 2 can be driven straight from transfer_migration (``seed_generator``)
so CSV generation can be repeated without provisioning again.

Generators page through an id range and submit records to the pipeline.
The other phases are pipeline stage handlers: they return the record for the
next stage, or None to drop it. Dropped records are logged with their ids so
they can be looked up and rerun.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import psycopg2

from scripts.sso_transfer.csv_output import CsvOutputWriter
from scripts.sso_transfer.models import (
    IdentityLinkRecord,
    MigrationOutputRow,
    MigrationSeed,
)
from scripts.sso_transfer.store import RecordStore
from scripts.sso_transfer.transfer_client import TransferClient, TransferProtocolError

logger = logging.getLogger("sso_transfer.phases")

Submit = Callable[[object], Awaitable[None]]


class ProgressTracker:
    """Terminal sink: counts records that made it through the pipeline."""

    def __init__(self, label: str, every: int) -> None:
        self.label = label
        self.every = max(every, 1)
        self.count = 0

    def __call__(self, _item: object) -> None:
        self.count += 1
        if self.count % self.every == 0:
            logger.info(
                "completed writing %s %d", self.label, self.count,
                extra={"records": self.count},
            )


class MigrationPhases:
    def __init__(
        self,
        store: RecordStore,
        page_size: int,
        client: Optional[TransferClient] = None,
        writer: Optional[CsvOutputWriter] = None,
    ) -> None:
        self.store = store
        self.page_size = page_size
        self.client = client
        self.writer = writer
        self.generated = 0
        self.unresolved = 0

    # ------------------------------------------------------------------
    # Generators
    # ------------------------------------------------------------------

    async def link_generator(self, start_id: int, end_id: int, submit: Submit) -> int:
        """Page user_providers.id over [start_id, end_id] and submit resolved links.

        Ids are user_providers.id, **not** user ids. Each page covers a fixed
        window of ``page_size`` ids, so gaps in the id space never make a page
        overlap the next one. Returns the number of links submitted.
        """
        batch = 1
        cursor = start_id
        while cursor <= end_id:
            window_end = min(end_id, cursor + self.page_size - 1)
            logger.info(
                "begin processing batch %d starting with id %d", batch, cursor,
                extra={"batch": batch},
            )
            links = await self.store.page_link_records(cursor, window_end)
            if not links:
                logger.info("batch %d is empty", batch, extra={"batch": batch})

            resolved = await asyncio.gather(*(self._resolve(link) for link in links))

            for link in resolved:
                if link is not None:
                    await submit(link)
                    self.generated += 1

            cursor += self.page_size
            batch += 1
        return self.generated

    async def _resolve(self, link: IdentityLinkRecord) -> Optional[IdentityLinkRecord]:
        try:
            user_id = await self.store.resolve_user_id(link.legacy_user_ref)
        except psycopg2.Error as exc:
            self.unresolved += 1
            logger.error(
                "Database error resolving legacy user %s: %s",
                link.legacy_user_ref, exc,
                extra={"stage": "generate", **link.log_context()},
            )
            return None

        if user_id is None:
            # users deleted without their legacy auth rows
            self.unresolved += 1
            logger.info(
                "No application user for legacy user %s, skipping",
                link.legacy_user_ref,
                extra={"stage": "generate", **link.log_context()},
            )
            return None
        return link.with_user_id(user_id)

    async def seed_generator(self, start_user_id: int, end_user_id: int, submit: Submit) -> int:
        """Page un-migrated transfer_migration rows by user_id and submit them."""
        batch = 1
        cursor = start_user_id
        while cursor <= end_user_id:
            window_end = min(end_user_id, cursor + self.page_size - 1)
            logger.info(
                "begin processing batch %d starting with id %d", batch, cursor,
                extra={"batch": batch},
            )
            seeds = await self.store.page_migration_seeds(cursor, window_end)
            if not seeds:
                logger.info("batch %d is empty", batch, extra={"batch": batch})

            for seed in seeds:
                await submit(seed)
                self.generated += 1

            cursor += self.page_size
            batch += 1
        return self.generated

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def provision(self, link: IdentityLinkRecord) -> Optional[MigrationSeed]:
        """Exchange the provider identifier for a transfer_sub."""
        context = {"stage": "provision", **link.log_context()}
        try:
            transfer_token = await self.client.exchange(
                link.provider_user_ref, log_context=context
            )
        except TransferProtocolError as exc:
            logger.error("Dropping user: %s", exc, extra=context)
            return None

        if not transfer_token:
            return None
        return MigrationSeed(user_id=link.user_id, transfer_token=transfer_token)

    async def persist(self, seed: MigrationSeed) -> Optional[MigrationSeed]:
        """Upsert the seed; a failed write leaves the user for a later run."""
        try:
            await self.store.upsert_seed(seed.user_id, seed.transfer_token)
        except psycopg2.Error as exc:
            logger.error(
                "Database error persisting transfer_sub: %s", exc,
                extra={"stage": "persist", "user_id": seed.user_id},
            )
            return None
        return seed

    async def aggregate(self, seed: MigrationSeed) -> Optional[MigrationOutputRow]:
        """Join the user's email, target account and (if linked) alias emails."""
        try:
            profile = await self.store.fetch_profile(seed.user_id)
            if profile is None:
                logger.warning(
                    "No users row for seeded user, skipping",
                    extra={"stage": "aggregate", "user_id": seed.user_id},
                )
                return None

            alternate_emails: list[str] = []
            if profile.target_user_id:
                # only users with a target-system account need their aliases
                alternate_emails = await self.store.fetch_alternate_emails(seed.user_id)
        except psycopg2.Error as exc:
            logger.error(
                "Database error building output row: %s", exc,
                extra={"stage": "aggregate", "user_id": seed.user_id},
            )
            return None

        return MigrationOutputRow(
            transfer_token=seed.transfer_token,
            target_user_id=profile.target_user_id or "",
            email=profile.email,
            alternate_emails=tuple(alternate_emails),
        )

    async def emit(self, row: MigrationOutputRow) -> MigrationOutputRow:
        self.writer.write_row(row)
        return row
