"""Builds the pipeline for a run mode and drives it to completion."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from scripts.sso_transfer.client_secret import ClientSecretSigner
from scripts.sso_transfer.config import MigrationConfig
from scripts.sso_transfer.csv_output import CsvOutputWriter
from scripts.sso_transfer.db import Database
from scripts.sso_transfer.phases import MigrationPhases, ProgressTracker
from scripts.sso_transfer.pipeline import Pipeline, Stage, StageStats
from scripts.sso_transfer.store import RecordStore
from scripts.sso_transfer.transfer_client import TransferClient

logger = logging.getLogger("sso_transfer.runner")

DEFAULT_START_ID = 0
# current max user_providers.id is ~602k; leave room for new links
DEFAULT_END_ID = 620000
DEFAULT_OUTPUT = "transfer.csv"


@dataclass(frozen=True)
class RunOptions:
    """What to run.

    ``start``/``end`` are user_providers.id for a full run, or user_id with
    ``skip_provision``.
    """

    start: int = DEFAULT_START_ID
    end: int = DEFAULT_END_ID
    output: str = DEFAULT_OUTPUT
    # drive output from transfer_migration instead of provisioning
    skip_provision: bool = False
    # only populate transfer_migration
    skip_output: bool = False


@dataclass
class RunSummary:
    generated: int = 0
    unresolved: int = 0
    completed: int = 0
    duration_s: float = 0.0
    stages: dict[str, StageStats] = field(default_factory=dict)


class MigrationContext:
    """Long-lived resources for one run, created once and passed down."""

    def __init__(
        self,
        config: MigrationConfig,
        store: RecordStore,
        client: Optional[TransferClient] = None,
        databases: tuple[Database, ...] = (),
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        self._databases = databases

    @classmethod
    def open(cls, config: MigrationConfig, provision: bool = True) -> "MigrationContext":
        """Connect to both databases and, for provisioning runs, prepare the client.

        The signing key is parsed here so bad key material fails the run
        before any page is read.
        """
        client = None
        if provision:
            if config.transfer is None:
                raise ValueError(
                    "SSO_CLIENT_ID and related SSO_* settings are required "
                    "unless provisioning is skipped"
                )
            signer = ClientSecretSigner(config.transfer)
            signer.load_key()
            client = TransferClient(config.transfer, signer)

        read_db = Database(config.read_database, name="read")
        try:
            write_db = Database(config.write_database, name="write")
        except Exception:
            read_db.close()
            raise

        store = RecordStore(
            read_db,
            write_db,
            page_size=config.page_size,
            provider_id=config.provider_id,
            alias_service_id=config.alias_service_id,
            legacy_schema=config.legacy_schema,
        )
        return cls(config, store, client, databases=(read_db, write_db))

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
        for db in self._databases:
            db.close()


async def run_migration(
    context: MigrationContext,
    options: RunOptions,
    writer: Optional[CsvOutputWriter] = None,
) -> RunSummary:
    """Run one pass over ``[options.start, options.end]``.

    Returns once the generator has paged through the whole range and every
    record it submitted has been written out or dropped.
    """
    config = context.config
    workers = config.stage_workers
    if writer is None and not options.skip_output:
        writer = CsvOutputWriter(options.output)

    phases = MigrationPhases(
        context.store, config.page_size, client=context.client, writer=writer
    )

    stages: list[Stage] = []
    if not options.skip_provision:
        if context.client is None:
            raise ValueError("Provisioning run requires a transfer client")
        await context.client.authenticate()
        stages.append(Stage("provision", phases.provision, workers))
        stages.append(Stage("persist", phases.persist, workers))
    if not options.skip_output:
        stages.append(Stage("aggregate", phases.aggregate, workers))
        stages.append(Stage("emit", phases.emit, 1))

    tracker = ProgressTracker(
        "transfer_migration row" if options.skip_output else "csv row",
        config.page_size,
    )
    pipeline = Pipeline(stages, sink=tracker, capacity=config.page_size)
    generate = phases.seed_generator if options.skip_provision else phases.link_generator

    logger.info(
        "Starting migration run: start=%d end=%d skip_provision=%s skip_output=%s",
        options.start, options.end, options.skip_provision, options.skip_output,
    )
    started = time.monotonic()
    await pipeline.start()
    try:
        await generate(options.start, options.end, pipeline.submit)
        await pipeline.drain()
    finally:
        await pipeline.stop()
        if writer is not None:
            writer.close()

    summary = RunSummary(
        generated=phases.generated,
        unresolved=phases.unresolved,
        completed=tracker.count,
        duration_s=round(time.monotonic() - started, 3),
        stages=pipeline.stats(),
    )
    logger.info(
        "Migration run complete: generated=%d unresolved=%d completed=%d stages=%s",
        summary.generated, summary.unresolved, summary.completed,
        {name: vars(s) for name, s in summary.stages.items()},
        extra={"records": summary.completed, "duration_s": summary.duration_s},
    )
    return summary
