"""Append-only CSV output for the receiving identity system."""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Optional, TextIO

from scripts.sso_transfer.models import CSV_COLUMNS, MigrationOutputRow

logger = logging.getLogger("sso_transfer.csv_output")


class CsvOutputWriter:
    """Appends one row per user; the header is written only to a new or empty file.

    Reruns over overlapping ranges append duplicate rows. The consumer
    replaces by transfer_token, so that is fine.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self.rows_written = 0
        self._fh: Optional[TextIO] = None
        self._writer: Optional[csv.DictWriter] = None

    def _open(self) -> csv.DictWriter:
        needs_header = not self.path.exists() or self.path.stat().st_size == 0
        self._fh = self.path.open("a", newline="", encoding="utf-8")
        self._writer = csv.DictWriter(self._fh, fieldnames=list(CSV_COLUMNS))
        if needs_header:
            self._writer.writeheader()
        logger.info("Appending CSV rows to %s", self.path)
        return self._writer

    def write_row(self, row: MigrationOutputRow) -> None:
        writer = self._writer or self._open()
        writer.writerow(row.as_csv_row())
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None
            self._writer = None
