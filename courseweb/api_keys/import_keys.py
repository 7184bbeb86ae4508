"""
import_keys.py — load student API keys from a CSV file
======================================================
The lookup endpoint is read-only; this command is how rows get into the
api_keys table. Each row is upserted on (student_id, name), so re-running
with a corrected file replaces the old keys.

Usage (from the project root):
    python -m courseweb.api_keys.import_keys keys.csv

CSV format (header row required):
    student_id,name,api_key
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional, Sequence

from courseweb.database import AsyncSessionLocal
from courseweb.store import upsert_api_key

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("student_id", "name", "api_key")


def read_rows(path: Path) -> list[tuple[str, str, str]]:
    """
    Parse the CSV into trimmed (student_id, name, api_key) tuples.

    Rows with any blank field are skipped with a warning. A file missing one
    of the required columns raises ValueError.
    """
    rows: list[tuple[str, str, str]] = []
    with open(path, newline="", encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        missing = [c for c in REQUIRED_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"CSV is missing column(s): {', '.join(missing)}")

        for line_no, record in enumerate(reader, start=2):
            values = tuple((record.get(c) or "").strip() for c in REQUIRED_COLUMNS)
            if not all(values):
                log.warning("Skipping line %d: blank field", line_no)
                continue
            rows.append(values)  # type: ignore[arg-type]
    return rows


async def import_rows(rows: Iterable[tuple[str, str, str]]) -> int:
    """Upsert every row in a single transaction. Returns the row count."""
    count = 0
    async with AsyncSessionLocal() as db:
        try:
            for student_id, name, api_key in rows:
                await upsert_api_key(db, student_id, name, api_key)
                count += 1
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    return count


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="python -m courseweb.api_keys.import_keys",
        description="Upsert student API keys from a CSV file.",
    )
    parser.add_argument("csv_path", type=Path, help="CSV with student_id,name,api_key columns")
    args = parser.parse_args(argv)

    if not args.csv_path.is_file():
        log.error("File not found: %s", args.csv_path)
        sys.exit(1)

    try:
        rows = read_rows(args.csv_path)
    except ValueError as exc:
        log.error("%s", exc)
        sys.exit(1)

    count = asyncio.run(import_rows(rows))
    log.info("Imported %d API key(s) from %s", count, args.csv_path)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    main()
