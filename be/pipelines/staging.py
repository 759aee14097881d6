"""Streaming loader for gzip CSV staging exports.

Reads a ``.csv.gz`` in fixed-size chunks with pandas, converts each raw row
through a column mapping, and hands every batch to an async insert callable.
Batches are independent: a rejected batch is recorded and the load moves on,
so a run can end in partial success. Only an unreadable file is fatal.

Snowflake writes SQL NULL as the literal ``\\N``. That sentinel is resolved
here, per column, and never leaves this module.
"""
from __future__ import annotations

import gzip
import json
import logging
import zlib
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Mapping

import pandas as pd

logger = logging.getLogger(__name__)

NULL_SENTINELS = frozenset({"\\N", "\\\\N"})
TRUE_VALUES = frozenset({"true", "t", "1", "yes", "y"})
FALSE_VALUES = frozenset({"false", "f", "0", "no", "n"})

# Errors raised while opening or decompressing a staging file
_FATAL_READ_ERRORS = (OSError, EOFError, zlib.error, UnicodeDecodeError, pd.errors.ParserError)

RowTransform = Callable[[Mapping[str, Any]], dict[str, Any]]
BatchInsert = Callable[[list[dict[str, Any]]], Awaitable[Any]]
ProgressCallback = Callable[[int, "int | None"], None]


class StagingFileError(Exception):
    """Raised when a staging file is missing, unreadable or not valid gzip."""
    pass


class RowParseError(Exception):
    """Raised when a single row cannot be converted. The row is skipped."""
    pass


class ColumnKind(str, Enum):
    """Target type of a staging column."""
    TEXT = "text"
    DECIMAL = "decimal"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    JSON = "json"


# Replacement for a NULL in a non-nullable column
_NUMERIC_DEFAULTS: dict[ColumnKind, Any] = {
    ColumnKind.DECIMAL: Decimal("0"),
    ColumnKind.INTEGER: 0,
    ColumnKind.FLOAT: 0.0,
}


@dataclass(frozen=True)
class ColumnSpec:
    """Maps one CSV column onto one target column."""
    target: str
    sources: tuple[str, ...]
    kind: ColumnKind = ColumnKind.TEXT
    nullable: bool = True

    @classmethod
    def of(cls, target: str, *sources: str, kind: ColumnKind = ColumnKind.TEXT, nullable: bool = True) -> ColumnSpec:
        return cls(target=target, sources=sources or (target,), kind=kind, nullable=nullable)


@dataclass
class LoadProgress:
    """Running counters for a load. ``errors`` keeps the first ``max_errors`` messages."""
    table_name: str = ""
    total_processed: int = 0
    total_inserted: int = 0
    total_skipped: int = 0
    total_failed: int = 0
    errors: list[str] = field(default_factory=list)
    max_errors: int = 100

    @property
    def success(self) -> bool:
        return self.total_failed == 0

    def record_error(self, message: str) -> None:
        if len(self.errors) < self.max_errors:
            self.errors.append(message)

    def merge(self, other: LoadProgress) -> None:
        self.total_processed += other.total_processed
        self.total_inserted += other.total_inserted
        self.total_skipped += other.total_skipped
        self.total_failed += other.total_failed
        for message in other.errors:
            self.record_error(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "total_processed": self.total_processed,
            "total_inserted": self.total_inserted,
            "total_skipped": self.total_skipped,
            "total_failed": self.total_failed,
            "success": self.success,
            "errors": list(self.errors),
        }


def is_null_sentinel(value: Any) -> bool:
    """True for Snowflake's NULL marker, for Python ``None`` and for NaN."""
    if value is None:
        return True
    if isinstance(value, float) and value != value:
        return True
    return isinstance(value, str) and value.strip() in NULL_SENTINELS


def _parse_boolean(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def _parse_integer(raw: str) -> int:
    # Exports sometimes render integers as "12.0"
    number = Decimal(raw)
    if number != number.to_integral_value():
        raise ValueError(f"not an integer: {raw!r}")
    return int(number)


def _parse_date(raw: str) -> date:
    return date.fromisoformat(raw[:10])


def _parse_timestamp(raw: str) -> datetime:
    return datetime.fromisoformat(raw.replace("Z", "+00:00"))


_PARSERS: dict[ColumnKind, Callable[[str], Any]] = {
    ColumnKind.TEXT: str,
    ColumnKind.DECIMAL: Decimal,
    ColumnKind.INTEGER: _parse_integer,
    ColumnKind.FLOAT: float,
    ColumnKind.BOOLEAN: _parse_boolean,
    ColumnKind.DATE: _parse_date,
    ColumnKind.TIMESTAMP: _parse_timestamp,
    ColumnKind.JSON: json.loads,
}


def convert_value(spec: ColumnSpec, raw: Any) -> Any:
    """Convert one raw CSV value according to its column spec.

    Raises:
        RowParseError: If the value is NULL for a required non-numeric column,
            or cannot be parsed as the column's kind.
    """
    value = raw.strip() if isinstance(raw, str) else raw
    missing = is_null_sentinel(value) or (value == "" and spec.kind is not ColumnKind.TEXT)

    if missing:
        if spec.nullable:
            return None
        if spec.kind in _NUMERIC_DEFAULTS:
            return _NUMERIC_DEFAULTS[spec.kind]
        raise RowParseError(f"{spec.target} is required but missing")

    try:
        return _PARSERS[spec.kind](value)
    except (ValueError, TypeError, InvalidOperation) as e:
        raise RowParseError(f"{spec.target}: cannot parse {value!r} as {spec.kind.value}") from e


def transform_row(columns: Iterable[ColumnSpec], row: Mapping[str, Any]) -> dict[str, Any]:
    """Build a target record from a raw row; the first present source wins."""
    record: dict[str, Any] = {}
    for spec in columns:
        present = (row.get(source) for source in spec.sources)
        raw = next((v for v in present if not is_null_sentinel(v) and v != ""), None)
        record[spec.target] = convert_value(spec, raw)
    return record


def count_staging_rows(file_path: str | Path) -> int:
    """Count data rows (excluding the header) with one decompression pass.

    Raises:
        StagingFileError: If the file cannot be opened or decompressed.
    """
    try:
        with gzip.open(file_path, "rb") as fh:
            lines = sum(1 for line in fh if line.strip())
    except (OSError, EOFError, zlib.error) as e:
        raise StagingFileError(f"Cannot read staging file {file_path}: {e}") from e
    return max(lines - 1, 0)


def _open_reader(file_path: Path, batch_size: int, on_bad_line: Callable[[list[str]], None]):
    return pd.read_csv(
        file_path,
        compression="gzip",
        dtype=str,
        keep_default_na=False,
        skipinitialspace=True,
        skip_blank_lines=True,
        chunksize=batch_size,
        engine="python",
        on_bad_lines=on_bad_line,
    )


async def load_csv_file(
    file_path: str | Path,
    transform: RowTransform,
    insert_batch: BatchInsert,
    *,
    table_name: str = "",
    batch_size: int = 1000,
    progress_callback: ProgressCallback | None = None,
    total_rows: int | None = None,
    max_errors: int = 100,
) -> LoadProgress:
    """Stream one gzip CSV file into the target through ``insert_batch``.

    Args:
        file_path: Path to the ``.csv.gz`` export
        transform: Converts a raw row into a target record; may raise RowParseError
        insert_batch: Async callable inserting one batch of records
        table_name: Label used in progress and log lines
        batch_size: Rows read (and inserted) per batch
        progress_callback: Called after every batch with (processed, total)
        total_rows: Known row count, if any; passed through to the callback
        max_errors: Number of error messages retained

    Returns:
        LoadProgress with per-run counters; ``success`` is False when any batch failed

    Raises:
        StagingFileError: If the file cannot be opened or decompressed
    """
    path = Path(file_path)
    progress = LoadProgress(table_name=table_name, max_errors=max_errors)
    bad_lines: list[list[str]] = []

    if not path.is_file():
        raise StagingFileError(f"Staging file not found: {path}")

    def on_bad_line(fields: list[str]) -> None:
        bad_lines.append(fields)
        return None

    logger.info(f"Loading {path.name} into {table_name or 'target'} (batch size {batch_size})")

    try:
        reader = _open_reader(path, batch_size, on_bad_line)
    except pd.errors.EmptyDataError:
        logger.warning(f"Staging file {path.name} is empty")
        return progress
    except _FATAL_READ_ERRORS as e:
        raise StagingFileError(f"Cannot open staging file {path}: {e}") from e

    batch_number = 0
    with reader:
        while True:
            try:
                chunk = next(reader)
            except StopIteration:
                break
            except _FATAL_READ_ERRORS as e:
                raise StagingFileError(f"Cannot read staging file {path}: {e}") from e

            batch_number += 1
            first_row = progress.total_processed + 1

            for fields in bad_lines:
                progress.total_skipped += 1
                progress.record_error(f"Malformed line near row {first_row}: {len(fields)} fields")
                logger.warning(f"Skipping malformed line in {path.name} near row {first_row}")
            progress.total_processed += len(bad_lines)
            bad_lines.clear()

            records: list[dict[str, Any]] = []
            for offset, row in enumerate(chunk.to_dict(orient="records")):
                try:
                    records.append(transform(row))
                except RowParseError as e:
                    progress.total_skipped += 1
                    progress.record_error(f"Row {first_row + offset}: {e}")
                    logger.warning(f"Skipping row {first_row + offset} of {path.name}: {e}")

            last_row = first_row + len(chunk) - 1
            progress.total_processed += len(chunk)

            if records:
                try:
                    await insert_batch(records)
                    progress.total_inserted += len(records)
                except Exception as e:
                    progress.total_failed += len(records)
                    progress.record_error(f"Batch {batch_number} (rows {first_row}-{last_row}): {e}")
                    logger.error(f"Batch {batch_number} of {path.name} failed (rows {first_row}-{last_row}): {e}")

            if progress_callback is not None:
                progress_callback(progress.total_processed, total_rows)

    logger.info(
        f"Finished {path.name}: processed={progress.total_processed} "
        f"inserted={progress.total_inserted} skipped={progress.total_skipped} "
        f"failed={progress.total_failed}"
    )
    return progress


async def load_staging_files(
    file_paths: Iterable[str | Path],
    transform: RowTransform,
    insert_batch: BatchInsert,
    *,
    table_name: str = "",
    batch_size: int = 1000,
    progress_callback: ProgressCallback | None = None,
    count_rows: bool = False,
    max_errors: int = 100,
) -> LoadProgress:
    """Load several part files of one table and merge their progress.

    With ``count_rows`` the files are pre-counted so the callback receives a
    real total; otherwise it receives ``None``.
    """
    paths = [Path(p) for p in file_paths]
    total = sum(count_staging_rows(p) for p in paths) if count_rows else None
    overall = LoadProgress(table_name=table_name, max_errors=max_errors)

    def forward(processed: int, _total: int | None) -> None:
        if progress_callback is not None:
            progress_callback(overall.total_processed + processed, total)

    for path in paths:
        progress = await load_csv_file(
            path,
            transform,
            insert_batch,
            table_name=table_name,
            batch_size=batch_size,
            progress_callback=forward,
            total_rows=total,
            max_errors=max_errors,
        )
        overall.merge(progress)

    return overall
