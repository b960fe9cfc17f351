"""Data access layer for the bullion ledger.

This module provides low-level helpers that read from and write to the two
transaction workbooks the ledger works with: the durable remote ledger and
the local offline cache. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, creating, and persisting the Excel files.
3. Sheet operations: loading structured transaction records and appending
   new ones without duplicating identifiers.
"""


from __future__ import annotations

import configparser
import zipfile
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

import openpyxl
from openpyxl.styles import Font
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook import Workbook

from . import log
from .constants import DEFAULT_EPSILON, SheetName, TRANSACTION_COLUMNS


CONFIG_FILE_NAME = "config.ini"
TRANSACTIONS_SHEET = SheetName.TRANSACTIONS.value


class LedgerUnavailableError(Exception):
    """Raised when a transaction workbook cannot be reached or read."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    ledger_file: Path
    cache_file: Path
    schema_version: str
    epsilon: Decimal = DEFAULT_EPSILON
    lock_date: Optional[date] = None
    default_tax_rate: Decimal = Decimal("3")


@dataclass(frozen=True)
class TransactionRow:
    """In-memory view of a row from the ``Transactions`` sheet.

    The last three fields are never read from or written to a workbook. They
    are filled in by the FIFO replay on copies of the row.
    """

    transaction_id: Optional[str]
    business_date: Optional[date]
    created_at: Optional[datetime]
    kind: str
    party_name: str
    quantity_grams: Optional[Decimal]
    rate_per_gram: Optional[Decimal]
    tax_rate: Decimal = Decimal("0")
    tax_amount: Decimal = Decimal("0")
    taxable_amount: Optional[Decimal] = None
    total_amount: Decimal = Decimal("0")
    cogs: Decimal = Decimal("0")
    profit: Decimal = Decimal("0")
    consumption_log: tuple[str, ...] = field(default=())


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Validation of individual entries happens in
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def _resolve_data_path(raw: str, base_path: Optional[Path]) -> Path:
    path = Path(raw).expanduser()
    if not path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        path = (base_path / path).resolve()
    return path


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` must name both workbooks and the schema version. The
    ``[Engine]`` and ``[Defaults]`` sections are optional; blank entries fall
    back to the package defaults. Relative workbook paths are anchored to
    ``base_path`` (or the working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used as anchor for relative paths.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If one of the required sections or options is missing.
        ValueError: If an optional entry is present but cannot be parsed.
    """

    try:
        ledger_raw = parser.get("System", "LedgerFile")
        cache_raw = parser.get("System", "CacheFile")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    epsilon_raw = parser.get("Engine", "Epsilon", fallback="").strip()
    lock_raw = parser.get("Engine", "LockDate", fallback="").strip()
    tax_raw = parser.get("Defaults", "TaxRate", fallback="").strip()

    try:
        epsilon = Decimal(epsilon_raw) if epsilon_raw else DEFAULT_EPSILON
        default_tax_rate = Decimal(tax_raw) if tax_raw else Decimal("3")
    except InvalidOperation as exc:
        raise ValueError(f"Invalid numeric configuration entry: {exc}") from exc
    lock_date = date.fromisoformat(lock_raw) if lock_raw else None

    if epsilon < 0:
        raise ValueError(f"Epsilon must not be negative: {epsilon}")

    return ConfigSettings(
        ledger_file=_resolve_data_path(ledger_raw, base_path),
        cache_file=_resolve_data_path(cache_raw, base_path),
        schema_version=schema_version,
        epsilon=epsilon,
        lock_date=lock_date,
        default_tax_rate=default_tax_rate,
    )


def create_transaction_workbook() -> Workbook:
    """Return a new in-memory workbook holding an empty ``Transactions`` sheet."""

    workbook = openpyxl.Workbook()
    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)
    worksheet = workbook.create_sheet(title=TRANSACTIONS_SHEET)
    for column_index, column_name in enumerate(TRANSACTION_COLUMNS, start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return workbook


def open_workbook(data_file: Path) -> Workbook:
    """Open a transaction workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    wb = openpyxl.load_workbook(data_file)
    return wb


def open_remote_ledger(data_file: Path) -> Workbook:
    """Open the remote ledger, translating every access failure.

    Any failure to reach, open, or recognise the ledger workbook surfaces as
    :class:`LedgerUnavailableError` so callers can tell "unreachable" apart
    from "reachable but empty".

    Raises:
        LedgerUnavailableError: If the workbook is missing, unreadable,
            corrupt, or lacks the ``Transactions`` sheet.
    """

    try:
        workbook = open_workbook(data_file)
    except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        raise LedgerUnavailableError(f"Remote ledger unavailable at '{data_file}': {exc}") from exc
    if TRANSACTIONS_SHEET not in workbook.sheetnames:
        raise LedgerUnavailableError(
            f"Remote ledger '{data_file}' has no '{TRANSACTIONS_SHEET}' sheet")
    return workbook


def open_or_create_workbook(data_file: Path) -> Workbook:
    """Open ``data_file`` or start a fresh transaction workbook if it is absent."""

    if Path(data_file).expanduser().exists():
        return open_workbook(data_file)
    log.info("Creating new transaction workbook for '%s'", data_file)
    return create_transaction_workbook()


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent folders on demand.

    Args:
        workbook (Workbook): Workbook instance to persist.
        destination (Path): Filesystem path that should receive the serialized
            workbook.
    """

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def iter_transactions(workbook: Workbook) -> Iterable[TransactionRow]:
    """Stream transaction records from the ``Transactions`` worksheet.

    Header and fully empty rows are skipped. Each remaining row goes through
    :func:`deserialize_transaction`.

    Args:
        workbook (Workbook): Workbook containing the transactions sheet.

    Yields:
        TransactionRow: Normalized transaction record for each populated row.
    """

    sheet = workbook[TRANSACTIONS_SHEET]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserialize_transaction(raw)


def fetch_remote_transactions(data_file: Path) -> List[TransactionRow]:
    """Load every transaction from the remote ledger.

    Returns:
        list[TransactionRow]: Rows in sheet order. An empty list means the
            ledger was reachable and holds no transactions.

    Raises:
        LedgerUnavailableError: If the ledger cannot be reached or read.
    """

    workbook = open_remote_ledger(data_file)
    rows = list(iter_transactions(workbook))
    log.debug("Fetched %d transactions from remote ledger '%s'", len(rows), data_file)
    return rows


def read_local_transactions(data_file: Path) -> List[TransactionRow]:
    """Load the local offline cache.

    A missing, unreadable, or corrupt cache reads as empty so reconciliation
    can still proceed from the remote ledger.
    """

    if not Path(data_file).expanduser().exists():
        log.debug("No local cache at '%s'", data_file)
        return []
    try:
        workbook = open_workbook(data_file)
        return list(iter_transactions(workbook))
    except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
        log.warning("Ignoring unreadable local cache '%s': %s", data_file, exc)
        return []


def existing_transaction_ids(workbook: Workbook) -> set[str]:
    """Collect the identifiers already present on the transactions sheet."""

    sheet = workbook[TRANSACTIONS_SHEET]
    return {
        str(row[0])
        for row in sheet.iter_rows(min_row=2, max_col=1, values_only=True)
        if row[0] is not None
    }


def append_transaction(workbook: Workbook, record: TransactionRow) -> None:
    """Append a transaction record to the ``Transactions`` worksheet."""

    sheet = workbook[TRANSACTIONS_SHEET]
    sheet.append(serialize_transaction(record))


def upsert_transactions(workbook: Workbook, records: Sequence[TransactionRow]) -> int:
    """Append the records whose identifier is not yet on the sheet.

    Transactions are immutable once recorded, so an identifier that is
    already present is left untouched.

    Returns:
        int: Number of rows actually appended.
    """

    known = existing_transaction_ids(workbook)
    appended = 0
    for record in records:
        if record.transaction_id in known:
            continue
        append_transaction(workbook, record)
        known.add(record.transaction_id)
        appended += 1
    return appended


def _text(value: object) -> Optional[str]:
    return None if value is None else str(value)


def serialize_transaction(record: TransactionRow) -> list[object]:
    """Convert a transaction dataclass into the sheet's column order.

    Decimals, dates and timestamps are written as text so that no precision
    is lost to Excel's floating-point cells.

    Args:
        record (TransactionRow): Structured transaction data to transform.

    Returns:
        list[object]: Values ordered to match ``TRANSACTION_COLUMNS``.
    """

    return [
        record.transaction_id,
        record.business_date.isoformat() if record.business_date is not None else None,
        record.created_at.isoformat() if record.created_at is not None else None,
        record.kind,
        record.party_name,
        _text(record.quantity_grams),
        _text(record.rate_per_gram),
        _text(record.tax_rate),
        _text(record.tax_amount),
        _text(record.taxable_amount),
        _text(record.total_amount),
    ]


def parse_decimal(raw: object) -> Optional[Decimal]:
    """Convert a cell value into a :class:`~decimal.Decimal`.

    Blank cells become ``None``; unparsable text also becomes ``None`` so that
    ingestion validation can report the record instead of the reader failing
    halfway through a sheet.
    """

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, Decimal):
        return raw
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation:
        log.warning("Unparsable decimal cell value: %r", raw)
        return None
    if not value.is_finite():
        log.warning("Non-finite decimal cell value: %r", raw)
        return None
    return value


def _decimal_or_zero(raw: object) -> Decimal:
    value = parse_decimal(raw)
    return Decimal("0") if value is None else value


def parse_business_date(raw: object) -> Optional[date]:
    """Convert a cell value into a calendar date, or ``None`` if impossible."""

    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        log.warning("Unparsable date cell value: %r", raw)
        return None


def parse_timestamp(raw: object) -> Optional[datetime]:
    """Convert a cell value into an aware timestamp; naive values are UTC."""

    if raw is None or (isinstance(raw, str) and not raw.strip()):
        return None
    if isinstance(raw, datetime):
        moment = raw
    else:
        try:
            moment = datetime.fromisoformat(str(raw).strip())
        except ValueError:
            log.warning("Unparsable timestamp cell value: %r", raw)
            return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment


def deserialize_transaction(raw_row: Sequence[object]) -> TransactionRow:
    """Convert a raw worksheet row into a strongly typed transaction record.

    The converter never rejects a row. Missing or unparsable required values
    come through as ``None`` and are reported by the business layer's
    ingestion validation, which knows how to name the offending record.

    Args:
        raw_row (Sequence[object]): Raw cell values in ``TRANSACTION_COLUMNS``
            order. Short rows are padded with ``None``.

    Returns:
        TransactionRow: Dataclass reflecting the row contents.
    """

    values = list(raw_row) + [None] * (len(TRANSACTION_COLUMNS) - len(raw_row))
    (
        transaction_id,
        business_date,
        created_at,
        kind,
        party_name,
        quantity_raw,
        rate_raw,
        tax_rate_raw,
        tax_amount_raw,
        taxable_raw,
        total_raw,
    ) = values[: len(TRANSACTION_COLUMNS)]

    transaction_id = str(transaction_id).strip() if transaction_id is not None else None

    return TransactionRow(
        transaction_id=transaction_id or None,
        business_date=parse_business_date(business_date),
        created_at=parse_timestamp(created_at),
        kind=str(kind).strip().upper() if kind is not None else "",
        party_name=str(party_name) if party_name is not None else "",
        quantity_grams=parse_decimal(quantity_raw),
        rate_per_gram=parse_decimal(rate_raw),
        tax_rate=_decimal_or_zero(tax_rate_raw),
        tax_amount=_decimal_or_zero(tax_amount_raw),
        taxable_amount=parse_decimal(taxable_raw),
        total_amount=_decimal_or_zero(total_raw),
    )
