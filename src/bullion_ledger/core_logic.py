"""Business logic layer for the bullion ledger.

This module turns the raw transaction history held by the data access layer
(DAL) into inventory lots and realized profit. The pipeline is a pure replay:

1. the Source Reconciler merges the remote ledger with the local offline
   cache into one candidate set,
2. the Transaction Sequencer puts that set into a deterministic total order,
3. the FIFO Consumption Engine replays purchases as lots and sales as lot
   draws, annotating each sale with its COGS, profit, and an audit trail.

Nothing computed here is written back to storage. Every run starts from the
full history, so replaying the same set in any order gives the same figures.
The recording and sync workflows at the bottom of the module are the only
functions that write through the DAL.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal
from functools import cmp_to_key
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, NoReturn, Optional, Sequence, Union

from . import data_manager, log
from .constants import (
    AMBIGUOUS_ORDER_NOTE,
    CONSUMED_NOTE,
    DEFAULT_EPSILON,
    EXPECTED_SCHEMA_VERSION,
    MONEY_QUANTUM,
    STOCKOUT_MARKER,
    STOCKOUT_NOTE,
    TransactionKind,
)


RECONCILIATION_BUCKET = "reconciliation"
ZERO = Decimal("0")


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MalformedTransactionError(BusinessRuleViolation):
    """Raised when an ingested transaction cannot safely enter the replay."""

    def __init__(self, message: str, *, record: Optional[data_manager.TransactionRow] = None) -> None:
        super().__init__(message)
        self.record = record


class LockedPeriodError(BusinessRuleViolation):
    """Raised when a new transaction is dated inside the locked period."""


class InsufficientStockError(BusinessRuleViolation):
    """Raised when a new sale asks for more gold than is currently on hand."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and the last reconciliation result."""

    settings: data_manager.ConfigSettings
    _cache: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class PurchaseCommand:
    """User intent for recording a ``PURCHASE`` from a supplier."""

    party_name: str
    quantity: Decimal
    rate_per_gram: Decimal
    tax_rate: Optional[Decimal] = None
    business_date: Optional[date] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for recording a ``SALE`` to a customer."""

    party_name: str
    quantity: Decimal
    rate_per_gram: Decimal
    tax_rate: Optional[Decimal] = None
    business_date: Optional[date] = None
    timestamp: Optional[datetime] = None


TransactionCommand = Union[PurchaseCommand, SaleCommand]


@dataclass(frozen=True)
class InventoryLot:
    """Snapshot of one purchase lot after the replay."""

    lot_id: str
    opened_date: date
    original_quantity: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    closed_date: Optional[date] = None

    @property
    def is_closed(self) -> bool:
        return self.closed_date is not None

    @property
    def consumed_quantity(self) -> Decimal:
        return self.original_quantity - self.remaining_quantity

    @property
    def remaining_value(self) -> Decimal:
        return self.remaining_quantity * self.unit_cost


@dataclass(frozen=True)
class LotDraw:
    """One chunk of a sale matched against one lot."""

    sale_id: str
    lot_id: str
    lot_opened_date: date
    quantity: Decimal
    unit_cost: Decimal

    @property
    def cost(self) -> Decimal:
        return self.quantity * self.unit_cost


@dataclass
class _LotState:
    """Mutable working copy of a lot, private to a single replay."""

    lot_id: str
    opened_date: date
    original_quantity: Decimal
    remaining_quantity: Decimal
    unit_cost: Decimal
    closed_date: Optional[date] = None

    def snapshot(self) -> InventoryLot:
        return InventoryLot(
            lot_id=self.lot_id,
            opened_date=self.opened_date,
            original_quantity=self.original_quantity,
            remaining_quantity=self.remaining_quantity,
            unit_cost=self.unit_cost,
            closed_date=self.closed_date,
        )


@dataclass(frozen=True)
class ReplayResult:
    """Output of :func:`replay_fifo`."""

    transactions: tuple[data_manager.TransactionRow, ...]
    lots: tuple[InventoryLot, ...]
    draws: Mapping[str, tuple[LotDraw, ...]]


@dataclass(frozen=True)
class MergeOutcome:
    """Candidate transaction set produced by :func:`merge_sources`."""

    transactions: tuple[data_manager.TransactionRow, ...]
    degraded: bool
    needs_sync: bool
    unsynced_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ReconcileResult:
    """Everything a caller needs to render the ledger after one pass.

    ``transactions`` are in replay order; presentation layers re-sort them as
    they see fit. ``degraded`` means the remote ledger could not be reached and
    the figures come from the local cache alone. ``needs_sync`` means local
    entries exist that the remote ledger does not have yet.
    """

    transactions: tuple[data_manager.TransactionRow, ...]
    lots: tuple[InventoryLot, ...]
    draws: Mapping[str, tuple[LotDraw, ...]]
    degraded: bool
    needs_sync: bool
    unsynced_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class RecordOutcome:
    """Result of :func:`record_transaction`."""

    transaction: data_manager.TransactionRow
    offline: bool


# ---------------------------------------------------------------------------
# Ingestion validation
# ---------------------------------------------------------------------------


def _describe(row: data_manager.TransactionRow, *, source: str, position: Optional[int]) -> str:
    if row.transaction_id:
        return f"transaction '{row.transaction_id}' from {source}"
    where = f" #{position + 1}" if position is not None else ""
    return (
        f"unidentified transaction{where} from {source} "
        f"(party '{row.party_name}', date {row.business_date})"
    )


def _reject(label: str, reason: str, row: data_manager.TransactionRow) -> NoReturn:
    log.error("Rejected malformed %s: %s", label, reason)
    raise MalformedTransactionError(f"Malformed {label}: {reason}", record=row)


def validate_transaction(
    row: data_manager.TransactionRow,
    *,
    source: str = "input",
    position: Optional[int] = None,
) -> TransactionKind:
    """Check that a single row can take part in the replay.

    Args:
        row (data_manager.TransactionRow): Record as read from storage.
        source (str): Human-readable origin used in the error message.
        position (int | None): Zero-based index of the row in its source,
            used to identify rows that have no id.

    Returns:
        TransactionKind: The parsed kind of the row.

    Raises:
        MalformedTransactionError: If the id or date is missing, the kind is
            unknown, or the quantity or rate is missing or not positive.
    """
    label = _describe(row, source=source, position=position)
    if not row.transaction_id:
        _reject(label, "missing id", row)
    if row.business_date is None:
        _reject(label, "missing or invalid date", row)
    try:
        kind = TransactionKind(row.kind)
    except ValueError:
        _reject(label, f"unknown kind '{row.kind}'", row)
    if row.quantity_grams is None or row.quantity_grams <= ZERO:
        _reject(label, f"quantity must be positive, got {row.quantity_grams}", row)
    if row.rate_per_gram is None or row.rate_per_gram <= ZERO:
        _reject(label, f"rate per gram must be positive, got {row.rate_per_gram}", row)
    return kind


def _input_fields(row: data_manager.TransactionRow) -> data_manager.TransactionRow:
    return replace(row, cogs=ZERO, profit=ZERO, consumption_log=())


def validate_transactions(rows: Iterable[data_manager.TransactionRow], *, source: str = "input") -> None:
    """Validate every row of one source.

    Two copies of the same id are tolerated when their recorded fields agree;
    differing copies within one source are rejected because the ledger treats
    an id as one immutable transaction.

    Raises:
        MalformedTransactionError: On the first offending record.
    """
    seen: Dict[str, data_manager.TransactionRow] = {}
    for position, row in enumerate(rows):
        validate_transaction(row, source=source, position=position)
        prior = seen.get(row.transaction_id)
        if prior is None:
            seen[row.transaction_id] = row
        elif _input_fields(prior) != _input_fields(row):
            _reject(
                _describe(row, source=source, position=position),
                "id appears twice with different contents",
                row,
            )


def deduplicate_by_id(rows: Iterable[data_manager.TransactionRow]) -> List[data_manager.TransactionRow]:
    """Keep the first row for every transaction id, preserving input order."""
    seen: set[str] = set()
    unique: List[data_manager.TransactionRow] = []
    for row in rows:
        if row.transaction_id in seen:
            continue
        seen.add(row.transaction_id)
        unique.append(row)
    return unique


# ---------------------------------------------------------------------------
# Transaction Sequencer
# ---------------------------------------------------------------------------


def _sign(left: Any, right: Any) -> int:
    return (left > right) - (left < right)


def _as_utc(moment: datetime) -> datetime:
    # Naive timestamps are UTC, as in data_manager.parse_timestamp.
    return moment.replace(tzinfo=UTC) if moment.tzinfo is None else moment


def compare_transactions(left: data_manager.TransactionRow, right: data_manager.TransactionRow) -> int:
    """Three-way comparison defining the replay order.

    Business date first. Creation timestamps break ties only when both rows
    carry one; a naive timestamp is read as UTC. The transaction id is the
    final tie-break, so two distinct transactions never compare equal.
    """
    by_date = _sign(left.business_date, right.business_date)
    if by_date:
        return by_date
    if left.created_at is not None and right.created_at is not None:
        by_timestamp = _sign(_as_utc(left.created_at), _as_utc(right.created_at))
        if by_timestamp:
            return by_timestamp
    return _sign(left.transaction_id, right.transaction_id)


def sequence_transactions(rows: Iterable[data_manager.TransactionRow]) -> List[data_manager.TransactionRow]:
    """Return ``rows`` in replay order, independent of their input order.

    The timestamp level of :func:`compare_transactions` is skipped for rows
    without ``created_at``, which can make the comparison intransitive when
    timestamped and untimestamped rows share a day. Sorting a canonical
    ``(date, id)`` arrangement first pins the outcome of the second sort to
    the content of the set alone.
    """
    canonical = sorted(rows, key=lambda row: (row.business_date, row.transaction_id))
    return sorted(canonical, key=cmp_to_key(compare_transactions))


# ---------------------------------------------------------------------------
# FIFO Consumption Engine
# ---------------------------------------------------------------------------


def sale_revenue(row: data_manager.TransactionRow) -> Decimal:
    """Revenue excluding tax: the taxable amount, or quantity times rate when it is blank."""
    if row.taxable_amount:
        return row.taxable_amount
    return row.quantity_grams * row.rate_per_gram


def _consume_lots(
    sale: data_manager.TransactionRow,
    lots: List[_LotState],
    epsilon: Decimal,
) -> tuple[data_manager.TransactionRow, tuple[LotDraw, ...]]:
    need = sale.quantity_grams
    cogs = ZERO
    audit: List[str] = []
    draws: List[LotDraw] = []

    if sale.created_at is None:
        audit.append(
            AMBIGUOUS_ORDER_NOTE.format(day=sale.business_date.isoformat(), transaction_id=sale.transaction_id)
        )

    for lot in lots:
        if need <= epsilon:
            break
        if lot.remaining_quantity <= epsilon:
            continue
        chunk = min(lot.remaining_quantity, need)
        lot.remaining_quantity -= chunk
        need -= chunk
        cogs += chunk * lot.unit_cost
        draws.append(
            LotDraw(
                sale_id=sale.transaction_id,
                lot_id=lot.lot_id,
                lot_opened_date=lot.opened_date,
                quantity=chunk,
                unit_cost=lot.unit_cost,
            )
        )
        audit.append(
            CONSUMED_NOTE.format(
                quantity=chunk,
                lot_id=lot.lot_id,
                opened=lot.opened_date.isoformat(),
                unit_cost=lot.unit_cost,
            )
        )
        if lot.remaining_quantity <= epsilon:
            lot.remaining_quantity = ZERO
            lot.closed_date = sale.business_date

    if need > epsilon:
        log.warning("Stockout on sale '%s': %s g unmatched", sale.transaction_id, need)
        audit.append(STOCKOUT_NOTE.format(unmet=need))

    annotated = replace(
        sale,
        cogs=cogs,
        profit=sale_revenue(sale) - cogs,
        consumption_log=tuple(audit),
    )
    return annotated, tuple(draws)


def replay_fifo(
    rows: Iterable[data_manager.TransactionRow],
    *,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> ReplayResult:
    """Replay a transaction set under FIFO lot consumption.

    The rows are validated, deduplicated by id, and put in sequencer order.
    Each purchase opens a lot at its own rate; each sale drains the oldest
    open lots first, accumulating COGS chunk by chunk. A lot whose remainder
    falls to ``epsilon`` or below is snapped to zero and closed on the date of
    the sale that drained it. A purchase of ``epsilon`` grams or less opens a
    lot that is snapped to zero and closed on its own date. Selling more than
    is on hand is recorded in the sale's audit trail and never raises.

    Args:
        rows (Iterable[data_manager.TransactionRow]): Candidate set, in any
            order.
        epsilon (Decimal): Quantity tolerance in grams.

    Returns:
        ReplayResult: Annotated transactions in replay order, lots in purchase
            order, and every lot draw keyed by sale id.

    Raises:
        MalformedTransactionError: If any row fails ingestion validation.
    """
    rows = list(rows)
    validate_transactions(rows)
    ordered = sequence_transactions(deduplicate_by_id(rows))

    lots: List[_LotState] = []
    replayed: List[data_manager.TransactionRow] = []
    draws: Dict[str, tuple[LotDraw, ...]] = {}

    for row in ordered:
        if row.kind == TransactionKind.PURCHASE.value:
            lot = _LotState(
                lot_id=row.transaction_id,
                opened_date=row.business_date,
                original_quantity=row.quantity_grams,
                remaining_quantity=row.quantity_grams,
                unit_cost=row.rate_per_gram,
            )
            if lot.remaining_quantity <= epsilon:
                lot.remaining_quantity = ZERO
                lot.closed_date = row.business_date
            lots.append(lot)
            replayed.append(replace(row, cogs=ZERO, profit=ZERO, consumption_log=()))
        else:
            annotated, sale_draws = _consume_lots(row, lots, epsilon)
            replayed.append(annotated)
            draws[row.transaction_id] = sale_draws

    log.debug("Replayed %d transactions into %d lots", len(replayed), len(lots))
    return ReplayResult(
        transactions=tuple(replayed),
        lots=tuple(lot.snapshot() for lot in lots),
        draws=draws,
    )


# ---------------------------------------------------------------------------
# Source Reconciler
# ---------------------------------------------------------------------------


def merge_sources(
    remote: Optional[Sequence[data_manager.TransactionRow]],
    local: Sequence[data_manager.TransactionRow],
) -> MergeOutcome:
    """Merge the remote ledger and local cache into one candidate set.

    Args:
        remote (Sequence | None): Remote rows, or ``None`` when the remote
            ledger could not be reached. An empty sequence means the ledger
            was reached and is empty.
        local (Sequence): Rows from the local offline cache.

    Returns:
        MergeOutcome: The candidate set and the advisory flags. Remote copies
            win whenever an id is present in both sources.
    """
    local_rows = deduplicate_by_id(local)
    if remote is None:
        log.warning("Remote ledger unavailable, using %d cached transactions", len(local_rows))
        return MergeOutcome(transactions=tuple(local_rows), degraded=True, needs_sync=False)

    remote_rows = deduplicate_by_id(remote)
    remote_ids = {row.transaction_id for row in remote_rows}
    unsynced = [row for row in local_rows if row.transaction_id not in remote_ids]
    unsynced_ids = tuple(sorted(row.transaction_id for row in unsynced))

    if not unsynced:
        return MergeOutcome(transactions=tuple(remote_rows), degraded=False, needs_sync=False)

    if not remote_rows:
        log.info("Remote ledger is empty, bootstrapping from %d cached transactions", len(unsynced))
    else:
        log.info("Found %d cached transactions missing from the remote ledger", len(unsynced))
    return MergeOutcome(
        transactions=tuple(remote_rows + unsynced),
        degraded=False,
        needs_sync=True,
        unsynced_ids=unsynced_ids,
    )


def reconcile(
    fetch_remote: Callable[[], Sequence[data_manager.TransactionRow]],
    read_local: Callable[[], Sequence[data_manager.TransactionRow]],
    *,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> ReconcileResult:
    """Run the full Reconciler → Sequencer → Engine pipeline.

    ``fetch_remote`` signals an unreachable ledger by raising
    :class:`data_manager.LedgerUnavailableError`; any other exception
    propagates. Both sources are validated before they are merged.

    Raises:
        MalformedTransactionError: If either source holds a malformed row.
    """
    try:
        remote: Optional[List[data_manager.TransactionRow]] = list(fetch_remote())
    except data_manager.LedgerUnavailableError as exc:
        log.warning("%s", exc)
        remote = None
    local = list(read_local())

    if remote is not None:
        validate_transactions(remote, source="remote ledger")
    validate_transactions(local, source="local cache")

    merged = merge_sources(remote, local)
    replay = replay_fifo(merged.transactions, epsilon=epsilon)
    log.info(
        "Reconciled %d transactions into %d lots (degraded=%s, needs_sync=%s)",
        len(replay.transactions),
        len(replay.lots),
        merged.degraded,
        merged.needs_sync,
    )
    return ReconcileResult(
        transactions=replay.transactions,
        lots=replay.lots,
        draws=replay.draws,
        degraded=merged.degraded,
        needs_sync=merged.needs_sync,
        unsynced_ids=merged.unsynced_ids,
    )


# ---------------------------------------------------------------------------
# Runtime context
# ---------------------------------------------------------------------------


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Resolve ``config.ini`` and build a :class:`RuntimeContext`.

    Workbooks are not opened here; the remote ledger may be unreachable and
    that is only decided when a reconciliation or write runs.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    log.info("Loaded runtime context for ledger '%s'", settings.ledger_file)
    return RuntimeContext(settings=settings)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to work with a configuration written for another schema.

    Raises:
        RuntimeError: If the configured schema version is not
            ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    if not names:
        return
    log.debug("Invalidating cache buckets: %s", ", ".join(names))
    for name in names:
        context._cache.pop(name, None)


def run_reconciliation(context: RuntimeContext) -> ReconcileResult:
    """Reconcile the configured workbooks and cache the result on ``context``.

    The cached result is replaced as a whole, never patched.
    """
    settings = context.settings
    result = reconcile(
        lambda: data_manager.fetch_remote_transactions(settings.ledger_file),
        lambda: data_manager.read_local_transactions(settings.cache_file),
        epsilon=settings.epsilon,
    )
    context._cache[RECONCILIATION_BUCKET] = result
    return result


def get_reconciliation(context: RuntimeContext, *, refresh: bool = False) -> ReconcileResult:
    """Return the cached reconciliation, running one if needed."""
    cached = context._cache.get(RECONCILIATION_BUCKET)
    if cached is None or refresh:
        return run_reconciliation(context)
    return cached


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def current_stock(result: ReconcileResult) -> Decimal:
    """Grams still on hand across every lot."""
    return sum((lot.remaining_quantity for lot in result.lots), ZERO)


def summarize_inventory(result: ReconcileResult) -> Dict[str, Any]:
    """Aggregate stock position over the replayed lots.

    Returns:
        dict[str, Any]: ``current_stock`` (grams), ``fifo_value`` (remaining
            grams valued at their own lot cost), ``open_lots`` and
            ``closed_lots`` counts.
    """
    open_lots = [lot for lot in result.lots if not lot.is_closed]
    return {
        "current_stock": current_stock(result),
        "fifo_value": sum((lot.remaining_value for lot in open_lots), ZERO),
        "open_lots": len(open_lots),
        "closed_lots": len(result.lots) - len(open_lots),
    }


def is_stockout(row: data_manager.TransactionRow) -> bool:
    return any(line.startswith(STOCKOUT_MARKER) for line in row.consumption_log)


def calculate_profit_summary(result: ReconcileResult) -> Dict[str, Any]:
    """Aggregate revenue, COGS, and realized profit over every sale."""
    sales = [row for row in result.transactions if row.kind == TransactionKind.SALE.value]
    revenue = sum((sale_revenue(row) for row in sales), ZERO)
    cogs = sum((row.cogs for row in sales), ZERO)
    profit = sum((row.profit for row in sales), ZERO)
    log.debug("Calculated profit summary: revenue=%s cogs=%s profit=%s", revenue, cogs, profit)
    return {
        "revenue": revenue,
        "cogs": cogs,
        "profit": profit,
        "sale_count": len(sales),
        "stockout_count": sum(1 for row in sales if is_stockout(row)),
    }


def list_transactions(result: ReconcileResult, *, newest_first: bool = True) -> List[data_manager.TransactionRow]:
    """Annotated transactions in replay order, or its reverse for display."""
    rows = list(result.transactions)
    if newest_first:
        rows.reverse()
    return rows


# ---------------------------------------------------------------------------
# Recording and sync
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    return candidate if candidate is not None else datetime.now(UTC)


def generate_transaction_id(*, prefix: str = "T", when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier of the form ``{prefix}{YYYYMMDDHHMMSSffffff}``."""
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}"


def require_positive(value: Decimal, name: str) -> None:
    """Raise ``ValueError`` unless ``value`` is strictly positive."""
    if value <= ZERO:
        log.error("%s validation failed: %s", name, value)
        raise ValueError(f"{name} must be greater than zero")


def require_nonnegative(value: Decimal, name: str) -> None:
    """Raise ``ValueError`` if ``value`` is negative."""
    if value < ZERO:
        log.error("%s validation failed: %s", name, value)
        raise ValueError(f"{name} must be zero or positive")


def ensure_date_unlocked(context: RuntimeContext, business_date: date) -> None:
    """Reject entries dated on or before the configured lock date.

    Raises:
        LockedPeriodError: If ``business_date`` falls inside the locked period.
    """
    lock_date = context.settings.lock_date
    if lock_date is not None and business_date <= lock_date:
        log.warning("Rejected entry dated %s inside locked period (lock date %s)", business_date, lock_date)
        raise LockedPeriodError(f"Date locked: cannot record entries on or before {lock_date.isoformat()}")


def ensure_stock_available(context: RuntimeContext, quantity: Decimal) -> None:
    """Reject a new sale that exceeds the gold currently on hand.

    Raises:
        InsufficientStockError: If ``quantity`` exceeds current stock by more
            than the configured tolerance.
    """
    available = current_stock(get_reconciliation(context))
    if quantity - available > context.settings.epsilon:
        log.warning("Rejected sale of %s g with only %s g on hand", quantity, available)
        raise InsufficientStockError(f"Insufficient inventory: requested {quantity}g, available {available}g")


def calculate_tax(quantity: Decimal, rate_per_gram: Decimal, tax_rate: Decimal) -> tuple[Decimal, Decimal, Decimal]:
    """Flat-rate GST arithmetic.

    Returns:
        tuple[Decimal, Decimal, Decimal]: ``(taxable, tax, total)``, each
            rounded half-up to ``MONEY_QUANTUM``.
    """
    taxable = (quantity * rate_per_gram).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    tax = (taxable * tax_rate / Decimal("100")).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)
    return taxable, tax, taxable + tax


def build_transaction(
    command: TransactionCommand,
    *,
    transaction_id: str,
    timestamp: datetime,
    default_tax_rate: Decimal,
) -> data_manager.TransactionRow:
    """Materialize a command into a DAL transaction row with GST figures."""
    kind = TransactionKind.SALE if isinstance(command, SaleCommand) else TransactionKind.PURCHASE
    tax_rate = command.tax_rate if command.tax_rate is not None else default_tax_rate
    taxable, tax, total = calculate_tax(command.quantity, command.rate_per_gram, tax_rate)
    return data_manager.TransactionRow(
        transaction_id=transaction_id,
        business_date=command.business_date or timestamp.date(),
        created_at=timestamp,
        kind=kind.value,
        party_name=command.party_name,
        quantity_grams=command.quantity,
        rate_per_gram=command.rate_per_gram,
        tax_rate=tax_rate,
        tax_amount=tax,
        taxable_amount=taxable,
        total_amount=total,
    )


def _store_transaction(context: RuntimeContext, transaction: data_manager.TransactionRow) -> bool:
    settings = context.settings
    try:
        workbook = data_manager.open_remote_ledger(settings.ledger_file)
        data_manager.upsert_transactions(workbook, [transaction])
        data_manager.save_workbook(workbook, settings.ledger_file)
        return True
    except (data_manager.LedgerUnavailableError, OSError) as exc:
        log.warning("Remote ledger write failed, keeping '%s' offline: %s", transaction.transaction_id, exc)

    cache = data_manager.open_or_create_workbook(settings.cache_file)
    data_manager.upsert_transactions(cache, [transaction])
    data_manager.save_workbook(cache, settings.cache_file)
    return False


def record_transaction(context: RuntimeContext, command: TransactionCommand) -> RecordOutcome:
    """Validate a purchase or sale and write it to the ledger.

    Quantities and rates must be positive and the tax rate non-negative. The
    entry date must be after the lock date, and a sale may not exceed the
    stock currently on hand. The row goes to the remote ledger; when that is
    unreachable it is written to the local cache and picked up by the next
    :func:`sync_unsynced`.

    Args:
        context (RuntimeContext): Runtime context with the resolved settings.
        command (TransactionCommand): Purchase or sale intent.

    Returns:
        RecordOutcome: The stored row and whether it was stored offline.

    Raises:
        ValueError: When magnitude validations fail.
        LockedPeriodError: If the entry date is locked.
        InsufficientStockError: If a sale exceeds the stock on hand.
    """
    require_positive(command.quantity, "Quantity")
    require_positive(command.rate_per_gram, "Rate per gram")
    if command.tax_rate is not None:
        require_nonnegative(command.tax_rate, "Tax rate")

    timestamp = _resolve_timestamp(command.timestamp)
    ensure_date_unlocked(context, command.business_date or timestamp.date())
    if isinstance(command, SaleCommand):
        ensure_stock_available(context, command.quantity)

    prefix = "S" if isinstance(command, SaleCommand) else "P"
    transaction = build_transaction(
        command,
        transaction_id=generate_transaction_id(prefix=prefix, when=timestamp),
        timestamp=timestamp,
        default_tax_rate=context.settings.default_tax_rate,
    )
    offline = not _store_transaction(context, transaction)
    _invalidate_cache(context, RECONCILIATION_BUCKET)
    log.info(
        "Recorded %s '%s' for '%s' (quantity=%s g, rate=%s, offline=%s)",
        transaction.kind,
        transaction.transaction_id,
        transaction.party_name,
        transaction.quantity_grams,
        transaction.rate_per_gram,
        offline,
    )
    return RecordOutcome(transaction=transaction, offline=offline)


def sync_unsynced(context: RuntimeContext) -> int:
    """Upload cached transactions that the remote ledger does not have yet.

    Returns:
        int: Number of rows written to the remote ledger. Zero when nothing is
            pending or the ledger is unreachable.

    Raises:
        data_manager.LedgerUnavailableError: If the ledger becomes unreachable
            between the reconciliation and the write.
    """
    result = run_reconciliation(context)
    if result.degraded:
        log.warning("Skipping sync: remote ledger unavailable")
        return 0
    if not result.needs_sync:
        log.info("Nothing to sync")
        return 0

    pending_ids = set(result.unsynced_ids)
    pending = [row for row in result.transactions if row.transaction_id in pending_ids]
    workbook = data_manager.open_remote_ledger(context.settings.ledger_file)
    appended = data_manager.upsert_transactions(workbook, pending)
    data_manager.save_workbook(workbook, context.settings.ledger_file)
    _invalidate_cache(context, RECONCILIATION_BUCKET)
    log.info("Synced %d cached transactions to the remote ledger", appended)
    return appended
