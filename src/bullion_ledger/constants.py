"""Enumerations and shared constants for the bullion ledger.

Keeps the identifiers that the data access layer (DAL), the business logic
layer (BLL), and the CLI agree on in one place: transaction kinds, the
workbook layout, and the numeric tolerance used by the FIFO replay.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Quantities at or below this many grams are treated as zero during replay.
DEFAULT_EPSILON = Decimal("0.0001")

# Currency amounts are stored to the paisa.
MONEY_QUANTUM = Decimal("0.01")


class TransactionKind(str, Enum):
    """Enumerate the two kinds of ledger entries."""

    PURCHASE = "PURCHASE"
    SALE = "SALE"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    TRANSACTIONS = "Transactions"


TRANSACTION_COLUMNS: tuple[str, ...] = (
    "TransactionID",
    "Date",
    "CreatedAt",
    "Kind",
    "PartyName",
    "QuantityGrams",
    "RatePerGram",
    "TaxRate",
    "TaxAmount",
    "TaxableAmount",
    "TotalAmount",
)


# Audit trail templates written into a sale's consumption log.
CONSUMED_NOTE = "Consumed {quantity:.4f}g from lot {lot_id} opened {opened} @ {unit_cost:.2f}/g"
STOCKOUT_MARKER = "STOCKOUT"
STOCKOUT_NOTE = STOCKOUT_MARKER + ": {unmet:.4f}g could not be matched to any open lot"
AMBIGUOUS_ORDER_NOTE = (
    "AMBIGUOUS ORDER: no creation timestamp, position on {day} decided by id '{transaction_id}'"
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DEFAULT_EPSILON",
    "MONEY_QUANTUM",
    "TransactionKind",
    "SheetName",
    "TRANSACTION_COLUMNS",
    "CONSUMED_NOTE",
    "STOCKOUT_MARKER",
    "STOCKOUT_NOTE",
    "AMBIGUOUS_ORDER_NOTE",
]
