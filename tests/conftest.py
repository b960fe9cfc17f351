"""Shared pytest fixtures and utilities for bullion ledger tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from bullion_ledger import cli, constants, core_logic, data_manager  # noqa: E402
from bullion_ledger.setup_excel import create_ledger_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
_CONFIG_TEMPLATE = (
    "[System]\n"
    "LedgerFile = {ledger_file}\n"
    "CacheFile = {cache_file}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Engine]\n"
    "Epsilon = {epsilon}\n"
    "LockDate = {lock_date}\n\n"
    "[Defaults]\n"
    "TaxRate = {tax_rate}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    ledger_path: Path
    cache_path: Path


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def make_transaction() -> Callable[..., data_manager.TransactionRow]:
    """Factory building transaction rows from compact literals.

    Quantities and rates are given as strings so the tests read like the
    ledger they describe, e.g. ``make_transaction("P1", "PURCHASE",
    "2024-01-01", "100", "5000")``.
    """

    def _make(
        transaction_id: Optional[str],
        kind: str,
        day: Optional[str],
        quantity: Optional[str],
        rate: Optional[str],
        *,
        created_at: Optional[str] = None,
        taxable: Optional[str] = None,
        party: str = "Party",
    ) -> data_manager.TransactionRow:
        return data_manager.TransactionRow(
            transaction_id=transaction_id,
            business_date=date.fromisoformat(day) if day else None,
            created_at=datetime.fromisoformat(created_at).replace(tzinfo=UTC) if created_at else None,
            kind=kind,
            party_name=party,
            quantity_grams=Decimal(quantity) if quantity is not None else None,
            rate_per_gram=Decimal(rate) if rate is not None else None,
            taxable_amount=Decimal(taxable) if taxable is not None else None,
        )

    return _make


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/ledger bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        create_ledger: bool = True,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        epsilon: str = "0.0001",
        lock_date: str = "",
        tax_rate: str = "3",
    ) -> ConfigBundle:
        bundle_dir = tmp_path / f"bundle_{uuid.uuid4().hex}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        ledger_path = bundle_dir / "ledger.xlsx"
        cache_path = bundle_dir / "offline_cache.xlsx"
        if create_ledger:
            create_ledger_workbook(ledger_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                ledger_file=ledger_path.name if make_relative else ledger_path,
                cache_file=cache_path.name if make_relative else cache_path,
                schema_version=schema_version,
                epsilon=epsilon,
                lock_date=lock_date,
                tax_rate=tax_rate,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            ledger_path=ledger_path.resolve(),
            cache_path=cache_path.resolve(),
        )

    return _create_config


@pytest.fixture
def config_bundle(config_factory: Callable[..., ConfigBundle]) -> ConfigBundle:
    """A config with an empty ledger workbook and no offline cache."""

    return config_factory()


@pytest.fixture
def runtime_context(config_bundle: ConfigBundle) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_bundle.config_path)
    core_logic.ensure_schema_version(context)
    return context


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for business logic tests."""

    return data_manager.ConfigSettings(
        ledger_file=tmp_path / "ledger.xlsx",
        cache_file=tmp_path / "offline_cache.xlsx",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings."""

    return core_logic.RuntimeContext(settings=settings)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="bullion-cli", description="Bullion CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]
