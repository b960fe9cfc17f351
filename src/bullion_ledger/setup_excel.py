"""Create the empty remote ledger workbook named in ``config.ini``.

Runs as the ``bullion-setup`` script and is also imported by the tests. Only
the remote ledger is created here. The offline cache workbook appears the
first time an entry has to be stored offline.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from . import data_manager, log


@dataclass(frozen=True)
class SetupSettings:
    ledger_file: Path
    schema_version: str


def load_settings(config_path: Optional[Path] = None) -> SetupSettings:
    """Resolve the ledger location from ``config.ini``.

    Without ``config_path`` the nearest ``config.ini`` above the working
    directory is used, like the CLI does.

    Raises:
        FileNotFoundError: If no configuration file can be found.
        KeyError: If ``[System]`` lacks a required entry.
    """

    located = Path(data_manager.find_config_file(config_path)).expanduser().resolve()
    parser = data_manager.read_config(located)
    settings = data_manager.parse_settings(parser, base_path=located.parent)
    return SetupSettings(ledger_file=settings.ledger_file, schema_version=settings.schema_version)


def create_ledger_workbook(destination: Path, *, overwrite: bool = False) -> Path:
    """Write a ledger with a headed, empty ``Transactions`` sheet to ``destination``.

    Raises:
        FileExistsError: If the file exists and ``overwrite`` is false.
    """

    target = Path(destination).expanduser().resolve()
    if target.exists() and not overwrite:
        raise FileExistsError(f"Ledger workbook already exists: {target}")

    data_manager.save_workbook(data_manager.create_transaction_workbook(), target)
    log.info("Created ledger workbook at '%s'", target)
    return target


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bullion-setup",
        description="Create the empty remote ledger workbook for the Bullion FIFO ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config.ini (defaults to the nearest config.ini).",
    )
    parser.add_argument("--force", action="store_true", help="Replace an existing ledger workbook.")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``bullion-setup``; returns the process exit code."""

    args = parse_args(argv)
    print("--- Bullion Ledger Setup ---")

    try:
        settings = load_settings(args.config)
        print(f"Ledger file: {settings.ledger_file} (schema {settings.schema_version})")
        output_path = create_ledger_workbook(settings.ledger_file, overwrite=args.force)
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Pass --force to replace it. Existing transactions will be lost.")
        return 1
    except (FileNotFoundError, KeyError, ValueError) as exc:
        print(f"\n[ERROR] Invalid configuration: {exc}")
        return 1
    except OSError as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created ledger workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
