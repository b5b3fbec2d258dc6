"""Vault accounting and yield distribution engine."""

from typing import NoReturn

__version__ = "0.1.0"


def _entry_point() -> NoReturn:
    """Entry point for the vault-accounting script."""
    import sys

    from vault_accounting.cli import main

    raise SystemExit(main(sys.argv[1:]))


def _clear_store_entry_point() -> NoReturn:
    """Entry point for clearing the store."""
    from vault_accounting.storage import clear_store

    clear_store()
    raise SystemExit(0)
