"""
Module entrypoint for the qbrestore CLI.

This file exists so that `python -m qbrestore ...` works when the
console-script wrapper is not installed.
"""

from __future__ import annotations

from qbrestore.cli import main


def _run() -> None:
    """
    Execute the qbrestore command line interface.

    Raises
    ------
    SystemExit
        Always, carrying the CLI exit code.
    """
    raise SystemExit(main())


if __name__ == "__main__":
    _run()
