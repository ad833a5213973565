"""Rentals app package bootstrap."""

from __future__ import annotations

import sys
from pathlib import Path

__all__: list[str] = []


def _ensure_shared_lib_on_path() -> None:
    """Add libs/rentals_shared to sys.path for app and tests.

    Keeps imports stable when running tests or scripts directly from the app
    directory without relying on external PYTHONPATH configuration.
    """
    try:
        root = Path(__file__).resolve().parents[3]
    except IndexError:
        return
    target = root / "libs" / "rentals_shared"
    if not (target / "rentals_shared" / "__init__.py").exists():
        return
    path_str = str(target)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)


_ensure_shared_lib_on_path()
