"""Shared pyproject.toml utilities.

Finding and loading pyproject.toml lives here so config.py and
logging.py read the `[tool.warded]` table the same way.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

# Python 3.11+ has tomllib in stdlib; use tomli for 3.10
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


def find_pyproject(start: Path | None = None) -> Path | None:
    """Search for pyproject.toml from `start` (default: cwd) upward."""
    origin = start or Path.cwd()
    for parent in [origin, *origin.parents]:
        candidate = parent / "pyproject.toml"
        if candidate.exists():
            return candidate
    return None


def load_pyproject(path: Path | str | None = None) -> dict[str, Any] | None:
    """Load and parse pyproject.toml.

    Args:
        path: Explicit file to read. If None, searches from cwd upward.

    Returns:
        Parsed TOML data, or None if the file is missing or malformed.
    """
    resolved = Path(path) if path is not None else find_pyproject()
    if resolved is None:
        return None

    try:
        with open(resolved, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError):
        return None


def get_warded_config(path: Path | str | None = None) -> dict[str, Any]:
    """Get the [tool.warded] section from pyproject.toml, or an empty dict."""
    data = load_pyproject(path)
    if data is None:
        return {}
    return data.get("tool", {}).get("warded", {})
