"""
Centralised path helpers for the planner.

Single source of truth for:

* ``base_path()``  - project root (directory containing ``config/``).
* ``config_path()`` - a file under ``config/``.
* ``data_dir()``   - ``data/`` directory (created lazily).
* ``logs_dir()``   - ``logs/`` directory (created lazily).
"""

import os
from pathlib import Path
from typing import Optional

# ---------------------------------------------------------------------------
# Project root
# ---------------------------------------------------------------------------

_cached_base: Optional[str] = None


def base_path() -> str:
    """Return the project root (directory containing ``config/``).

    Resolution order:
    1. ``MANDALA_ROOT`` environment variable (normalised).
    2. Walk up from *this* file (up to 6 levels) looking for ``config/``.
    3. Current working directory as last resort.

    The result is cached after the first call.
    """
    global _cached_base
    if _cached_base is not None:
        return _cached_base

    env = os.environ.get("MANDALA_ROOT")
    if env:
        _cached_base = os.path.normpath(env)
        return _cached_base

    cur = Path(__file__).resolve().parent
    for _ in range(6):
        if (cur / "config").is_dir():
            _cached_base = str(cur)
            return _cached_base
        cur = cur.parent

    _cached_base = os.getcwd()
    return _cached_base


def base_path_as_path() -> Path:
    """Same as :func:`base_path` but returns a :class:`pathlib.Path`."""
    return Path(base_path())


def reset_cache() -> None:
    """Forget the cached root (tests switch ``MANDALA_ROOT`` between cases)."""
    global _cached_base
    _cached_base = None


# ---------------------------------------------------------------------------
# Common paths
# ---------------------------------------------------------------------------

def config_path(filename: str) -> str:
    """Return path to ``config/<filename>``."""
    return os.path.join(base_path(), "config", filename)


def data_dir(subdir: str = "") -> str:
    """Return (and ensure existence of) ``data/<subdir>``."""
    d = os.path.join(base_path(), "data", subdir) if subdir else os.path.join(base_path(), "data")
    os.makedirs(d, exist_ok=True)
    return d


def logs_dir() -> str:
    """Return (and ensure existence of) ``logs/``."""
    d = os.path.join(base_path(), "logs")
    os.makedirs(d, exist_ok=True)
    return d
