"""
Centralised configuration loader for the planner.

Loads values from config/rules.yaml once, then exposes them through simple
accessor functions so that no module needs to hard-code magic numbers or
duplicate YAML-loading logic.

Usage:
    from mandala.utils.config import get_persistence_config, get_categories

Single source of truth: if you need a retry count, poll interval, or a
category colour, add it to rules.yaml and expose it here.
"""

import logging
from typing import Any, Dict, List, Optional

import yaml

from mandala.utils.paths import config_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal cache
# ---------------------------------------------------------------------------
_rules_cache: Optional[Dict[str, Any]] = None


def _load_yaml(filename: str) -> Dict[str, Any]:
    """Load a YAML file from config/ and return as dict (empty on failure)."""
    path = config_path(filename)
    try:
        with open(path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.debug("Could not load %s: %s", path, e)
        return {}


def _rules() -> Dict[str, Any]:
    """Return cached rules.yaml contents."""
    global _rules_cache
    if _rules_cache is None:
        _rules_cache = _load_yaml("rules.yaml")
    return _rules_cache


def reload() -> None:
    """Force re-read of the config file (useful after editing YAML)."""
    global _rules_cache
    _rules_cache = None


def _section(name: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
    section = _rules().get(name, {}) or {}
    merged = dict(defaults)
    merged.update({k: v for k, v in section.items() if v is not None})
    return merged


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------

# Colours match the original eight sub-goal categories (center grid has none).
DEFAULT_CATEGORIES: List[Dict[str, Any]] = [
    {"id": "cat-0", "name": "Goal 1", "color": "#ef4444", "grid_index": 0},
    {"id": "cat-1", "name": "Goal 2", "color": "#f97316", "grid_index": 1},
    {"id": "cat-2", "name": "Goal 3", "color": "#eab308", "grid_index": 2},
    {"id": "cat-3", "name": "Goal 4", "color": "#22c55e", "grid_index": 3},
    {"id": "cat-5", "name": "Goal 5", "color": "#14b8a6", "grid_index": 5},
    {"id": "cat-6", "name": "Goal 6", "color": "#3b82f6", "grid_index": 6},
    {"id": "cat-7", "name": "Goal 7", "color": "#8b5cf6", "grid_index": 7},
    {"id": "cat-8", "name": "Goal 8", "color": "#ec4899", "grid_index": 8},
]

_PLAN_DEFAULTS: Dict[str, Any] = {
    "fallback_color": "#6b7280",
}


def get_plan_config() -> Dict[str, Any]:
    """Return the ``plan`` section of rules.yaml with defaults."""
    return _section("plan", _PLAN_DEFAULTS)


def get_categories() -> List[Dict[str, Any]]:
    """Return category dicts from ``plan.categories`` (defaults if absent).

    Validation happens in :func:`mandala.core.entity_store.create_plan`; this
    only hands back what the file says.
    """
    cats = (_rules().get("plan", {}) or {}).get("categories")
    if not cats:
        return [dict(c) for c in DEFAULT_CATEGORIES]
    return [dict(c) for c in cats]


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

_PERSISTENCE_DEFAULTS: Dict[str, Any] = {
    "data_subdir": "planner",
    "max_retries": 2,
    "initial_delay": 0.5,
    "backoff_factor": 2.0,
    "max_delay": 10.0,
    "failure_threshold": 5,
    "recovery_timeout": 60,
}


def get_persistence_config() -> Dict[str, Any]:
    """Return the ``persistence`` section of rules.yaml with defaults."""
    return _section("persistence", _PERSISTENCE_DEFAULTS)


# ---------------------------------------------------------------------------
# Schedule notifications
# ---------------------------------------------------------------------------

_NOTIFICATION_DEFAULTS: Dict[str, Any] = {
    "poll_interval_seconds": 30,
    "snooze_minutes": 5,
    "match_window_minutes": 1,
}


def get_notification_config() -> Dict[str, Any]:
    """Return the ``notifications`` section of rules.yaml with defaults."""
    merged = _section("notifications", _NOTIFICATION_DEFAULTS)
    merged["poll_interval_seconds"] = float(merged["poll_interval_seconds"])
    merged["snooze_minutes"] = int(merged["snooze_minutes"])
    merged["match_window_minutes"] = int(merged["match_window_minutes"])
    return merged


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_LOGGING_DEFAULTS: Dict[str, Any] = {
    "level": "INFO",
    "action_log": True,
}


def get_logging_config() -> Dict[str, Any]:
    """Return the ``logging`` section of rules.yaml with defaults."""
    return _section("logging", _LOGGING_DEFAULTS)
