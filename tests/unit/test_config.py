"""
Unit tests for config loading (rules.yaml + defaults) and path helpers.
"""

import os
import sys
from pathlib import Path

_root = Path(__file__).resolve().parent.parent.parent
if str(_root) not in sys.path:
    sys.path.insert(0, str(_root))

import pytest
from mandala.utils import config, paths


@pytest.fixture
def root(tmp_path, monkeypatch):
    """Point MANDALA_ROOT at an empty project dir with a config/ folder."""
    (tmp_path / "config").mkdir()
    monkeypatch.setenv("MANDALA_ROOT", str(tmp_path))
    paths.reset_cache()
    config.reload()
    yield tmp_path
    monkeypatch.delenv("MANDALA_ROOT", raising=False)
    paths.reset_cache()
    config.reload()


def _write_rules(root, text):
    (root / "config" / "rules.yaml").write_text(text, encoding="utf-8")
    config.reload()


class TestDefaults:

    def test_missing_file_gives_defaults(self, root):
        assert config.get_persistence_config()["max_retries"] == 2
        assert config.get_notification_config()["snooze_minutes"] == 5
        assert config.get_logging_config()["action_log"] is True
        assert config.get_plan_config()["fallback_color"] == "#6b7280"
        assert config.get_categories() == config.DEFAULT_CATEGORIES

    def test_categories_are_copies(self, root):
        config.get_categories()[0]["color"] = "#000000"
        assert config.get_categories()[0]["color"] == "#ef4444"

    def test_malformed_yaml_gives_defaults(self, root):
        _write_rules(root, "persistence: [unclosed\n")
        assert config.get_persistence_config()["failure_threshold"] == 5


class TestOverrides:

    def test_section_values_override(self, root):
        _write_rules(root, "persistence:\n  max_retries: 7\n  data_subdir: elsewhere\n")
        cfg = config.get_persistence_config()
        assert cfg["max_retries"] == 7
        assert cfg["data_subdir"] == "elsewhere"
        assert cfg["backoff_factor"] == 2.0

    def test_null_values_keep_default(self, root):
        _write_rules(root, "notifications:\n  snooze_minutes: null\n")
        assert config.get_notification_config()["snooze_minutes"] == 5

    def test_notification_values_are_cast(self, root):
        _write_rules(root, "notifications:\n  poll_interval_seconds: '10'\n  match_window_minutes: '2'\n")
        cfg = config.get_notification_config()
        assert cfg["poll_interval_seconds"] == 10.0
        assert cfg["match_window_minutes"] == 2

    def test_custom_categories(self, root):
        _write_rules(
            root,
            "plan:\n  categories:\n"
            + "".join(
                f"    - {{id: c{i}, name: N{i}, color: '#00000{i}', grid_index: {i}}}\n"
                for i in (0, 1, 2, 3, 5, 6, 7, 8)
            ),
        )
        cats = config.get_categories()
        assert len(cats) == 8
        assert cats[4]["grid_index"] == 5

    def test_reload_picks_up_edits(self, root):
        _write_rules(root, "logging:\n  level: DEBUG\n")
        assert config.get_logging_config()["level"] == "DEBUG"
        (root / "config" / "rules.yaml").write_text("logging:\n  level: ERROR\n", encoding="utf-8")
        assert config.get_logging_config()["level"] == "DEBUG"
        config.reload()
        assert config.get_logging_config()["level"] == "ERROR"


class TestPaths:

    def test_env_root(self, root):
        assert paths.base_path() == os.path.normpath(str(root))
        assert paths.base_path_as_path() == Path(os.path.normpath(str(root)))
        assert paths.config_path("rules.yaml") == os.path.join(paths.base_path(), "config", "rules.yaml")

    def test_dirs_created_lazily(self, root):
        d = paths.data_dir("planner")
        assert os.path.isdir(d)
        assert d.endswith(os.path.join("data", "planner"))
        assert os.path.isdir(paths.logs_dir())

    def test_repo_root_found_without_env(self, monkeypatch):
        monkeypatch.delenv("MANDALA_ROOT", raising=False)
        paths.reset_cache()
        try:
            assert (Path(paths.base_path()) / "config").is_dir()
        finally:
            paths.reset_cache()
