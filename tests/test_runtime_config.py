"""Tests for mdrun.config.runtime_config (YAML registry with env overrides)."""

from pathlib import Path

import pytest

from mdrun.config import runtime_config
from mdrun.config.runtime_config import (
    KILL_GRACE_MS,
    get_capture_strategy,
    get_inline_limit_lines,
    get_retention_limits,
    get_results_base_dir,
    get_shell_path,
    get_timeout_ms,
    load_mdrun_config,
    reload_config,
)
from mdrun.runtime.types import CaptureStrategy


class TestDefaults:
    def test_packaged_defaults(self):
        config = load_mdrun_config()
        assert config.execution.shell == "/bin/sh"
        assert config.execution.timeout_ms == 30000
        assert config.execution.kill_grace_ms == KILL_GRACE_MS == 500
        assert config.execution.capture_strategy == CaptureStrategy.HYBRID
        assert config.results.inline_limit_lines == 100
        assert config.results.base_dir is None
        assert config.results.pretty is True
        assert config.results.lock_timeout_ms == 2000
        assert config.results.retention.max_days is None
        assert config.results.retention.max_entries is None

    def test_missing_packaged_file_falls_back(self, monkeypatch, tmp_path: Path):
        monkeypatch.setattr(runtime_config, "_CONFIG_PATH", tmp_path / "absent.yaml")
        reload_config()
        assert get_timeout_ms() == 30000


class TestEnvironmentOverrides:
    def test_env_wins(self, monkeypatch):
        monkeypatch.setenv("MDRUN_SHELL", "/bin/bash")
        monkeypatch.setenv("MDRUN_TIMEOUT_MS", "1234")
        monkeypatch.setenv("MDRUN_CAPTURE_STRATEGY", "PARSE")
        monkeypatch.setenv("MDRUN_INLINE_LIMIT_LINES", "7")
        monkeypatch.setenv("MDRUN_RESULTS_DIR", "/var/results")
        assert get_shell_path() == "/bin/bash"
        assert get_timeout_ms() == 1234
        assert get_capture_strategy() == CaptureStrategy.PARSE
        assert get_inline_limit_lines() == 7
        assert get_results_base_dir() == "/var/results"

    def test_retention_env(self, monkeypatch):
        monkeypatch.setenv("MDRUN_RETENTION_MAX_DAYS", "14")
        monkeypatch.setenv("MDRUN_RETENTION_MAX_ENTRIES", "0")
        assert get_retention_limits() == {"max_days": 14, "max_entries": None}

    def test_non_integer_env_ignored(self, monkeypatch, caplog):
        monkeypatch.setenv("MDRUN_TIMEOUT_MS", "soon")
        assert get_timeout_ms() == 30000
        assert "non-integer" in caplog.text


class TestValidation:
    def test_timeout_clamped(self, monkeypatch, caplog):
        monkeypatch.setenv("MDRUN_TIMEOUT_MS", "5")
        assert get_timeout_ms() == runtime_config.TIMEOUT_MIN_MS
        assert "Clamping" in caplog.text

    def test_negative_inline_limit_clamped(self, monkeypatch):
        monkeypatch.setenv("MDRUN_INLINE_LIMIT_LINES", "-3")
        assert get_inline_limit_lines() == 0

    def test_invalid_strategy_falls_back(self, monkeypatch, caplog):
        monkeypatch.setenv("MDRUN_CAPTURE_STRATEGY", "telepathy")
        assert get_capture_strategy() == CaptureStrategy.HYBRID
        assert "Falling back" in caplog.text


class TestUserConfigFile:
    def test_user_file_merges_over_packaged(self, monkeypatch, tmp_path: Path):
        user = tmp_path / "mdrun.yaml"
        user.write_text(
            "execution:\n  timeout_ms: 4500\nresults:\n  retention:\n    max_entries: 20\n"
        )
        monkeypatch.setenv("MDRUN_CONFIG", str(user))
        reload_config()
        config = load_mdrun_config()
        assert config.execution.timeout_ms == 4500
        assert config.execution.shell == "/bin/sh"
        assert config.results.retention.max_entries == 20

    def test_env_beats_user_file(self, monkeypatch, tmp_path: Path):
        user = tmp_path / "mdrun.yaml"
        user.write_text("execution:\n  timeout_ms: 4500\n")
        monkeypatch.setenv("MDRUN_CONFIG", str(user))
        monkeypatch.setenv("MDRUN_TIMEOUT_MS", "999")
        reload_config()
        assert get_timeout_ms() == 999

    @pytest.mark.parametrize("content", ["{ not: [valid", "- just\n- a list\n"])
    def test_bad_user_file_is_ignored(self, monkeypatch, tmp_path: Path, content, caplog):
        user = tmp_path / "mdrun.yaml"
        user.write_text(content)
        monkeypatch.setenv("MDRUN_CONFIG", str(user))
        reload_config()
        assert get_timeout_ms() == 30000
        assert str(user) in caplog.text

    def test_missing_user_file_warns(self, monkeypatch, tmp_path: Path, caplog):
        monkeypatch.setenv("MDRUN_CONFIG", str(tmp_path / "nope.yaml"))
        reload_config()
        assert get_timeout_ms() == 30000
        assert "missing file" in caplog.text

    def test_cache_until_reload(self, monkeypatch, tmp_path: Path):
        user = tmp_path / "mdrun.yaml"
        user.write_text("execution:\n  timeout_ms: 4500\n")
        monkeypatch.setenv("MDRUN_CONFIG", str(user))
        reload_config()
        user.write_text("execution:\n  timeout_ms: 6000\n")
        assert get_timeout_ms() == 4500
        reload_config()
        assert get_timeout_ms() == 6000
