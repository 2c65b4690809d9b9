"""Tests for configuration loading and environment overrides."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pathlib import Path

from prloop.config import (
    CONFIG_FILENAME,
    Config,
    WaitConfig,
    get_config,
    load_config,
    set_config,
)


class TestConfigModels:
    def test_defaults(self):
        config = Config()
        assert config.checks.include == []
        assert config.checks.exclude == []
        assert config.wait.timeout == 1800
        assert config.wait.poll_interval == 5
        assert config.wait.min_wait_after_push == 30
        assert config.cleanup.max_concurrent == 10
        assert config.circleci.token is None

    def test_unknown_keys_are_ignored(self):
        config = Config.model_validate({"checks": {"include": ["ci/*"], "colour": "blue"}, "extra": 1})
        assert config.checks.include == ["ci/*"]

    def test_poll_interval_must_be_positive(self):
        with pytest.raises(ValueError, match="poll_interval"):
            WaitConfig(poll_interval=0)


class TestLoadConfig:
    def test_no_file_uses_defaults(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        config, path = load_config(tmp_path, environ={})
        assert path is None
        assert config == Config()

    def test_reads_toml(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text(
            '[checks]\nexclude = ["optional/*"]\n\n[wait]\ntimeout = 600\npoll_interval = 10\n',
            encoding="utf-8",
        )
        config, path = load_config(tmp_path, environ={})
        assert path == (tmp_path / CONFIG_FILENAME).resolve()
        assert config.checks.exclude == ["optional/*"]
        assert config.wait.timeout == 600
        assert config.wait.poll_interval == 10
        assert config.wait.min_wait_after_push == 30

    def test_walks_up_to_git_root(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        (tmp_path / CONFIG_FILENAME).write_text("[cleanup]\nmax_concurrent = 3\n", encoding="utf-8")
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)

        config, path = load_config(nested, environ={})

        assert path == (tmp_path / CONFIG_FILENAME).resolve()
        assert config.cleanup.max_concurrent == 3

    def test_stops_at_git_root(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("[cleanup]\nmax_concurrent = 3\n", encoding="utf-8")
        project = tmp_path / "project"
        (project / ".git").mkdir(parents=True)

        config, path = load_config(project, environ={})

        assert path is None
        assert config.cleanup.max_concurrent == 10

    def test_invalid_toml(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("[checks\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid TOML"):
            load_config(tmp_path, environ={})

    def test_invalid_value(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text("[wait]\ntimeout = -1\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid config in"):
            load_config(tmp_path, environ={})


class TestEnvOverrides:
    def test_check_patterns_from_env(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        environ = {"PR_LOOP_INCLUDE_CHECKS": "ci/*, lint ,", "PR_LOOP_EXCLUDE_CHECKS": "ci/optional"}

        config, _ = load_config(tmp_path, environ=environ)

        assert config.checks.include == ["ci/*", "lint"]
        assert config.checks.exclude == ["ci/optional"]

    def test_env_beats_file(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text('[checks]\ninclude = ["from-file"]\n', encoding="utf-8")
        config, _ = load_config(tmp_path, environ={"PR_LOOP_INCLUDE_CHECKS": "from-env"})
        assert config.checks.include == ["from-env"]

    def test_empty_env_clears_file_patterns(self, tmp_path: Path):
        (tmp_path / CONFIG_FILENAME).write_text('[checks]\nexclude = ["x"]\n', encoding="utf-8")
        config, _ = load_config(tmp_path, environ={"PR_LOOP_EXCLUDE_CHECKS": ""})
        assert config.checks.exclude == []

    def test_circleci_token(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        config, _ = load_config(tmp_path, environ={"CIRCLECI_TOKEN": "abc123"})
        assert config.circleci.token == "abc123"

    def test_blank_token_is_ignored(self, tmp_path: Path):
        (tmp_path / ".git").mkdir()
        config, _ = load_config(tmp_path, environ={"CIRCLECI_TOKEN": ""})
        assert config.circleci.token is None


class TestActiveConfig:
    def test_set_and_get(self):
        config = Config.model_validate({"wait": {"timeout": 5}})
        set_config(config)

        assert get_config() is config

    def test_reset_by_fixture(self):
        assert get_config() == Config()
