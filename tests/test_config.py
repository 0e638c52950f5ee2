"""Tests for configuration loading and the CLI entry point."""
from pathlib import Path

import pytest

from mention_graph.config import MentionGraphConfig
from mention_graph.exceptions import ConfigurationError
from mention_graph.main import parse_args, update_config


class TestConfig:
    """Tests for MentionGraphConfig."""

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MENTION_GRAPH_DATABASE_PATH", str(tmp_path / "x.db"))
        monkeypatch.setenv("MENTION_GRAPH_RESOLVE_TIMEOUT", "1.5")
        monkeypatch.setenv("MENTION_GRAPH_RESOLVER_WORKERS", "2")

        cfg = MentionGraphConfig()
        assert cfg.database_path == tmp_path / "x.db"
        assert cfg.resolve_timeout_seconds == 1.5
        assert cfg.resolver_max_workers == 2

    def test_in_memory_url(self, monkeypatch):
        monkeypatch.setenv("MENTION_GRAPH_IN_MEMORY_DB", "true")
        assert MentionGraphConfig().get_db_url() == "sqlite:///:memory:"

    def test_file_url_creates_parent(self, tmp_path):
        cfg = MentionGraphConfig(base_dir=tmp_path, database_path=Path("db/index.db"))
        assert cfg.get_db_url() == f"sqlite:///{tmp_path / 'db' / 'index.db'}"
        assert (tmp_path / "db").is_dir()

    @pytest.mark.parametrize(
        "field, value",
        [("resolve_timeout_seconds", 0), ("resolver_max_workers", 0), ("max_content_length", 0)],
    )
    def test_invalid_limits_rejected(self, field, value):
        with pytest.raises(ValueError):
            MentionGraphConfig(**{field: value})


class TestCommandLine:
    """Tests for argument parsing in main."""

    def test_update_config(self, test_config, tmp_path):
        args = parse_args(
            ["--database-path", str(tmp_path / "cli.db"), "--resolve-timeout", "2"]
        )
        update_config(args)
        assert test_config.database_path == tmp_path / "cli.db"
        assert test_config.resolve_timeout_seconds == 2.0

    def test_non_positive_timeout_rejected(self, test_config):
        with pytest.raises(ConfigurationError):
            update_config(parse_args(["--resolve-timeout", "0"]))
