"""Tests for application config loading."""

from pathlib import Path

import pytest

from grading.config.app_config import (
    CONFIG_FILE,
    clear_config_cache,
    get_data_dir,
    get_db_path,
    get_provider_config,
    load_app_config,
)


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    """Run with tmp_path as the project root."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("GRADER_DATA_DIR", raising=False)
    return tmp_path


def _write_config(root: Path, content: str) -> None:
    path = root / CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


class TestDefaults:
    """Built-in defaults when no config file exists."""

    def test_grading_defaults(self, in_tmp):
        config = load_app_config()

        assert config.grading.high_confidence == 0.85
        assert config.grading.semantic_threshold == 0.75
        assert config.grading.cloud_model_simple == "gpt-4o-mini"
        assert config.grading.cloud_model_complex == "gpt-4.1"
        assert config.grading.complexity_simple_threshold == 25.0
        assert config.grading.batch_size == 8

    def test_cache_and_cost_defaults(self, in_tmp):
        config = load_app_config()

        assert config.cache.question_ttl_days == 7
        assert config.cache.skill_ttl_days == 14
        assert config.costs.rates_per_1k["gpt-4o-mini"] == 0.00015
        assert config.costs.cost_per_cloud_question == 0.01

    def test_providers_present(self, in_tmp):
        config = load_app_config()

        assert set(config.providers) == {"lmstudio", "openai", "anthropic"}
        assert get_provider_config("openai").api_key_env == "OPENAI_API_KEY"
        assert get_provider_config("missing") is None


class TestYamlFile:
    """Values read from data/config/grader_config_v1.yaml."""

    def test_overrides_grading_section(self, in_tmp):
        _write_config(
            in_tmp,
            """
grading:
  high_confidence: 0.9
  batch_size: 4
  enable_semantic_grading: false
  unknown_key: ignored
""",
        )

        config = load_app_config()

        assert config.grading.high_confidence == 0.9
        assert config.grading.batch_size == 4
        assert config.grading.enable_semantic_grading is False
        # Untouched values keep their defaults
        assert config.grading.medium_confidence == 0.6

    def test_rates_merge_with_defaults(self, in_tmp):
        _write_config(in_tmp, "costs:\n  rates_per_1k:\n    local-model: 0.0\n")

        config = load_app_config()

        assert config.costs.rates_per_1k["local-model"] == 0.0
        assert config.costs.rates_per_1k["gpt-4.1"] == 0.003

    def test_empty_file_uses_defaults(self, in_tmp):
        _write_config(in_tmp, "")

        config = load_app_config()

        assert config.grading.batch_size == 8
        assert "openai" in config.providers

    def test_config_is_cached(self, in_tmp):
        first = load_app_config()
        _write_config(in_tmp, "grading:\n  batch_size: 2\n")

        assert load_app_config() is first
        assert load_app_config(force_reload=True).grading.batch_size == 2

    def test_clear_cache_reloads(self, in_tmp):
        load_app_config()
        _write_config(in_tmp, "grading:\n  batch_size: 3\n")
        clear_config_cache()

        assert load_app_config().grading.batch_size == 3


class TestPaths:
    """Data directory and database path resolution."""

    def test_data_dir_default(self, in_tmp):
        assert get_data_dir() == Path("data")

    def test_data_dir_env_override(self, in_tmp, monkeypatch):
        monkeypatch.setenv("GRADER_DATA_DIR", str(in_tmp / "custom"))

        assert get_data_dir() == in_tmp / "custom"
        assert get_db_path() == in_tmp / "custom" / "grader.db"

    def test_db_file_from_paths_section(self, in_tmp):
        _write_config(in_tmp, "paths:\n  db_file: other.db\n")

        assert get_db_path(Path("x")) == Path("x") / "other.db"
