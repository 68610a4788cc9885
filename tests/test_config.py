"""Tests for YAML configuration loading."""
from pathlib import Path

import pytest
from pydantic import ValidationError

from chronos_rag.config import AppConfig, load_config


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config == AppConfig()
        assert config.search.match_count == 5
        assert config.cache.ttl_seconds == 300

    def test_partial_file_overrides_sections(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "search:\n  match_count: 8\n  max_per_source: 2\n"
            "cache:\n  backend: redis\n"
            "context:\n  format: xml\n",
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.search.match_count == 8
        assert config.search.similarity_threshold == 0.7
        assert config.cache.backend == "redis"
        assert config.context.format == "xml"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")

        assert load_config(path) == AppConfig()

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("search:\n  similarity_threshold: 1.5\n", encoding="utf-8")

        with pytest.raises(ValidationError):
            load_config(path)

    def test_shipped_config_loads(self):
        config = load_config(Path(__file__).resolve().parent.parent / "config" / "config.yaml")
        assert config.generation.model.startswith("claude-")


class TestConversions:
    def test_search_options(self):
        config = AppConfig(search={"match_count": 3, "max_per_source": 1}, cache={"ttl_seconds": 60})

        options = config.to_search_options(source_ids=["vid-a"])

        assert options.match_count == 3
        assert options.max_per_source == 1
        assert options.cache_ttl_seconds == 60
        assert options.source_ids == ["vid-a"]

    def test_cache_toggle_flows_into_options(self):
        assert AppConfig(cache={"enabled": False}).to_search_options().enable_cache is False

    def test_context_options(self):
        options = AppConfig(context={"max_tokens": 4000, "format": "plain"}).to_context_options()

        assert options.max_tokens == 4000
        assert options.format == "plain"

    def test_redis_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
        assert AppConfig().redis_url == "redis://cache:6380/2"

    def test_ranking_weights_flow_into_options(self):
        config = AppConfig(ranking={"similarity_weight": 1.0, "recency_weight": 0.0})

        ranking = config.to_search_options().to_ranking_options()

        assert ranking.similarity_weight == 1.0
        assert ranking.recency_weight == 0.0
        assert ranking.popularity_weight == 0.15
