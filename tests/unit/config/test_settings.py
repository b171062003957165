"""Tests for engine configuration loading and validation."""

import pytest
import yaml

from hybrid_code_search.config.defaults import (
    DEFAULT_BM25_B,
    DEFAULT_BM25_K1,
    DEFAULT_LEXICAL_WEIGHT,
    DEFAULT_VECTOR_WEIGHT,
    ENV_EMBEDDING_MODEL,
    ENV_MAX_CONCURRENT,
    get_default_config_path,
    get_default_index_path,
)
from hybrid_code_search.config.settings import (
    BM25Settings,
    FusionSettings,
    SearchConfig,
)
from hybrid_code_search.core.exceptions import ConfigError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.delenv(ENV_EMBEDDING_MODEL, raising=False)
    monkeypatch.delenv(ENV_MAX_CONCURRENT, raising=False)


class TestDefaults:
    def test_default_values(self):
        config = SearchConfig()
        assert config.bm25.k1 == DEFAULT_BM25_K1
        assert config.bm25.b == DEFAULT_BM25_B
        assert config.fusion.lexical_weight == DEFAULT_LEXICAL_WEIGHT
        assert config.fusion.vector_weight == DEFAULT_VECTOR_WEIGHT
        assert config.fusion.strategy == "weighted"
        assert config.default_limit == 10

    def test_default_paths(self, tmp_path):
        assert get_default_index_path(tmp_path).parent == get_default_config_path(
            tmp_path
        ).parent
        assert get_default_index_path(tmp_path).is_relative_to(tmp_path)


class TestValidation:
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"bm25": BM25Settings(k1=-1.0)},
            {"bm25": BM25Settings(b=1.5)},
            {"bm25": BM25Settings(min_token_length=0)},
            {"fusion": FusionSettings(strategy="max")},
            {"fusion": FusionSettings(lexical_weight=-0.1)},
            {"fusion": FusionSettings(lexical_weight=0.0, vector_weight=0.0)},
            {"fusion": FusionSettings(rrf_k=0)},
            {"default_limit": 0},
            {"over_fetch_factor": 0},
        ],
    )
    def test_out_of_range_values_rejected(self, kwargs):
        with pytest.raises(ConfigError):
            SearchConfig(**kwargs)

    def test_rrf_strategy_accepted(self):
        config = SearchConfig(fusion=FusionSettings(strategy="rrf"))
        assert config.fusion.strategy == "rrf"


class TestFromDict:
    def test_partial_sections(self):
        config = SearchConfig.from_dict({"bm25": {"k1": 2.0}, "default_limit": 5})
        assert config.bm25.k1 == 2.0
        assert config.bm25.b == DEFAULT_BM25_B
        assert config.default_limit == 5

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError):
            SearchConfig.from_dict({"bm25": {"k3": 1.0}})

    def test_invalid_value_rejected(self):
        with pytest.raises(ConfigError):
            SearchConfig.from_dict({"fusion": {"strategy": "nope"}})


class TestYamlFile:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = SearchConfig.load(tmp_path / "missing.yaml")
        assert config.to_dict() == SearchConfig().to_dict()

    def test_save_then_load(self, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        config = SearchConfig(fusion=FusionSettings(strategy="rrf", rrf_k=30))
        config.save(path)

        loaded = SearchConfig.load(path)

        assert loaded.fusion.strategy == "rrf"
        assert loaded.fusion.rrf_k == 30
        assert loaded.to_dict() == config.to_dict()

    def test_hand_written_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump({"fusion": {"lexical_weight": 0.7, "vector_weight": 0.3}})
        )
        config = SearchConfig.load(path)
        assert config.fusion.lexical_weight == 0.7

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert SearchConfig.load(path).default_limit == 10

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("bm25: [unclosed")
        with pytest.raises(ConfigError):
            SearchConfig.load(path)

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            SearchConfig.load(path)


class TestEnvironmentOverrides:
    def test_model_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_EMBEDDING_MODEL, "custom/model")
        config = SearchConfig.load(tmp_path / "missing.yaml")
        assert config.embedding.model_name == "custom/model"

    def test_max_concurrent_override(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_MAX_CONCURRENT, "7")
        config = SearchConfig.load(tmp_path / "missing.yaml")
        assert config.embedding.max_concurrent_batches == 7

    def test_invalid_max_concurrent_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ENV_MAX_CONCURRENT, "lots")
        config = SearchConfig.load(tmp_path / "missing.yaml")
        assert config.embedding.max_concurrent_batches == 4
