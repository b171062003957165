"""Search engine configuration."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from ..core.exceptions import ConfigError
from .defaults import (
    DEFAULT_AUXILIARY_WEIGHT,
    DEFAULT_BM25_B,
    DEFAULT_BM25_K1,
    DEFAULT_EMBEDDING_BATCH_SIZE,
    DEFAULT_EMBEDDING_MAX_ATTEMPTS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_RETRY_DELAY,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_LEXICAL_WEIGHT,
    DEFAULT_LIMIT,
    DEFAULT_MAX_CONCURRENT_BATCHES,
    DEFAULT_MAX_HIGHLIGHTS,
    DEFAULT_MIN_TOKEN_LENGTH,
    DEFAULT_OVER_FETCH_FACTOR,
    DEFAULT_VECTOR_WEIGHT,
    ENV_EMBEDDING_MODEL,
    ENV_MAX_CONCURRENT,
    FUSION_STRATEGIES,
    FUSION_WEIGHTED,
    RRF_K,
)


@dataclass
class BM25Settings:
    """BM25 scoring and tokenization parameters."""

    k1: float = DEFAULT_BM25_K1
    b: float = DEFAULT_BM25_B
    min_token_length: int = DEFAULT_MIN_TOKEN_LENGTH
    auxiliary_weight: float = DEFAULT_AUXILIARY_WEIGHT


@dataclass
class FusionSettings:
    """How lexical and vector result lists are merged."""

    strategy: str = FUSION_WEIGHTED
    lexical_weight: float = DEFAULT_LEXICAL_WEIGHT
    vector_weight: float = DEFAULT_VECTOR_WEIGHT
    rrf_k: int = RRF_K


@dataclass
class EmbeddingSettings:
    """Embedding provider and batching parameters."""

    model_name: str = DEFAULT_EMBEDDING_MODEL
    batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE
    max_concurrent_batches: int = DEFAULT_MAX_CONCURRENT_BATCHES
    max_attempts: int = DEFAULT_EMBEDDING_MAX_ATTEMPTS
    retry_delay: float = DEFAULT_EMBEDDING_RETRY_DELAY
    timeout: float = DEFAULT_EMBEDDING_TIMEOUT


@dataclass
class SearchConfig:
    """Complete engine configuration."""

    bm25: BM25Settings = field(default_factory=BM25Settings)
    fusion: FusionSettings = field(default_factory=FusionSettings)
    embedding: EmbeddingSettings = field(default_factory=EmbeddingSettings)

    # Query settings
    default_limit: int = DEFAULT_LIMIT
    over_fetch_factor: int = DEFAULT_OVER_FETCH_FACTOR
    max_highlights: int = DEFAULT_MAX_HIGHLIGHTS

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If any setting is out of range
        """
        if self.bm25.k1 < 0:
            raise ConfigError(f"bm25.k1 must be >= 0, got {self.bm25.k1}")
        if not 0.0 <= self.bm25.b <= 1.0:
            raise ConfigError(f"bm25.b must be within [0, 1], got {self.bm25.b}")
        if self.bm25.min_token_length < 1:
            raise ConfigError("bm25.min_token_length must be >= 1")
        if self.bm25.auxiliary_weight < 0:
            raise ConfigError("bm25.auxiliary_weight must be >= 0")

        if self.fusion.strategy not in FUSION_STRATEGIES:
            raise ConfigError(
                f"Unknown fusion strategy '{self.fusion.strategy}' "
                f"(expected one of {', '.join(FUSION_STRATEGIES)})"
            )
        if self.fusion.lexical_weight < 0 or self.fusion.vector_weight < 0:
            raise ConfigError("Fusion weights must be non-negative")
        if self.fusion.lexical_weight == 0 and self.fusion.vector_weight == 0:
            raise ConfigError("At least one fusion weight must be positive")
        if self.fusion.rrf_k < 1:
            raise ConfigError("fusion.rrf_k must be >= 1")

        if self.embedding.batch_size < 1:
            raise ConfigError("embedding.batch_size must be >= 1")
        if self.embedding.max_concurrent_batches < 1:
            raise ConfigError("embedding.max_concurrent_batches must be >= 1")
        if self.embedding.max_attempts < 1:
            raise ConfigError("embedding.max_attempts must be >= 1")

        if self.default_limit < 1:
            raise ConfigError("default_limit must be >= 1")
        if self.over_fetch_factor < 1:
            raise ConfigError("over_fetch_factor must be >= 1")
        if self.max_highlights < 0:
            raise ConfigError("max_highlights must be >= 0")

    @classmethod
    def load(cls, path: Path) -> SearchConfig:
        """Load configuration from YAML file.

        Environment overrides are applied on top of the file values.

        Args:
            path: Path to YAML configuration file

        Returns:
            SearchConfig instance (defaults if the file does not exist)
        """
        data: dict[str, Any] = {}
        if path.exists():
            try:
                with open(path) as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigError(f"Configuration root in {path} must be a mapping")

        config = cls.from_dict(data)
        config.apply_env_overrides()
        return config

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SearchConfig:
        """Create config from dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            SearchConfig instance

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        try:
            return cls(
                bm25=BM25Settings(**data.get("bm25", {})),
                fusion=FusionSettings(**data.get("fusion", {})),
                embedding=EmbeddingSettings(**data.get("embedding", {})),
                default_limit=data.get("default_limit", DEFAULT_LIMIT),
                over_fetch_factor=data.get(
                    "over_fetch_factor", DEFAULT_OVER_FETCH_FACTOR
                ),
                max_highlights=data.get("max_highlights", DEFAULT_MAX_HIGHLIGHTS),
            )
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides (highest priority)."""
        env_model = os.environ.get(ENV_EMBEDDING_MODEL)
        if env_model:
            self.embedding.model_name = env_model
            logger.info(f"Using embedding model from environment: {env_model}")

        env_max_concurrent = os.environ.get(ENV_MAX_CONCURRENT)
        if env_max_concurrent:
            try:
                self.embedding.max_concurrent_batches = max(1, int(env_max_concurrent))
            except ValueError:
                logger.warning(
                    f"Invalid {ENV_MAX_CONCURRENT} value: {env_max_concurrent}, "
                    f"keeping {self.embedding.max_concurrent_batches}"
                )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def save(self, path: Path) -> None:
        """Save configuration to YAML file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)
