"""Configuration for hybrid-code-search."""

from .settings import BM25Settings, EmbeddingSettings, FusionSettings, SearchConfig

__all__ = ["BM25Settings", "EmbeddingSettings", "FusionSettings", "SearchConfig"]
