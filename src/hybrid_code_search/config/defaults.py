"""Default configurations for hybrid-code-search."""

from pathlib import Path

# BM25 parameters (standard Okapi defaults)
DEFAULT_BM25_K1 = 1.2
DEFAULT_BM25_B = 0.75

# Tokens shorter than this are dropped from documents and queries
DEFAULT_MIN_TOKEN_LENGTH = 2

# Term-frequency weight of signature/docstring/imports/name tokens relative
# to content tokens (content counts 1.0)
DEFAULT_AUXILIARY_WEIGHT = 0.5

# Fusion weights (semantic similarity weighted higher)
DEFAULT_LEXICAL_WEIGHT = 0.4
DEFAULT_VECTOR_WEIGHT = 0.6

# Fusion strategies
FUSION_WEIGHTED = "weighted"
FUSION_RRF = "rrf"
FUSION_STRATEGIES = (FUSION_WEIGHTED, FUSION_RRF)

# Reciprocal Rank Fusion (RRF) smoothing constant
# Default k=60 is standard in literature for balancing vector and keyword search ranks
RRF_K = 60

# Query defaults
DEFAULT_LIMIT = 10
DEFAULT_OVER_FETCH_FACTOR = 5
DEFAULT_MAX_HIGHLIGHTS = 3

# Embedding defaults
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_BATCH_SIZE = 32
DEFAULT_MAX_CONCURRENT_BATCHES = 4
DEFAULT_EMBEDDING_MAX_ATTEMPTS = 3
DEFAULT_EMBEDDING_RETRY_DELAY = 0.5  # seconds, doubled after each failed attempt
DEFAULT_EMBEDDING_TIMEOUT = 120.0  # seconds per batch

# Auxiliary text appended to the embedding input is capped so it cannot
# outweigh the chunk content
MAX_AUXILIARY_EMBEDDING_CHARS = 512

# Environment variable overrides
ENV_EMBEDDING_MODEL = "HYBRID_CODE_SEARCH_EMBEDDING_MODEL"
ENV_MAX_CONCURRENT = "HYBRID_CODE_SEARCH_MAX_CONCURRENT"

# On-disk layout
DEFAULT_INDEX_DIR_NAME = ".hybrid-code-search"
DEFAULT_INDEX_FILENAME = "index.snapshot"
DEFAULT_CONFIG_FILENAME = "config.yaml"


def get_default_index_path(project_root: Path) -> Path:
    """Get default snapshot path for a project."""
    return project_root / DEFAULT_INDEX_DIR_NAME / DEFAULT_INDEX_FILENAME


def get_default_config_path(project_root: Path) -> Path:
    """Get default configuration file path for a project."""
    return project_root / DEFAULT_INDEX_DIR_NAME / DEFAULT_CONFIG_FILENAME
