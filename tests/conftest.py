"""Shared fixtures: deterministic embedding providers and sample chunks."""

import math
import re
import threading
from datetime import UTC, datetime

import pytest

from hybrid_code_search.config.settings import SearchConfig
from hybrid_code_search.core.models import CodeChunk
from hybrid_code_search.core.search import HybridSearchEngine

EMBEDDING_DIM = 1024
NOW = datetime(2025, 1, 1, tzinfo=UTC)

_WORD_RE = re.compile(r"[a-z0-9]+")
_VOCABULARY: dict[str, int] = {}
_VOCABULARY_LOCK = threading.Lock()


def _word_index(word: str) -> int:
    with _VOCABULARY_LOCK:
        return _VOCABULARY.setdefault(word, len(_VOCABULARY))


def bag_of_words_vector(text: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Normalized word counts; each distinct word gets its own axis.

    The vocabulary is shared for the whole test session, so a text maps to
    the same vector no matter which provider instance embeds it.
    """
    vector = [0.0] * dim
    for word in _WORD_RE.findall(text.lower()):
        vector[_word_index(word) % dim] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    return [v / norm for v in vector] if norm else vector


class FakeEmbeddingProvider:
    """Deterministic synchronous provider that records every call."""

    model_name = "fake-bag-of-words"

    def __init__(self, dim: int = EMBEDDING_DIM) -> None:
        self.dim = dim
        self.calls: list[list[str]] = []
        self.query_calls: list[str] = []
        self.fail = False

    @property
    def embedded_texts(self) -> int:
        return sum(len(batch) for batch in self.calls)

    def embed(self, text: str) -> list[float]:
        self.query_calls.append(text)
        if self.fail:
            raise ConnectionError("embedding service unreachable")
        return bag_of_words_vector(text, self.dim)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise ConnectionError("embedding service unreachable")
        return [bag_of_words_vector(t, self.dim) for t in texts]


class AsyncFakeEmbeddingProvider(FakeEmbeddingProvider):
    """Same vectors as FakeEmbeddingProvider, through coroutine methods."""

    async def embed(self, text: str) -> list[float]:
        return super().embed(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return super().embed_batch(texts)


def make_chunk(chunk_id: str, content: str, **overrides) -> CodeChunk:
    fields = {
        "id": chunk_id,
        "file_path": f"src/{chunk_id}.py",
        "name": chunk_id,
        "type": "function",
        "language": "python",
        "start_line": 1,
        "end_line": max(1, content.count("\n") + 1),
        "content": content,
        "created_at": NOW,
        "updated_at": NOW,
    }
    fields.update(overrides)
    return CodeChunk(**fields)


SAMPLE_CHUNK_RECORDS = [
    {
        "id": "chunk-1",
        "filePath": "src/utils/auth.ts",
        "name": "validateToken",
        "type": "function",
        "language": "typescript",
        "startLine": 10,
        "endLine": 25,
        "content": (
            "export function validateToken(token: string): boolean {\n"
            "  if (!token) return false;\n"
            "  const decoded = decodeJWT(token);\n"
            "  return decoded.exp > Date.now() / 1000;\n"
            "}"
        ),
        "signature": "validateToken(token: string): boolean",
        "docstring": "Validates a JWT token",
        "imports": ["decodeJWT"],
        "hash": "hash-chunk-1",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-01T00:00:00Z",
    },
    {
        "id": "chunk-2",
        "filePath": "src/utils/auth.ts",
        "name": "hashPassword",
        "type": "function",
        "language": "typescript",
        "startLine": 30,
        "endLine": 40,
        "content": (
            "export async function hashPassword(password: string): Promise<string> {\n"
            "  const salt = await generateSalt();\n"
            "  return bcrypt.hash(password, salt);\n"
            "}"
        ),
        "signature": "hashPassword(password: string): Promise<string>",
        "docstring": "Hashes a password using bcrypt",
        "imports": ["bcrypt", "generateSalt"],
        "hash": "hash-chunk-2",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-01T00:00:00Z",
    },
    {
        "id": "chunk-3",
        "filePath": "src/services/user.service.ts",
        "name": "UserService",
        "type": "class",
        "language": "typescript",
        "startLine": 1,
        "endLine": 50,
        "content": (
            "export class UserService {\n"
            "  constructor(private db: Database) {}\n"
            "\n"
            "  async findById(id: string): Promise<User | null> {\n"
            "    return this.db.users.findOne({ id });\n"
            "  }\n"
            "\n"
            "  async create(data: CreateUserDTO): Promise<User> {\n"
            "    const hashed = await hashPassword(data.password);\n"
            "    return this.db.users.create({ ...data, password: hashed });\n"
            "  }\n"
            "}"
        ),
        "signature": "class UserService",
        "docstring": "Service for user management",
        "imports": ["Database", "User", "CreateUserDTO", "hashPassword"],
        "hash": "hash-chunk-3",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-01T00:00:00Z",
    },
    {
        "id": "chunk-4",
        "filePath": "src/api/routes.ts",
        "name": "authMiddleware",
        "type": "function",
        "language": "typescript",
        "startLine": 5,
        "endLine": 20,
        "content": (
            "export const authMiddleware = async (req: Request, res: Response, "
            "next: NextFunction) => {\n"
            "  const token = req.headers.authorization?.split(' ')[1];\n"
            "  if (!validateToken(token)) {\n"
            "    return res.status(401).json({ error: 'Unauthorized' });\n"
            "  }\n"
            "  next();\n"
            "}"
        ),
        "signature": "authMiddleware(req, res, next)",
        "docstring": "Express middleware for JWT authentication",
        "imports": ["Request", "Response", "NextFunction", "validateToken"],
        "hash": "hash-chunk-4",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-01T00:00:00Z",
    },
    {
        "id": "chunk-5",
        "filePath": "src/utils/logger.py",
        "name": "setup_logging",
        "type": "function",
        "language": "python",
        "startLine": 1,
        "endLine": 15,
        "content": (
            'def setup_logging(level: str = "INFO") -> logging.Logger:\n'
            '    """Configure application logging."""\n'
            '    logger = logging.getLogger("app")\n'
            "    logger.setLevel(getattr(logging, level))\n"
            "    handler = logging.StreamHandler()\n"
            "    logger.addHandler(handler)\n"
            "    return logger"
        ),
        "signature": 'setup_logging(level: str = "INFO") -> logging.Logger',
        "docstring": "Configure application logging.",
        "imports": ["logging"],
        "hash": "hash-chunk-5",
        "createdAt": "2025-01-01T00:00:00Z",
        "updatedAt": "2025-01-01T00:00:00Z",
    },
]


@pytest.fixture
def sample_records() -> list[dict]:
    return [dict(r) for r in SAMPLE_CHUNK_RECORDS]


@pytest.fixture
def sample_chunks() -> list[CodeChunk]:
    return [CodeChunk.model_validate(r) for r in SAMPLE_CHUNK_RECORDS]


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def search_config() -> SearchConfig:
    config = SearchConfig()
    # No sleeping between retries in tests
    config.embedding.retry_delay = 0.0
    return config


@pytest.fixture
def engine(provider, search_config, tmp_path) -> HybridSearchEngine:
    return HybridSearchEngine(
        provider, index_path=tmp_path / "index.snapshot", config=search_config
    )


@pytest.fixture
async def indexed_engine(engine, sample_chunks) -> HybridSearchEngine:
    await engine.index_chunks(sample_chunks)
    return engine


@pytest.fixture
def async_provider() -> AsyncFakeEmbeddingProvider:
    return AsyncFakeEmbeddingProvider()


@pytest.fixture
def chunk_factory():
    """Build a valid CodeChunk from an id and content (fields overridable)."""
    return make_chunk
