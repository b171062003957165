"""Embedding generation for hybrid code search.

The engine only depends on the ``EmbeddingProvider`` call contract. Providers
may be synchronous (called in a worker thread) or asynchronous. Any failure a
provider raises is treated as ``EmbeddingProviderUnavailableError``.
"""

import asyncio
import contextlib
import inspect
import logging
import os
import sys
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from loguru import logger

from ..config.defaults import (
    DEFAULT_EMBEDDING_BATCH_SIZE,
    DEFAULT_EMBEDDING_MAX_ATTEMPTS,
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_EMBEDDING_RETRY_DELAY,
    DEFAULT_EMBEDDING_TIMEOUT,
    DEFAULT_MAX_CONCURRENT_BATCHES,
)
from ..config.settings import EmbeddingSettings
from .exceptions import EmbeddingError, EmbeddingProviderUnavailableError

Vector = list[float]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Turns text into fixed-dimension vectors.

    Both methods may be plain functions or coroutines.
    """

    def embed(self, text: str) -> Any: ...

    def embed_batch(self, texts: list[str]) -> Any: ...


async def _call_provider(fn: Any, arg: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(arg)
    result = await asyncio.to_thread(fn, arg)
    # Sync wrappers around async clients may hand back an awaitable
    if inspect.isawaitable(result):
        result = await result
    return result


def _as_vector(value: Any) -> Vector:
    # numpy arrays and tuples are both accepted
    if hasattr(value, "tolist"):
        value = value.tolist()
    return [float(x) for x in value]


async def embed_query(
    provider: EmbeddingProvider, text: str, timeout: float | None = None
) -> Vector:
    """Embed a single query string.

    Timeouts count as provider failures.

    Raises:
        EmbeddingProviderUnavailableError: If the provider fails for any reason
    """
    try:
        vector = await asyncio.wait_for(_call_provider(provider.embed, text), timeout)
        return _as_vector(vector)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise EmbeddingProviderUnavailableError(
            f"Embedding provider failed for query: {e}",
            context={"error_type": type(e).__name__},
        ) from e


async def embed_texts(
    provider: EmbeddingProvider, texts: list[str], timeout: float | None = None
) -> list[Vector]:
    """Embed a batch of texts in one provider call.

    Timeouts count as provider failures.

    Raises:
        EmbeddingProviderUnavailableError: If the provider fails or returns
            the wrong number of vectors
    """
    try:
        vectors = await asyncio.wait_for(
            _call_provider(provider.embed_batch, list(texts)), timeout
        )
        vectors = [_as_vector(v) for v in vectors]
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise EmbeddingProviderUnavailableError(
            f"Embedding provider failed for batch of {len(texts)} texts: {e}",
            context={"error_type": type(e).__name__, "batch_size": len(texts)},
        ) from e

    if len(vectors) != len(texts):
        raise EmbeddingProviderUnavailableError(
            f"Embedding provider returned {len(vectors)} vectors "
            f"for {len(texts)} texts"
        )
    return vectors


@dataclass
class BatchEmbeddingResult:
    """Vectors per key, plus the keys whose batches failed every attempt."""

    embeddings: dict[str, Vector] = field(default_factory=dict)
    deferred: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)


class BatchEmbeddingProcessor:
    """Batch processing for embedding generation with retries and deferral."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_BATCHES,
        max_attempts: int = DEFAULT_EMBEDDING_MAX_ATTEMPTS,
        retry_delay: float = DEFAULT_EMBEDDING_RETRY_DELAY,
        timeout: float | None = DEFAULT_EMBEDDING_TIMEOUT,
    ) -> None:
        """Initialize batch embedding processor.

        Args:
            provider: Embedding provider
            batch_size: Texts per provider call
            max_concurrent: Maximum batches in flight
            max_attempts: Attempts per batch before its keys are deferred
            retry_delay: Delay before the first retry, doubled after each one
            timeout: Seconds allowed per provider call (None for no limit)
        """
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self.max_concurrent = max(1, max_concurrent)
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.calls = 0
        self.failures = 0

    @classmethod
    def from_settings(
        cls, provider: EmbeddingProvider, settings: EmbeddingSettings
    ) -> "BatchEmbeddingProcessor":
        return cls(
            provider,
            batch_size=settings.batch_size,
            max_concurrent=settings.max_concurrent_batches,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
            timeout=settings.timeout,
        )

    async def embed_batches_parallel(
        self, items: Sequence[tuple[str, str]]
    ) -> BatchEmbeddingResult:
        """Generate embeddings in parallel batches.

        Splits ``(key, text)`` items into batches and embeds them
        concurrently, at most ``max_concurrent`` at a time. A batch that
        still fails after ``max_attempts`` is not fatal: its keys are listed
        in ``deferred`` so a later indexing call can retry them.

        Args:
            items: (key, text) pairs to embed

        Returns:
            BatchEmbeddingResult with embeddings by key
        """
        result = BatchEmbeddingResult()
        if not items:
            return result

        batches = [
            list(items[i : i + self.batch_size])
            for i in range(0, len(items), self.batch_size)
        ]

        # Semaphore to limit concurrent batch processing
        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def process_batch(
            batch: list[tuple[str, str]],
        ) -> tuple[list[tuple[str, str]], list[Vector] | None, str | None]:
            async with semaphore:
                try:
                    vectors = await self._embed_with_retry([t for _, t in batch])
                    return batch, vectors, None
                except EmbeddingProviderUnavailableError as e:
                    return batch, None, str(e)

        outcomes = await asyncio.gather(*[process_batch(b) for b in batches])

        for batch, vectors, error in outcomes:
            if vectors is None:
                keys = [key for key, _ in batch]
                result.deferred.extend(keys)
                for key in keys:
                    result.errors[key] = error or "embedding failed"
                continue
            for (key, _), vector in zip(batch, vectors, strict=True):
                result.embeddings[key] = vector

        if result.deferred:
            logger.warning(
                f"Deferred {len(result.deferred)} chunks after "
                f"{self.max_attempts} failed embedding attempts"
            )
        return result

    async def _embed_with_retry(self, texts: list[str]) -> list[Vector]:
        delay = self.retry_delay
        for attempt in range(1, self.max_attempts + 1):
            self.calls += 1
            try:
                return await embed_texts(self.provider, texts, self.timeout)
            except EmbeddingProviderUnavailableError as e:
                self.failures += 1
                if attempt == self.max_attempts:
                    raise
                logger.warning(
                    f"Embedding attempt {attempt}/{self.max_attempts} failed: {e}; "
                    f"retrying in {delay:.2f}s"
                )
                if delay > 0:
                    await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    def get_stats(self) -> dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "max_concurrent": self.max_concurrent,
            "max_attempts": self.max_attempts,
            "provider_calls": self.calls,
            "failed_calls": self.failures,
        }


@contextlib.contextmanager
def suppress_stdout_stderr():
    """Suppress stdout and stderr at OS level.

    Hides model loading output that native code prints straight to the file
    descriptors, bypassing Python's sys.stdout/stderr redirection.
    """
    try:
        stdout_fd = sys.stdout.fileno()
        stderr_fd = sys.stderr.fileno()
    except (AttributeError, OSError, ValueError):
        # Captured streams (pytest, CliRunner) have no real descriptor
        yield
        return

    stdout_dup = os.dup(stdout_fd)
    stderr_dup = os.dup(stderr_fd)
    devnull = os.open(os.devnull, os.O_RDWR)
    try:
        os.dup2(devnull, stdout_fd)
        os.dup2(devnull, stderr_fd)
        yield
    finally:
        os.dup2(stdout_dup, stdout_fd)
        os.dup2(stderr_dup, stderr_fd)
        os.close(stdout_dup)
        os.close(stderr_dup)
        os.close(devnull)


class SentenceTransformerProvider:
    """Embedding provider backed by a sentence-transformers model.

    The model is loaded lazily on first use so that constructing the provider
    (and importing this module) does not require the optional dependency.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        device: str | None = None,
    ) -> None:
        self.model_name = model_name
        self.device = device
        self._model: Any = None

    @property
    def dimension(self) -> int:
        return int(self._load().get_sentence_embedding_dimension())

    def _load(self) -> Any:
        if self._model is not None:
            return self._model

        # Transformers logging and progress bars are noise on the CLI
        logging.getLogger("transformers").setLevel(logging.ERROR)
        logging.getLogger("sentence_transformers").setLevel(logging.ERROR)
        logging.getLogger("huggingface_hub").setLevel(logging.ERROR)
        os.environ.setdefault("TQDM_DISABLE", "1")
        warnings.filterwarnings("ignore", category=FutureWarning, module="transformers")

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            raise EmbeddingError(
                "sentence-transformers is not installed; "
                "install the 'models' extra to use local embeddings"
            ) from e

        try:
            with suppress_stdout_stderr():
                self._model = SentenceTransformer(self.model_name, device=self.device)
        except Exception as e:
            logger.error(f"Failed to load embedding model {self.model_name}: {e}")
            raise EmbeddingError(f"Failed to load embedding model: {e}") from e

        logger.info(
            f"Loaded embedding model {self.model_name} with "
            f"{self._model.get_sentence_embedding_dimension()} dimensions"
        )
        return self._model

    def embed(self, text: str) -> Vector:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[Vector]:
        if not texts:
            return []
        model = self._load()
        try:
            embeddings = model.encode(
                texts, convert_to_numpy=True, show_progress_bar=False
            )
        except Exception as e:
            logger.error(f"Failed to generate embeddings: {e}")
            raise EmbeddingError(f"Failed to generate embeddings: {e}") from e
        return embeddings.tolist()


def create_embedding_provider(
    settings: EmbeddingSettings | None = None,
) -> SentenceTransformerProvider:
    """Create the default local embedding provider.

    Args:
        settings: Embedding settings (model name)

    Returns:
        SentenceTransformerProvider (model loads on first use)
    """
    settings = settings or EmbeddingSettings()
    logger.debug(f"Using embedding model {settings.model_name}")
    return SentenceTransformerProvider(settings.model_name)
