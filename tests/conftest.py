"""Shared pytest configuration and fixtures."""
import asyncio
import hashlib
import sys
from typing import Callable, Dict, List, Optional, Sequence

import pytest
import structlog

from wali.app_state import AppState
from wali.config import RAGConfig
from wali.db import Database
from wali.errors import ApiError
from wali.llm_client import EmbeddingClient, GenerationClient
from wali.rag.vector_store import InMemoryVectorStore
from wali.services import ServiceRegistry


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")
    # Keep structlog output off stdout so capsys only sees what the code prints.
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))


def hashed_vector(text: str, dimension: int = 8) -> List[float]:
    """Deterministic non-zero vector for *text*."""
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b + 1) / 256.0 for b in digest[:dimension]]


# ── Fake backends ───────────────────────────────────────────────────────


class FakeEmbeddingClient(EmbeddingClient):
    """Embeds locally and records batch calls and peak concurrency."""

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        dimension: int = 8,
        fail_when: Optional[Callable[[Sequence[str]], bool]] = None,
        delay: float = 0.0,
    ):
        super().__init__("test-key", model="fake-embedding")
        self.vectors = vectors or {}
        self.dimension = dimension
        self.fail_when = fail_when
        self.delay = delay
        self.calls: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_when is not None and self.fail_when(texts):
                raise ApiError(500, "embedding backend unavailable")
            return [
                self.vectors.get(text) or hashed_vector(text, self.dimension)
                for text in texts
            ]
        finally:
            self.in_flight -= 1


class FakeGenerationClient(GenerationClient):
    """Returns a canned answer and records the messages it was sent."""

    def __init__(self, answer: str = "The answer is 42.", error: Optional[Exception] = None):
        super().__init__("test-key", model="fake-generation")
        self.answer = answer
        self.error = error
        self.calls: List[List[Dict[str, str]]] = []

    async def generate(self, messages) -> str:
        self.calls.append(list(messages))
        if self.error is not None:
            raise self.error
        return self.answer


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture()
def db(tmp_path) -> Database:
    return Database(tmp_path / "wali-test.db")


@pytest.fixture()
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture()
def embedding_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()


@pytest.fixture()
def generation_client() -> FakeGenerationClient:
    return FakeGenerationClient()


@pytest.fixture()
def registry(embedding_client, generation_client) -> ServiceRegistry:
    registry = ServiceRegistry(RAGConfig(chunk_size=50, chunk_overlap=5, top_k=3))
    registry.use(embedding_client, generation_client)
    return registry


@pytest.fixture()
def state(tmp_path, db, vector_store, registry) -> AppState:
    return AppState(
        db,
        vector_store=vector_store,
        registry=registry,
        snapshot_path=tmp_path / "vectors.json",
    )
