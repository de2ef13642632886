"""Pytest configuration and shared fixtures."""

import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from coderecall.models.embedding import CodeEmbedding, EmbeddingMetadata
from coderecall.retrieval.providers import EmbeddingProvider, reset_provider
from coderecall.retrieval.store import EmbeddingRecordStore


class FakeProvider(EmbeddingProvider):
    """Provider returning canned vectors, for tests that must not hit a model."""

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        dimensions: int = 3,
        name: str = "fake",
        error: Exception | None = None,
    ) -> None:
        self.vectors = vectors or {}
        self._dimensions = dimensions
        self._name = name
        self.error = error
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def model(self) -> str:
        return "fake-model"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def generate_embedding(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return self.vectors.get(text, [1.0] + [0.0] * (self._dimensions - 1))

    async def generate_bulk_embeddings(self, texts: list[str]) -> list[list[float]]:
        return [await self.generate_embedding(t) for t in texts]

    def estimate_cost(self, token_count: int) -> float:
        return 0.0


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch, temp_dir: Path):
    """Keep tests away from the real home directory and cached providers."""
    monkeypatch.setenv("CODERECALL_HOME", str(temp_dir / "home"))
    monkeypatch.setenv("CODERECALL_DISABLE_PROGRESS", "1")
    monkeypatch.delenv("CODERECALL_EMBEDDING_PROVIDER", raising=False)
    reset_provider()
    yield
    reset_provider()


@pytest.fixture
def make_embedding() -> Callable[..., CodeEmbedding]:
    """Factory for CodeEmbedding records with sensible defaults."""

    def _make(
        id: str,
        embedding: list[float] | None = None,
        type: str = "function",
        source: str = "src/app.py",
        language: str = "python",
        complexity: float = 1.0,
        tags: list[str] | None = None,
        last_modified: datetime | None = None,
        **metadata: Any,
    ) -> CodeEmbedding:
        return CodeEmbedding(
            id=id,
            type=type,
            source=source,
            start_line=1,
            end_line=10,
            content=f"def {id}(): pass",
            content_summary=f"Function {id}",
            embedding=embedding if embedding is not None else [1.0, 0.0, 0.0],
            metadata=EmbeddingMetadata(
                symbol_name=id,
                language=language,
                complexity=complexity,
                tags=tags or [],
                last_modified=last_modified or datetime(2024, 1, 1, tzinfo=UTC),
                **metadata,
            ),
            hash=f"hash-{id}",
        )

    return _make


@pytest.fixture
def store(temp_dir: Path) -> EmbeddingRecordStore:
    """Store rooted in the temp directory."""
    return EmbeddingRecordStore("test-repo", base_path=temp_dir / "store")


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()
