"""Embedding provider abstraction for pluggable embedding backends.

The store and search engine only depend on EmbeddingProvider. Concrete
providers are included so the CLI works end to end:
- local: sentence-transformers (default, runs locally)
- mistral: Codestral Embed API (requires API key)
- ollama: nomic-embed-text on a local Ollama server

Configuration via environment variables:
    CODERECALL_EMBEDDING_PROVIDER: Provider to use ("local", "mistral" or "ollama")
    CODERECALL_EMBEDDING_MODEL: Model name override (local provider)
    MISTRAL_API_KEY: API key for Mistral provider
    OLLAMA_HOST: Ollama endpoint (default http://localhost:11434)
"""

import asyncio
import os
from abc import ABC, abstractmethod
from typing import Any

import httpx

from coderecall.errors import ProviderError
from coderecall.logging import embedding_progress, logger
from coderecall.models.embedding import ProviderDescriptor

# Default models
_DEFAULT_LOCAL_MODEL = "jinaai/jina-embeddings-v2-base-code"
_MISTRAL_MODEL = "codestral-embed"
_OLLAMA_MODEL = "nomic-embed-text"
_DEFAULT_OLLAMA_HOST = "http://localhost:11434"

# Cached provider instance
_provider: "EmbeddingProvider | None" = None


def _get_provider_name() -> str:
    """Get provider name from environment (read at call time, not import time)."""
    return os.getenv("CODERECALL_EMBEDDING_PROVIDER", "local").lower()


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name (compared for index compatibility)."""
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        """Return the model identifier."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Return the embedding dimensions."""
        ...

    @abstractmethod
    async def generate_embedding(self, text: str) -> list[float]:
        """Embed a single text.

        Raises:
            ProviderError: If the backend fails to return a vector.
        """
        ...

    @abstractmethod
    async def generate_bulk_embeddings(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts, returning vectors in input order."""
        ...

    @abstractmethod
    def estimate_cost(self, token_count: int) -> float:
        """Estimated USD cost of embedding token_count tokens (0 for local)."""
        ...

    def is_available(self) -> bool:
        """Whether the provider is configured well enough to try."""
        return True

    async def test_connection(self) -> bool:
        """Probe the backend with a tiny request."""
        try:
            await self.generate_embedding("test")
        except (ProviderError, httpx.HTTPError, ImportError) as e:
            logger.warning("  %s provider connection test failed: %s", self.name, e)
            return False
        return True

    def descriptor(self) -> ProviderDescriptor:
        """Return the {name, model, dimensions} triple for this provider."""
        return ProviderDescriptor(name=self.name, model=self.model, dimensions=self.dimensions)


class LocalProvider(EmbeddingProvider):
    """Local embedding provider using sentence-transformers.

    Uses jinaai/jina-embeddings-v2-base-code by default, configurable
    via CODERECALL_EMBEDDING_MODEL environment variable. Encoding runs
    in a worker thread so the event loop is not blocked.
    """

    BATCH_SIZE = 64

    def __init__(self, model_name: str | None = None) -> None:
        self._model: Any = None
        self._model_name = model_name or os.getenv(
            "CODERECALL_EMBEDDING_MODEL", _DEFAULT_LOCAL_MODEL
        )
        self._dimensions: int | None = None

    @property
    def name(self) -> str:
        return "local"

    @property
    def model(self) -> str:
        return self._model_name

    @property
    def dimensions(self) -> int:
        if self._dimensions is None:
            # Load model to get dimensions
            model = self._get_model()
            self._dimensions = model.get_sentence_embedding_dimension()
        return self._dimensions

    def _get_model(self) -> Any:
        """Lazy-load the sentence-transformers model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ImportError(
                    "sentence-transformers is required for local embeddings. "
                    "Install with: pip install 'coderecall[local]'"
                ) from e
            logger.info("  Loading embedding model: %s", self._model_name)
            self._model = SentenceTransformer(self._model_name)
            logger.info("  Model loaded successfully")
        return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()
        vectors = model.encode(texts, show_progress_bar=False, convert_to_numpy=True)
        return [vector.tolist() for vector in vectors]

    async def generate_embedding(self, text: str) -> list[float]:
        vectors = await asyncio.to_thread(self._encode, [text])
        return vectors[0]

    async def generate_bulk_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        results: list[list[float]] = []
        with embedding_progress(len(texts)) as pbar:
            for i in range(0, len(texts), self.BATCH_SIZE):
                batch = texts[i : i + self.BATCH_SIZE]
                results.extend(await asyncio.to_thread(self._encode, batch))
                pbar.update(len(batch))
        return results

    def estimate_cost(self, token_count: int) -> float:
        return 0.0


class MistralProvider(EmbeddingProvider):
    """Mistral Codestral Embed API provider.

    Requires MISTRAL_API_KEY environment variable.
    Uses codestral-embed model optimized for code.
    """

    API_URL = "https://api.mistral.ai/v1/embeddings"
    MODEL = _MISTRAL_MODEL
    DIMENSIONS = 1536  # Codestral Embed actual output
    MAX_BATCH_SIZE = 64  # API limit per request
    MAX_RETRIES = 3
    RETRY_DELAY = 1.0  # seconds
    COST_PER_MILLION_TOKENS = 0.15

    def __init__(
        self,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key or os.getenv("MISTRAL_API_KEY")
        if not self._api_key:
            raise ValueError(
                "MISTRAL_API_KEY environment variable is required for Mistral provider. "
                "Get your API key at: https://console.mistral.ai/api-keys"
            )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "mistral"

    @property
    def model(self) -> str:
        return self.MODEL

    @property
    def dimensions(self) -> int:
        return self.DIMENSIONS

    def is_available(self) -> bool:
        return bool(self._api_key)

    def _get_client(self) -> httpx.AsyncClient:
        """Lazy-create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=60.0,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _call_api(self, texts: list[str]) -> list[list[float]]:
        """Call Mistral embeddings API with retry logic.

        Raises:
            ProviderError: After MAX_RETRIES failed attempts.
        """
        client = self._get_client()
        last_error: Exception | None = None

        for attempt in range(self.MAX_RETRIES):
            try:
                response = await client.post(
                    self.API_URL,
                    json={"model": self.MODEL, "input": texts},
                )
                response.raise_for_status()
                data = response.json()
                return [item["embedding"] for item in data["data"]]
            except (httpx.HTTPError, KeyError, ValueError) as e:
                last_error = e
                if attempt < self.MAX_RETRIES - 1:
                    logger.warning(
                        "  Mistral API error (attempt %d/%d): %s",
                        attempt + 1,
                        self.MAX_RETRIES,
                        str(e),
                    )
                    await asyncio.sleep(self.RETRY_DELAY * (attempt + 1))

        raise ProviderError(
            f"Mistral embedding request failed after {self.MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    async def generate_embedding(self, text: str) -> list[float]:
        vectors = await self._call_api([text])
        return vectors[0]

    async def generate_bulk_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        results: list[list[float]] = []
        with embedding_progress(len(texts)) as pbar:
            for i in range(0, len(texts), self.MAX_BATCH_SIZE):
                batch = texts[i : i + self.MAX_BATCH_SIZE]
                results.extend(await self._call_api(batch))
                pbar.update(len(batch))
        return results

    def estimate_cost(self, token_count: int) -> float:
        return token_count / 1_000_000 * self.COST_PER_MILLION_TOKENS


class OllamaProvider(EmbeddingProvider):
    """Ollama provider using nomic-embed-text (768 dimensions).

    Free, runs locally. Requires the model to be pulled:
    ``ollama pull nomic-embed-text``.
    """

    MODEL = _OLLAMA_MODEL
    DIMENSIONS = 768
    CONCURRENCY = 10  # Ollama has no bulk endpoint; parallel requests per group

    def __init__(
        self,
        endpoint: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = (endpoint or os.getenv("OLLAMA_HOST", _DEFAULT_OLLAMA_HOST)).rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def model(self) -> str:
        return self.MODEL

    @property
    def dimensions(self) -> int:
        return self.DIMENSIONS

    @property
    def endpoint(self) -> str:
        return self._endpoint

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._endpoint,
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def generate_embedding(self, text: str) -> list[float]:
        client = self._get_client()
        try:
            response = await client.post(
                "/api/embeddings", json={"model": self.MODEL, "prompt": text}
            )
        except httpx.ConnectError as e:
            raise ProviderError(
                f"Cannot connect to Ollama at {self._endpoint}. "
                "Make sure Ollama is running: https://ollama.ai"
            ) from e

        if response.status_code == 404:
            raise ProviderError(
                f"Model '{self.MODEL}' not found. Pull it with: ollama pull {self.MODEL}"
            )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ProviderError(f"Ollama embedding generation failed: {e}") from e

        embedding = response.json().get("embedding")
        if not embedding:
            raise ProviderError("No embedding returned from Ollama")
        return embedding

    async def generate_bulk_embeddings(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        results: list[list[float]] = []
        with embedding_progress(len(texts)) as pbar:
            for i in range(0, len(texts), self.CONCURRENCY):
                batch = texts[i : i + self.CONCURRENCY]
                # Let every request in the group finish before raising
                outcomes = await asyncio.gather(
                    *(self.generate_embedding(t) for t in batch), return_exceptions=True
                )
                for outcome in outcomes:
                    if isinstance(outcome, BaseException):
                        raise outcome
                results.extend(outcomes)
                pbar.update(len(batch))
        return results

    def estimate_cost(self, token_count: int) -> float:
        return 0.0

    async def check_running(self) -> bool:
        """Check whether the Ollama server answers."""
        try:
            response = await self._get_client().get("/api/tags")
        except httpx.HTTPError:
            return False
        return response.status_code == 200


def get_embedding_provider() -> EmbeddingProvider:
    """Get the configured embedding provider.

    Returns:
        EmbeddingProvider instance based on CODERECALL_EMBEDDING_PROVIDER env var.

    Raises:
        ValueError: If provider name is unknown or misconfigured.
    """
    global _provider

    if _provider is not None:
        return _provider

    provider_name = _get_provider_name()

    if provider_name == "local":
        logger.info("  Using local embedding provider (sentence-transformers)")
        _provider = LocalProvider()
    elif provider_name == "mistral":
        logger.info("  Using Mistral embedding provider (codestral-embed)")
        _provider = MistralProvider()
    elif provider_name == "ollama":
        logger.info("  Using Ollama embedding provider (nomic-embed-text)")
        _provider = OllamaProvider()
    else:
        raise ValueError(
            f"Unknown embedding provider: {provider_name}. "
            f"Supported providers: local, mistral, ollama"
        )

    return _provider


def reset_provider() -> None:
    """Reset the cached provider instance.

    Useful for testing or when changing configuration at runtime.
    """
    global _provider
    _provider = None
