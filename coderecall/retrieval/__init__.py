"""Embedding storage, providers and similarity search."""

from coderecall.retrieval.filters import apply_filters, compile_file_pattern
from coderecall.retrieval.providers import (
    EmbeddingProvider,
    LocalProvider,
    MistralProvider,
    OllamaProvider,
    get_embedding_provider,
    reset_provider,
)
from coderecall.retrieval.search import (
    SimilaritySearchEngine,
    calculate_importance,
    calculate_recency,
)
from coderecall.retrieval.store import EmbeddingRecordStore, infer_model_name
from coderecall.retrieval.vectors import (
    cosine_similarity,
    estimate_storage_size,
    estimate_tokens,
    format_bytes,
    generate_embedding_id,
    hash_content,
    normalize_embedding,
    validate_embedding,
)

__all__ = [
    "EmbeddingProvider",
    "EmbeddingRecordStore",
    "LocalProvider",
    "MistralProvider",
    "OllamaProvider",
    "SimilaritySearchEngine",
    "apply_filters",
    "calculate_importance",
    "calculate_recency",
    "compile_file_pattern",
    "cosine_similarity",
    "estimate_storage_size",
    "estimate_tokens",
    "format_bytes",
    "generate_embedding_id",
    "get_embedding_provider",
    "hash_content",
    "infer_model_name",
    "normalize_embedding",
    "reset_provider",
    "validate_embedding",
]
