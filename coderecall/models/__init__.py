"""Pydantic models for coderecall."""

from coderecall.models.embedding import (
    CodeEmbedding,
    CompatibilityResult,
    CoverageStats,
    EmbeddingMetadata,
    EmbeddingType,
    IndexMetadata,
    PersistedIndex,
    ProviderDescriptor,
    RankingFactors,
    RankingWeights,
    SearchFilters,
    SearchMetrics,
    SearchOptions,
    SearchResponse,
    SearchResult,
    SearchStats,
    StoreStats,
)

__all__ = [
    "CodeEmbedding",
    "CompatibilityResult",
    "CoverageStats",
    "EmbeddingMetadata",
    "EmbeddingType",
    "IndexMetadata",
    "PersistedIndex",
    "ProviderDescriptor",
    "RankingFactors",
    "RankingWeights",
    "SearchFilters",
    "SearchMetrics",
    "SearchOptions",
    "SearchResponse",
    "SearchResult",
    "SearchStats",
    "StoreStats",
]
