"""Data models for the embedding index and similarity search.

Attributes are snake_case; serialized JSON uses camelCase aliases so a
persisted index keeps its on-disk field names (startLine, contentSummary,
lastModified, ...). Either form is accepted on input.
"""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

EmbeddingType = Literal["function", "class", "file", "documentation"]

INDEX_FORMAT_VERSION = "1.0.0"


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC so comparisons never mix naive/aware
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(values))


class EmbeddingMetadata(BaseModel):
    """Structural metadata attached to each embedded code unit."""

    symbol_name: str | None = Field(default=None, description="Function/class name")
    language: str = Field(description="Programming language (e.g., 'python')")
    complexity: float = Field(default=0.0, ge=0.0, description="Cyclomatic complexity")
    dependencies: list[str] = Field(default_factory=list, description="Imported modules")
    exports: list[str] = Field(default_factory=list, description="Exported symbols")
    tags: list[str] = Field(default_factory=list, description="Topic tags (e.g., 'database')")
    last_modified: datetime = Field(
        default_factory=utc_now, description="When the source unit last changed"
    )

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    @field_validator("complexity", mode="before")
    @classmethod
    def _missing_complexity(cls, value: Any) -> Any:
        return 0.0 if value is None else value

    @field_validator("dependencies", "exports", "tags")
    @classmethod
    def _unique_strings(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    @field_validator("last_modified")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)


class CodeEmbedding(BaseModel):
    """One vectorized unit of source code or documentation."""

    id: str = Field(min_length=1, description="Unique id within a repository index")
    type: EmbeddingType = Field(description="Kind of code unit")
    source: str = Field(description="File path the unit originates from")
    start_line: int = Field(ge=0, description="First line of the unit")
    end_line: int = Field(ge=0, description="Last line of the unit")
    content: str = Field(description="Original text that was embedded")
    content_summary: str = Field(default="", description="Short human-readable description")
    embedding: list[float] = Field(description="Embedding vector")
    metadata: EmbeddingMetadata
    hash: str = Field(default="", description="Content fingerprint for change detection")

    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "allow_inf_nan": False,
    }

    @model_validator(mode="after")
    def _check_line_range(self) -> "CodeEmbedding":
        if self.start_line > self.end_line:
            raise ValueError(
                f"start_line ({self.start_line}) must not exceed end_line ({self.end_line})"
            )
        return self

    @property
    def dimensions(self) -> int:
        return len(self.embedding)


class ProviderDescriptor(BaseModel):
    """The backend triple that produced (or will produce) an index."""

    name: str = Field(description="Provider name (e.g., 'ollama')")
    model: str = Field(description="Model identifier")
    dimensions: int = Field(gt=0, description="Vector length")


class IndexMetadata(BaseModel):
    """Metadata describing one repository's embedding index."""

    provider_name: str = Field(description="Provider that produced the vectors")
    model: str = Field(description="Embedding model")
    dimensions: int = Field(gt=0, description="Vector length shared by every record")
    embedding_count: int = Field(default=0, ge=0, description="Number of stored records")
    total_size_bytes: int = Field(default=0, ge=0, description="Size of the index on disk")
    created_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    @field_validator("created_at", "last_updated_at")
    @classmethod
    def _aware_timestamp(cls, value: datetime) -> datetime:
        return _as_utc(value)


class SearchFilters(BaseModel):
    """Predicates for filtered loads; all provided predicates must hold.

    Unknown keys are ignored.
    """

    language: str | None = Field(default=None, description="Exact metadata.language")
    type: EmbeddingType | None = Field(default=None, description="Exact record type")
    file_pattern: str | None = Field(default=None, description="Regex searched in source")
    min_complexity: float | None = Field(default=None, description="Inclusive lower bound")
    max_complexity: float | None = Field(default=None, description="Inclusive upper bound")
    tags: list[str] | None = Field(default=None, description="Record must carry all tags")

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "ignore"}


class RankingWeights(BaseModel):
    """Weights of the multi-factor relevance score."""

    similarity: float = Field(default=0.6, gt=0.0)
    recency: float = Field(default=0.2, ge=0.0)
    importance: float = Field(default=0.2, ge=0.0)


class SearchOptions(BaseModel):
    """Options for SimilaritySearchEngine.search."""

    k: int = Field(default=10, ge=0, description="Maximum number of results")
    filters: SearchFilters | None = None
    min_similarity: float | None = Field(
        default=None, description="Drop candidates scoring below this (None: no threshold)"
    )
    enable_ranking: bool = Field(default=False, description="Compute multi-factor relevance")
    ranking_weights: RankingWeights = Field(default_factory=RankingWeights)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class RankingFactors(BaseModel):
    """Components of a relevance score."""

    similarity: float
    recency: float
    importance: float


class SearchResult(BaseModel):
    """A stored record paired with its scores for one query."""

    embedding: CodeEmbedding
    similarity_score: float = Field(description="Cosine similarity to the query")
    relevance_score: float | None = Field(default=None, description="Multi-factor score")
    ranking_factors: RankingFactors | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}

    @property
    def score(self) -> float:
        """Relevance score when ranked, similarity otherwise."""
        if self.relevance_score is not None:
            return self.relevance_score
        return self.similarity_score


class SearchStats(BaseModel):
    """Statistics of one search run."""

    total_embeddings: int = Field(description="Candidates scored before threshold/truncation")
    filtered_count: int = Field(default=0, description="Candidates left after the threshold")
    search_time_ms: float = Field(default=0.0)
    average_similarity: float = Field(default=0.0, description="Mean over all scored candidates")

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class SearchResponse(BaseModel):
    """Results of a search plus run statistics."""

    results: list[SearchResult] = Field(default_factory=list)
    stats: SearchStats


class StoreStats(BaseModel):
    """Summary of a non-empty persisted index."""

    embedding_count: int
    total_size_bytes: int
    dimensions: int
    model: str
    provider_name: str
    indexed_at: datetime

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class CompatibilityResult(BaseModel):
    """Advisory result of comparing a provider with an existing index."""

    compatible: bool
    requires_rebuild: bool
    reason: str
    existing_provider: str | None = None
    existing_dimensions: int | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class CoverageStats(BaseModel):
    """Aggregate view of what the index covers."""

    total_embeddings: int
    by_type: dict[str, int] = Field(default_factory=dict)
    by_language: dict[str, int] = Field(default_factory=dict)
    oldest_embedding: datetime | None = None
    newest_embedding: datetime | None = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class SearchMetrics(BaseModel):
    """Quality metrics averaged over a set of test queries."""

    average_results: float
    average_similarity: float
    average_search_time_ms: float
    coverage_by_type: dict[str, int] = Field(default_factory=dict)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}


class PersistedIndex(BaseModel):
    """On-disk layout of one repository's index file."""

    version: str = Field(default=INDEX_FORMAT_VERSION)
    repo_id: str
    metadata: IndexMetadata
    embeddings: list[CodeEmbedding] = Field(default_factory=list)

    model_config = {"alias_generator": to_camel, "populate_by_name": True}
