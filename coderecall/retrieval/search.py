"""Similarity search over an embedding store.

Scores candidates by cosine similarity to an embedded query, optionally
re-ranks the top-k with a weighted mix of similarity, recency and a
structural importance heuristic, and offers a few exact-match lookups.
"""

import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

import numpy as np

from coderecall.errors import DimensionMismatchError, ProviderError
from coderecall.logging import log_operation, logger
from coderecall.models.embedding import (
    CodeEmbedding,
    CoverageStats,
    RankingFactors,
    RankingWeights,
    SearchFilters,
    SearchMetrics,
    SearchOptions,
    SearchResponse,
    SearchResult,
    SearchStats,
    utc_now,
)
from coderecall.retrieval.providers import EmbeddingProvider
from coderecall.retrieval.store import EmbeddingRecordStore
from coderecall.retrieval.vectors import cosine_similarities

_SECONDS_PER_YEAR = 365 * 24 * 60 * 60

# Importance heuristic: bonuses on a 0.5 base, capped at 1.0
_BASE_IMPORTANCE = 0.5
_TYPE_IMPORTANCE = {"function": 0.1, "class": 0.05, "documentation": 0.15}


def _coerce_options(options: SearchOptions | Mapping[str, Any] | None) -> SearchOptions:
    if options is None:
        return SearchOptions()
    if isinstance(options, SearchOptions):
        return options
    return SearchOptions.model_validate(dict(options))


def calculate_recency(record: CodeEmbedding) -> float:
    """1.0 for code modified now, falling linearly to 0.0 at one year old."""
    age = (utc_now() - record.metadata.last_modified).total_seconds()
    return min(1.0, max(0.0, 1.0 - age / _SECONDS_PER_YEAR))


def calculate_importance(record: CodeEmbedding, query: str | None = None) -> float:
    """Structural importance of a record in [0, 1].

    Moderate complexity, exports, dependencies, tags mentioned in the query
    and the record type each add a bonus to a 0.5 base.
    """
    meta = record.metadata
    score = _BASE_IMPORTANCE

    if 5 <= meta.complexity <= 15:
        score += 0.2
    elif meta.complexity > 15:
        score += 0.1

    if meta.exports:
        score += 0.15

    if meta.dependencies:
        score += min(0.15, len(meta.dependencies) * 0.03)

    if query and meta.tags:
        lowered = query.lower()
        matched = sum(1 for tag in meta.tags if tag.lower() in lowered)
        score += min(0.2, matched * 0.1)

    score += _TYPE_IMPORTANCE.get(record.type, 0.0)

    return min(1.0, score)


class SimilaritySearchEngine:
    """Semantic search over one repository's embedding store.

    Args:
        provider: Embeds query text. Must produce vectors of the index's
            dimensionality. May be None when only lookups, similarity to a
            stored record and coverage are needed.
        store: The record store to search.
    """

    def __init__(self, provider: EmbeddingProvider | None, store: EmbeddingRecordStore) -> None:
        self.provider = provider
        self.store = store

    async def _embed_query(self, query: str) -> list[float]:
        if self.provider is None:
            raise ProviderError("No embedding provider configured for text queries")
        return await self.provider.generate_embedding(query)

    # -------------------------------------------------------------------------
    # Scoring pipeline
    # -------------------------------------------------------------------------

    def _load_candidates(self, filters: SearchFilters | None) -> list[CodeEmbedding]:
        if filters is not None:
            return self.store.load_embeddings_with_filters(filters)
        return self.store.load_embeddings()

    def _score(
        self, query_vector: Sequence[float], candidates: list[CodeEmbedding]
    ) -> tuple[list[CodeEmbedding], np.ndarray]:
        """Cosine similarity of every dimension-compatible candidate.

        Raises:
            DimensionMismatchError: If there are candidates but none shares
                the query's dimensionality.
        """
        dims = len(query_vector)
        compatible = [c for c in candidates if c.dimensions == dims]

        skipped = len(candidates) - len(compatible)
        if skipped:
            logger.warning(
                "  Skipping %d embeddings whose dimensions differ from the query (%d); "
                "rebuild the index with the current provider",
                skipped,
                dims,
            )
        if candidates and not compatible:
            raise DimensionMismatchError(
                f"No stored embedding matches query dimensions ({dims}); rebuild the index",
                expected=candidates[0].dimensions,
                actual=dims,
            )
        if not compatible:
            return [], np.zeros(0, dtype=np.float64)

        matrix = np.asarray([c.embedding for c in compatible], dtype=np.float64)
        return compatible, cosine_similarities(query_vector, matrix)

    def _rank(
        self,
        query: str | None,
        query_vector: Sequence[float],
        candidates: list[CodeEmbedding],
        options: SearchOptions,
        limit: int | None,
    ) -> tuple[list[SearchResult], SearchStats]:
        scored, similarities = self._score(query_vector, candidates)
        average = float(similarities.mean()) if len(scored) else 0.0

        keep = np.arange(len(scored))
        if options.min_similarity is not None:
            keep = keep[similarities >= options.min_similarity]

        # Stable descending sort: ties keep load order
        order = keep[np.argsort(-similarities[keep], kind="stable")]
        filtered_count = len(order)
        if limit is not None:
            order = order[:limit]

        results = [
            SearchResult(embedding=scored[i], similarity_score=float(similarities[i]))
            for i in order
        ]

        if options.enable_ranking:
            results = self._apply_ranking(results, query, options.ranking_weights)

        stats = SearchStats(
            total_embeddings=len(scored),
            filtered_count=filtered_count,
            average_similarity=average,
        )
        return results, stats

    def _apply_ranking(
        self,
        results: list[SearchResult],
        query: str | None,
        weights: RankingWeights,
    ) -> list[SearchResult]:
        ranked = []
        for result in results:
            factors = RankingFactors(
                similarity=result.similarity_score,
                recency=calculate_recency(result.embedding),
                importance=calculate_importance(result.embedding, query),
            )
            relevance = (
                weights.similarity * factors.similarity
                + weights.recency * factors.recency
                + weights.importance * factors.importance
            )
            ranked.append(
                result.model_copy(update={"relevance_score": relevance, "ranking_factors": factors})
            )
        # list.sort is stable with reverse=True as well
        ranked.sort(key=lambda r: r.relevance_score, reverse=True)
        return ranked

    # -------------------------------------------------------------------------
    # Query operations
    # -------------------------------------------------------------------------

    async def search(
        self,
        query: str,
        options: SearchOptions | Mapping[str, Any] | None = None,
    ) -> SearchResponse:
        """Find the stored records most similar to a text query.

        Args:
            query: Natural language query or code snippet.
            options: k, filters, min_similarity, ranking switch and weights.

        Returns:
            Results ordered best first, plus run statistics.

        Raises:
            DimensionMismatchError: If no stored record matches the
                provider's dimensionality.
            InvalidFilterError: If filters.file_pattern is rejected.
        """
        opts = _coerce_options(options)

        with log_operation("search", {"k": opts.k}, level=logging.DEBUG) as timing:
            query_vector = await self._embed_query(query)
            candidates = self._load_candidates(opts.filters)
            results, stats = self._rank(query, query_vector, candidates, opts, limit=opts.k)

        stats.search_time_ms = timing.elapsed_ms
        return SearchResponse(results=results, stats=stats)

    def find_similar_to_embedding(
        self,
        target: CodeEmbedding,
        k: int = 5,
        min_similarity: float | None = None,
        filters: SearchFilters | Mapping[str, Any] | None = None,
    ) -> list[SearchResult]:
        """Find records similar to an existing record, excluding itself."""
        opts = _coerce_options(
            {"k": k, "min_similarity": min_similarity, "filters": filters}
        )
        candidates = [c for c in self._load_candidates(opts.filters) if c.id != target.id]
        results, _ = self._rank(None, target.embedding, candidates, opts, limit=opts.k)
        return results

    async def search_diverse(
        self,
        query: str,
        k: int = 10,
        max_per_file: int = 2,
        **options: Any,
    ) -> list[SearchResult]:
        """Search, then cap the number of results taken from any one file.

        The full ranked list is walked best first; a result is selected only
        while its source file has fewer than max_per_file selections.
        """
        opts = _coerce_options({**options, "k": k})

        query_vector = await self._embed_query(query)
        candidates = self._load_candidates(opts.filters)
        ranked, _ = self._rank(query, query_vector, candidates, opts, limit=None)

        per_file: Counter[str] = Counter()
        selected: list[SearchResult] = []
        for result in ranked:
            if len(selected) >= k:
                break
            source = result.embedding.source
            if per_file[source] < max_per_file:
                selected.append(result)
                per_file[source] += 1
        return selected

    async def batch_search(
        self,
        queries: Iterable[str],
        options: SearchOptions | Mapping[str, Any] | None = None,
    ) -> dict[str, list[SearchResult]]:
        """Run several searches sequentially, keyed by query."""
        opts = _coerce_options(options)
        results: dict[str, list[SearchResult]] = {}
        for query in queries:
            response = await self.search(query, opts)
            results[query] = response.results
        return results

    async def get_search_metrics(self, test_queries: Sequence[str]) -> SearchMetrics:
        """Average result count, similarity and latency over test queries."""
        if not test_queries:
            return SearchMetrics(average_results=0.0, average_similarity=0.0, average_search_time_ms=0.0)

        total_results = 0
        total_similarity = 0.0
        total_time = 0.0
        by_type: Counter[str] = Counter()

        for query in test_queries:
            response = await self.search(query)
            total_results += len(response.results)
            total_time += response.stats.search_time_ms
            if response.results:
                total_similarity += sum(r.similarity_score for r in response.results) / len(
                    response.results
                )
            by_type.update(r.embedding.type for r in response.results)

        n = len(test_queries)
        return SearchMetrics(
            average_results=total_results / n,
            average_similarity=total_similarity / n,
            average_search_time_ms=total_time / n,
            coverage_by_type=dict(by_type),
        )

    # -------------------------------------------------------------------------
    # Exact lookups
    # -------------------------------------------------------------------------

    def find_by_file(self, path: str) -> list[CodeEmbedding]:
        return [r for r in self.store.load_embeddings() if r.source == path]

    def find_by_tags(self, tags: Iterable[str], match_all: bool = False) -> list[CodeEmbedding]:
        """Records carrying all (match_all) or any of the given tags."""
        wanted = set(tags)
        if match_all:
            return [r for r in self.store.load_embeddings() if wanted.issubset(r.metadata.tags)]
        return [r for r in self.store.load_embeddings() if wanted.intersection(r.metadata.tags)]

    def find_by_complexity(self, min_complexity: float, max_complexity: float) -> list[CodeEmbedding]:
        """Records with complexity in the inclusive range."""
        return [
            r
            for r in self.store.load_embeddings()
            if min_complexity <= r.metadata.complexity <= max_complexity
        ]

    def get_coverage_stats(self) -> CoverageStats:
        records = self.store.load_embeddings()
        if not records:
            return CoverageStats(total_embeddings=0)

        timestamps = [r.metadata.last_modified for r in records]
        return CoverageStats(
            total_embeddings=len(records),
            by_type=dict(Counter(r.type for r in records)),
            by_language=dict(Counter(r.metadata.language for r in records)),
            oldest_embedding=min(timestamps),
            newest_embedding=max(timestamps),
        )
