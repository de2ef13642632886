"""Tests for the similarity search engine."""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import FakeProvider

from coderecall.errors import DimensionMismatchError, InvalidFilterError, ProviderError
from coderecall.models.embedding import RankingWeights, SearchOptions
from coderecall.retrieval.search import (
    SimilaritySearchEngine,
    calculate_importance,
    calculate_recency,
)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(
        vectors={
            "x axis": [1.0, 0.0, 0.0],
            "y axis": [0.0, 1.0, 0.0],
            "nothing": [0.0, 0.0, 0.0],
        }
    )


@pytest.fixture
def engine(provider, store, make_embedding) -> SimilaritySearchEngine:
    store.save_embeddings(
        [
            make_embedding("exact", [1.0, 0.0, 0.0], source="src/a.py"),
            make_embedding("close", [0.9, 0.1, 0.0], source="src/a.py"),
            make_embedding("near", [0.8, 0.2, 0.0], source="src/a.py"),
            make_embedding("half", [0.5, 0.5, 0.0], source="src/b.py", language="typescript"),
            make_embedding("ortho", [0.0, 1.0, 0.0], source="src/c.py", type="class"),
            make_embedding("opposite", [-1.0, 0.0, 0.0], source="src/d.py"),
        ]
    )
    return SimilaritySearchEngine(provider, store)


class TestSearch:
    """Tests for text queries."""

    @pytest.mark.asyncio
    async def test_ordered_by_similarity(self, engine) -> None:
        """Results come back best first."""
        response = await engine.search("x axis")
        ids = [r.embedding.id for r in response.results]
        assert ids == ["exact", "close", "near", "half", "ortho", "opposite"]
        scores = [r.similarity_score for r in response.results]
        assert scores == sorted(scores, reverse=True)
        assert scores[0] == pytest.approx(1.0)
        assert scores[-1] == pytest.approx(-1.0)

    @pytest.mark.asyncio
    async def test_truncates_to_k(self, engine) -> None:
        """At most k results are returned."""
        response = await engine.search("x axis", {"k": 2})
        assert [r.embedding.id for r in response.results] == ["exact", "close"]
        assert response.stats.total_embeddings == 6

    @pytest.mark.asyncio
    async def test_min_similarity_threshold(self, engine) -> None:
        """Results below the threshold are dropped."""
        response = await engine.search("x axis", SearchOptions(min_similarity=0.7))
        assert all(r.similarity_score >= 0.7 for r in response.results)
        assert [r.embedding.id for r in response.results] == ["exact", "close", "near", "half"]
        assert response.stats.filtered_count == 4

    @pytest.mark.asyncio
    async def test_threshold_results_are_subset(self, engine) -> None:
        """Raising the threshold never adds results."""
        loose = await engine.search("x axis", {"min_similarity": 0.0})
        strict = await engine.search("x axis", {"min_similarity": 0.9})
        loose_ids = {r.embedding.id for r in loose.results}
        assert {r.embedding.id for r in strict.results} <= loose_ids

    @pytest.mark.asyncio
    async def test_filters_applied(self, engine) -> None:
        """Filters restrict candidates before scoring."""
        response = await engine.search("x axis", {"filters": {"language": "typescript"}})
        assert [r.embedding.id for r in response.results] == ["half"]
        assert response.stats.total_embeddings == 1

    @pytest.mark.asyncio
    async def test_stats(self, engine) -> None:
        """Stats cover every scored candidate."""
        response = await engine.search("x axis", {"k": 1})
        assert response.stats.total_embeddings == 6
        assert response.stats.search_time_ms >= 0
        # cosines: 1, ~0.994, ~0.970, ~0.707, 0, -1
        assert 0.4 < response.stats.average_similarity < 0.5

    @pytest.mark.asyncio
    async def test_search_time_from_log_operation(
        self, engine, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """search_time_ms is the duration measured around the search."""
        ticks = iter([10.0])
        monkeypatch.setattr("coderecall.logging.time.perf_counter", lambda: next(ticks, 10.25))
        response = await engine.search("x axis")
        assert response.stats.search_time_ms == pytest.approx(250.0)

    @pytest.mark.asyncio
    async def test_text_query_needs_provider(self, store, make_embedding) -> None:
        """Without a provider, text queries fail but lookups still work."""
        store.save_embeddings([make_embedding("a")])
        engine = SimilaritySearchEngine(None, store)
        with pytest.raises(ProviderError, match="No embedding provider"):
            await engine.search("anything")
        assert engine.get_coverage_stats().total_embeddings == 1
        assert [r.id for r in engine.find_by_file("src/app.py")] == ["a"]

    @pytest.mark.asyncio
    async def test_empty_store(self, provider, temp_dir) -> None:
        """Searching an empty store returns nothing."""
        from coderecall.retrieval.store import EmbeddingRecordStore

        engine = SimilaritySearchEngine(provider, EmbeddingRecordStore("empty", base_path=temp_dir))
        response = await engine.search("x axis")
        assert response.results == []
        assert response.stats.total_embeddings == 0
        assert response.stats.average_similarity == 0.0

    @pytest.mark.asyncio
    async def test_zero_query_scores_zero(self, engine) -> None:
        """A zero-magnitude query scores 0 against everything."""
        response = await engine.search("nothing")
        assert all(r.similarity_score == 0.0 for r in response.results)
        # ties keep load order
        assert response.results[0].embedding.id == "exact"

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, store, make_embedding) -> None:
        """Provider failures reach the caller unchanged."""
        store.save_embeddings([make_embedding("a")])
        error = ProviderError("backend down")
        engine = SimilaritySearchEngine(FakeProvider(error=error), store)
        with pytest.raises(ProviderError) as exc_info:
            await engine.search("anything")
        assert exc_info.value is error

    @pytest.mark.asyncio
    async def test_no_compatible_dimensions(self, store, make_embedding) -> None:
        """A query of the wrong dimensionality cannot be answered."""
        store.save_embeddings([make_embedding("a")])
        engine = SimilaritySearchEngine(FakeProvider(dimensions=5), store)
        with pytest.raises(DimensionMismatchError):
            await engine.search("anything")

    @pytest.mark.asyncio
    async def test_unsafe_pattern_rejected(self, engine) -> None:
        """Nested-quantifier patterns are rejected."""
        with pytest.raises(InvalidFilterError):
            await engine.search("x axis", {"filters": {"file_pattern": "(a+)+$"}})


class TestRanking:
    """Tests for multi-factor relevance ranking."""

    @pytest.mark.asyncio
    async def test_ranking_populates_factors(self, engine) -> None:
        """Ranked results carry relevance scores and factors."""
        response = await engine.search("x axis", {"k": 3, "enable_ranking": True})
        for result in response.results:
            assert result.relevance_score is not None
            assert result.ranking_factors.similarity == result.similarity_score
            assert 0.0 <= result.ranking_factors.recency <= 1.0
            assert 0.0 <= result.ranking_factors.importance <= 1.0
        relevance = [r.relevance_score for r in response.results]
        assert relevance == sorted(relevance, reverse=True)

    @pytest.mark.asyncio
    async def test_lower_similarity_never_overtakes(self, engine) -> None:
        """With equal other signals, ranking keeps similarity order."""
        plain = await engine.search("x axis", {"k": 3})
        ranked = await engine.search("x axis", {"k": 3, "enable_ranking": True})
        assert [r.embedding.id for r in ranked.results] == [
            r.embedding.id for r in plain.results
        ]

    @pytest.mark.asyncio
    async def test_custom_weights(self, engine) -> None:
        """Weights scale the relevance score."""
        options = SearchOptions(
            k=1,
            enable_ranking=True,
            ranking_weights=RankingWeights(similarity=1.0, recency=0.0, importance=0.0),
        )
        response = await engine.search("x axis", options)
        assert response.results[0].relevance_score == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_without_ranking_no_relevance(self, engine) -> None:
        """Unranked results have no relevance score."""
        response = await engine.search("x axis", {"k": 1})
        assert response.results[0].relevance_score is None
        assert response.results[0].score == response.results[0].similarity_score

    def test_recency(self, make_embedding) -> None:
        """Recency falls from 1 for fresh code to 0 after a year."""
        now = datetime.now(UTC)
        assert calculate_recency(make_embedding("a", last_modified=now)) == pytest.approx(1.0, abs=1e-3)
        half = make_embedding("b", last_modified=now - timedelta(days=182.5))
        assert calculate_recency(half) == pytest.approx(0.5, abs=1e-3)
        old = make_embedding("c", last_modified=now - timedelta(days=800))
        assert calculate_recency(old) == 0.0

    def test_importance(self, make_embedding) -> None:
        """Importance rewards structure and query-matching tags."""
        plain = make_embedding("a", type="file", complexity=1)
        assert calculate_importance(plain) == pytest.approx(0.5)

        rich = make_embedding(
            "b",
            type="function",
            complexity=10,
            exports=["b"],
            dependencies=["os", "json"],
        )
        # 0.5 + 0.2 complexity + 0.15 exports + 0.06 deps + 0.1 function
        assert calculate_importance(rich) == pytest.approx(1.0)

        tagged = make_embedding("c", type="class", tags=["database"])
        assert calculate_importance(tagged, "open a DATABASE connection") == pytest.approx(0.65)
        assert calculate_importance(tagged, "unrelated") == pytest.approx(0.55)


class TestSimilarToEmbedding:
    """Tests for finding records similar to a stored record."""

    def test_excludes_target(self, engine, store) -> None:
        """The target itself is never returned."""
        target = next(r for r in store.load_embeddings() if r.id == "exact")
        results = engine.find_similar_to_embedding(target, k=3)
        ids = [r.embedding.id for r in results]
        assert "exact" not in ids
        assert ids == ["close", "near", "half"]

    def test_with_filters_and_threshold(self, engine, store) -> None:
        """Filters and threshold apply as in search."""
        target = next(r for r in store.load_embeddings() if r.id == "exact")
        results = engine.find_similar_to_embedding(
            target, min_similarity=0.5, filters={"file_pattern": r"src/a\.py"}
        )
        assert [r.embedding.id for r in results] == ["close", "near"]


class TestDiverse:
    """Tests for per-file capped search."""

    @pytest.mark.asyncio
    async def test_caps_results_per_file(self, engine) -> None:
        """No file contributes more than max_per_file results."""
        results = await engine.search_diverse("x axis", k=4, max_per_file=1)
        sources = [r.embedding.source for r in results]
        assert sources == ["src/a.py", "src/b.py", "src/c.py", "src/d.py"]

    @pytest.mark.asyncio
    async def test_default_cap(self, engine) -> None:
        """The default cap allows two results per file."""
        results = await engine.search_diverse("x axis", k=10)
        ids = [r.embedding.id for r in results]
        assert ids == ["exact", "close", "half", "ortho", "opposite"]

    @pytest.mark.asyncio
    async def test_passes_options(self, engine) -> None:
        """Extra options reach the underlying search."""
        results = await engine.search_diverse("x axis", k=10, min_similarity=0.9)
        assert [r.embedding.id for r in results] == ["exact", "close"]


class TestBatchAndMetrics:
    """Tests for multi-query helpers."""

    @pytest.mark.asyncio
    async def test_batch_search(self, engine) -> None:
        """Each query gets its own result list."""
        results = await engine.batch_search(["x axis", "y axis"], {"k": 1})
        assert results["x axis"][0].embedding.id == "exact"
        assert results["y axis"][0].embedding.id == "ortho"

    @pytest.mark.asyncio
    async def test_search_metrics(self, engine) -> None:
        """Metrics average over the test queries."""
        metrics = await engine.get_search_metrics(["x axis", "y axis"])
        assert metrics.average_results == 6
        assert metrics.average_search_time_ms >= 0
        assert metrics.coverage_by_type == {"function": 10, "class": 2}

    @pytest.mark.asyncio
    async def test_search_metrics_no_queries(self, engine) -> None:
        """No queries give zero metrics."""
        metrics = await engine.get_search_metrics([])
        assert metrics.average_results == 0


class TestLookups:
    """Tests for exact lookups and coverage."""

    def test_find_by_file(self, engine) -> None:
        """Exact source match."""
        assert [r.id for r in engine.find_by_file("src/a.py")] == ["exact", "close", "near"]
        assert engine.find_by_file("src/none.py") == []

    def test_find_by_tags(self, provider, store, make_embedding) -> None:
        """Any-tag and all-tags semantics."""
        store.save_embeddings(
            [
                make_embedding("a", tags=["db", "auth"]),
                make_embedding("b", tags=["db"]),
                make_embedding("c", tags=["ui"]),
            ]
        )
        engine = SimilaritySearchEngine(provider, store)
        assert [r.id for r in engine.find_by_tags(["db", "auth"])] == ["a", "b"]
        assert [r.id for r in engine.find_by_tags(["db", "auth"], match_all=True)] == ["a"]

    def test_find_by_complexity(self, provider, store, make_embedding) -> None:
        """Inclusive complexity range."""
        store.save_embeddings(
            [make_embedding("a", complexity=2), make_embedding("b", complexity=5), make_embedding("c", complexity=9)]
        )
        engine = SimilaritySearchEngine(provider, store)
        assert [r.id for r in engine.find_by_complexity(2, 5)] == ["a", "b"]

    def test_coverage_stats(self, provider, store, make_embedding) -> None:
        """Coverage aggregates by type and language with time bounds."""
        old = datetime(2023, 5, 1, tzinfo=UTC)
        new = datetime(2024, 6, 1, tzinfo=UTC)
        store.save_embeddings(
            [
                make_embedding("a", last_modified=old),
                make_embedding("b", type="class", language="go", last_modified=new),
                make_embedding("c"),
            ]
        )
        coverage = SimilaritySearchEngine(provider, store).get_coverage_stats()
        assert coverage.total_embeddings == 3
        assert coverage.by_type == {"function": 2, "class": 1}
        assert coverage.by_language == {"python": 2, "go": 1}
        assert coverage.oldest_embedding == old
        assert coverage.newest_embedding == new

    def test_coverage_empty(self, provider, store) -> None:
        """An empty store has no time bounds."""
        coverage = SimilaritySearchEngine(provider, store).get_coverage_stats()
        assert coverage.total_embeddings == 0
        assert coverage.oldest_embedding is None
        assert coverage.newest_embedding is None
