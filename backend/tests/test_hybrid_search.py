"""
Tests for HybridSearchEngine against in-memory stores.
"""
import time

import pytest
from conftest import FakeEmbedder, FakeLexicalStore, FakeVectorStore
from taskmail.common.exceptions import RetrievalError
from taskmail.config.models import SearchConfig
from taskmail.db.models import EntityType
from taskmail.retrieval.cache import TTLEmbeddingCache
from taskmail.retrieval.hybrid_search import HybridSearchEngine
from taskmail.retrieval.results import SearchOptions

EMAIL = EntityType.EMAIL
TASK = EntityType.TASK

NEAR_BUDGET = [0.9, 0.1, 0.0, 0.0]


@pytest.fixture
def populated(corpus):
    corpus.add(
        EMAIL,
        1,
        "alice",
        "Quarterly Budget Review",
        "Please send the budget report by Friday",
        embedding=[1.0, 0.0, 0.0, 0.0],
    )
    corpus.add(EMAIL, 2, "alice", "Team lunch", "Pizza on Thursday", embedding=[0.0, 1.0, 0.0, 0.0])
    corpus.add(TASK, 3, "alice", "Book flights", "Conference travel", embedding=[0.0, 0.0, 1.0, 0.0])
    corpus.add(EMAIL, 4, "bob", "Budget report", "Bob's budget report", embedding=[1.0, 0.0, 0.0, 0.0])
    corpus.add(EMAIL, 5, "alice", "Budget follow-up", "Numbers attached", embedding=[0.7, 0.3, 0.0, 0.0])
    return corpus


@pytest.fixture
def embedder():
    return FakeEmbedder(vectors={"buget report": NEAR_BUDGET}, default=[0.1, 0.1, 0.1, 0.9])


def _engine(lexical_store, vector_store, embedder, **kwargs):
    return HybridSearchEngine(lexical_store, vector_store, embedder, **kwargs)


class TestEndToEndScenario:
    """The misspelled "buget report" query across search modes."""

    @pytest.mark.asyncio
    async def test_lexical_only_tolerates_typo(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        outcome = await engine.search(
            "alice", "buget report", SearchOptions(use_semantic=False)
        )

        results = outcome.unwrap()
        assert results.results[0].entity_id == 1
        assert results.results[0].match_kind == "lexical"
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_fuzzy_match_alone_finds_entity(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        results = (
            await engine.search("alice", "buget", SearchOptions(use_semantic=False))
        ).unwrap()

        assert {r.entity_id for r in results.results} >= {1}
        assert all(r.score <= 0.5 for r in results.results)

    @pytest.mark.asyncio
    async def test_semantic_only(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        results = (
            await engine.search("alice", "buget report", SearchOptions(use_lexical=False))
        ).unwrap()

        assert results.results[0].entity_id == 1
        assert results.results[0].match_kind == "semantic"
        assert lexical_store.calls == []

    @pytest.mark.asyncio
    async def test_hybrid_returns_entity_once(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        results = (await engine.search("alice", "buget report")).unwrap()

        keys = [r.key for r in results.results]
        assert len(keys) == len(set(keys))
        top = results.results[0]
        assert (top.entity_id, top.match_kind) == (1, "hybrid")
        assert top.lexical_score is not None and top.semantic_score is not None
        assert results.degraded is False


class TestEmptyQueries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["", "   ", None, "?!"])
    async def test_no_store_calls(self, populated, lexical_store, vector_store, embedder, raw):
        engine = _engine(lexical_store, vector_store, embedder)

        outcome = await engine.search("alice", raw)

        assert outcome.is_ok()
        assert len(outcome.unwrap()) == 0
        assert lexical_store.calls == []
        assert vector_store.calls == []
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_both_sources_disabled(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        outcome = await engine.search(
            "alice", "budget", SearchOptions(use_lexical=False, use_semantic=False)
        )

        assert outcome.unwrap().results == []
        assert lexical_store.calls == []


class TestDegradation:
    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_lexical(self, populated, lexical_store, vector_store):
        engine = _engine(lexical_store, vector_store, FakeEmbedder(fail=True))

        outcome = await engine.search("alice", "buget report")

        results = outcome.unwrap()
        assert results.degraded is True
        assert results.results[0].entity_id == 1
        assert {r.match_kind for r in results.results} == {"lexical"}
        assert vector_store.calls == []

    @pytest.mark.asyncio
    async def test_deadline_exceeded_falls_back_to_lexical(self, populated, lexical_store, vector_store):
        engine = _engine(
            lexical_store,
            vector_store,
            FakeEmbedder(delay=1.0),
            search_config=SearchConfig(deadline_seconds=0.05),
        )

        results = (await engine.search("alice", "budget")).unwrap()

        assert results.degraded is True
        assert results.results
        assert all(r.match_kind == "lexical" for r in results.results)

    @pytest.mark.asyncio
    async def test_lexical_store_failure_is_err(self, populated, vector_store, embedder):
        engine = _engine(FakeLexicalStore(populated, fail=True), vector_store, embedder)

        outcome = await engine.search("alice", "budget")

        assert outcome.is_err()
        assert isinstance(outcome.unwrap_err(), RetrievalError)

    @pytest.mark.asyncio
    async def test_vector_store_failure_is_err_not_degraded(self, populated, lexical_store, embedder):
        engine = _engine(lexical_store, FakeVectorStore(populated, fail=True), embedder)

        outcome = await engine.search("alice", "budget")

        assert outcome.is_err()

    @pytest.mark.asyncio
    async def test_hung_lexical_store_times_out_as_err(self, populated, vector_store, embedder):
        class HungStore(FakeLexicalStore):
            def search(self, *args, **kwargs):
                time.sleep(0.5)
                return super().search(*args, **kwargs)

        engine = _engine(
            HungStore(populated),
            vector_store,
            embedder,
            search_config=SearchConfig(deadline_seconds=0.05, request_timeout_seconds=0.1),
        )

        outcome = await engine.search("alice", "budget")

        assert outcome.is_err()
        assert outcome.unwrap_err().error_code == "SEARCH_TIMEOUT"

    @pytest.mark.asyncio
    async def test_unexpected_errors_propagate(self, populated, vector_store, embedder):
        class BrokenStore(FakeLexicalStore):
            def search(self, *args, **kwargs):
                raise RuntimeError("bug")

        engine = _engine(BrokenStore(populated), vector_store, embedder)

        with pytest.raises(RuntimeError):
            await engine.search("alice", "budget")


class TestScoping:
    @pytest.mark.asyncio
    async def test_results_belong_to_owner(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        alice = (await engine.search("alice", "budget report")).unwrap()
        bob = (await engine.search("bob", "budget report")).unwrap()

        assert 4 not in {r.entity_id for r in alice.results}
        assert {r.entity_id for r in bob.results} == {4}

    @pytest.mark.asyncio
    async def test_entity_type_filter(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        results = (
            await engine.search("alice", "book flights", SearchOptions(entity_types=(TASK,)))
        ).unwrap()

        assert {r.entity_type for r in results.results} == {TASK}
        assert {et for et, _ in lexical_store.calls} == {TASK}
        assert {et for et, _ in vector_store.calls} == {TASK}

    @pytest.mark.asyncio
    async def test_limit_and_total_order(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        limited = (await engine.search("alice", "budget", SearchOptions(limit=2))).unwrap()
        full = (await engine.search("alice", "budget")).unwrap()

        assert len(limited) == 2
        assert limited.results == full.results[:2]
        scores = [r.score for r in full.results]
        assert scores == sorted(scores, reverse=True)

    @pytest.mark.asyncio
    async def test_min_similarity_filters_semantic(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(
            lexical_store,
            vector_store,
            embedder,
            search_config=SearchConfig(min_similarity=0.5),
        )

        results = (
            await engine.search("alice", "buget report", SearchOptions(use_lexical=False))
        ).unwrap()

        assert {r.entity_id for r in results.results} == {1, 5}


class TestQueryEmbeddingCache:
    @pytest.mark.asyncio
    async def test_repeated_query_embeds_once(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(
            lexical_store,
            vector_store,
            embedder,
            cache=TTLEmbeddingCache(ttl_seconds=60, max_size=10),
            cache_namespace="fake:4",
        )

        await engine.search("alice", "buget report")
        await engine.search("bob", "buget report")

        assert embedder.calls == ["buget report"]

    @pytest.mark.asyncio
    async def test_failed_embedding_not_cached(self, populated, lexical_store, vector_store):
        embedder = FakeEmbedder(fail=True)
        engine = _engine(
            lexical_store,
            vector_store,
            embedder,
            cache=TTLEmbeddingCache(ttl_seconds=60, max_size=10),
        )

        await engine.search("alice", "budget")
        await engine.search("alice", "budget")

        assert len(embedder.calls) == 2


class TestFindSimilar:
    @pytest.mark.asyncio
    async def test_neighbours_exclude_source(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        results = (await engine.find_similar("alice", EMAIL, 1, limit=3)).unwrap()

        ids = [r.entity_id for r in results.results]
        assert 1 not in ids
        assert ids[0] == 5
        assert all(r.match_kind == "semantic" for r in results.results)
        assert results.query == "similar:email:1"
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_entity_without_embedding(self, populated, lexical_store, vector_store, embedder):
        populated.add(TASK, 6, "alice", "Unembedded task")
        engine = _engine(lexical_store, vector_store, embedder)

        results = (await engine.find_similar("alice", TASK, 6)).unwrap()

        assert results.results == []

    @pytest.mark.asyncio
    async def test_other_owners_entity_not_visible(self, populated, lexical_store, vector_store, embedder):
        engine = _engine(lexical_store, vector_store, embedder)

        results = (await engine.find_similar("bob", EMAIL, 1)).unwrap()

        assert results.results == []

    @pytest.mark.asyncio
    async def test_store_failure_is_err(self, populated, lexical_store, embedder):
        engine = _engine(lexical_store, FakeVectorStore(populated, fail=True), embedder)

        outcome = await engine.find_similar("alice", EMAIL, 1)

        assert outcome.is_err()
