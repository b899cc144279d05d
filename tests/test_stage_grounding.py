"""Tests for knowledge chunking, similarity search and the embedding cache."""

import math
from unittest.mock import MagicMock

import pytest

from replygate.config import GroundingConfig
from replygate.errors import CollaboratorError, GroundingUnavailable
from replygate.stages.grounding import (
    THRESHOLDS,
    EmbeddingCache,
    GroundingEngine,
    chunk_content,
    cosine_similarity,
)

ACCOUNT = "acct-1"
QUERY = "When will my package arrive at my door?"


def unit(similarity: float) -> list[float]:
    """A 2-D unit vector whose cosine with [1, 0] equals ``similarity``."""
    return [similarity, math.sqrt(1 - similarity ** 2)]


def doc(name: str) -> str:
    return (f"{name}: " + "details about our store policies and shipping times. " * 2).strip()


@pytest.fixture
def vectors():
    return {QUERY: [1.0, 0.0]}


@pytest.fixture
def embedder(vectors):
    mock = MagicMock()
    mock.embed.side_effect = lambda text, model: vectors[text]
    return mock


@pytest.fixture
def engine(store, embedder):
    return GroundingEngine(store, embedder, "nomic-embed-text")


def index(engine, vectors, source, similarity):
    content = doc(source)
    vectors[content] = unit(similarity)
    engine.index_document(ACCOUNT, source, content)


# --- chunking ---------------------------------------------------------------


def test_short_document_stays_whole():
    text = "Shipping takes 3-5 business days within the continental US. " * 2
    assert chunk_content(text) == [text.strip()]


def test_tiny_document_dropped():
    assert chunk_content("Too short.") == []


def test_long_document_split_with_overlap():
    words = [f"w{i}" for i in range(1200)]
    chunks = chunk_content(" ".join(words), chunk_size=512, overlap=50)

    assert len(chunks) == 3
    first, second = chunks[0].split(), chunks[1].split()
    assert len(first) == 512
    assert first[-50:] == second[:50]
    assert chunks[-1].split()[-1] == "w1199"


# --- similarity -------------------------------------------------------------


def test_cosine_similarity():
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    with pytest.raises(ValueError):
        cosine_similarity([1.0], [1.0, 0.0])


def test_threshold_for_quality(engine):
    assert engine.threshold_for("high") == 0.75
    assert engine.threshold_for("exploratory") == 0.65
    assert engine.threshold_for(None) == THRESHOLDS["balanced"]
    with pytest.raises(ValueError, match="Unknown grounding quality"):
        engine.threshold_for("strict")


# --- search -----------------------------------------------------------------


def test_balanced_threshold_boundary(engine, vectors):
    index(engine, vectors, "returns.md", 0.69)
    index(engine, vectors, "shipping.md", 0.71)

    result = engine.search(ACCOUNT, QUERY)

    assert result.has_grounded_knowledge
    assert [s.source for s in result.sources] == ["shipping.md"]
    assert result.sources[0].similarity == pytest.approx(0.71)
    assert result.threshold == 0.70
    assert result.total_sources == 2


def test_exploratory_accepts_lower_similarity(engine, vectors):
    index(engine, vectors, "returns.md", 0.69)
    result = engine.search(ACCOUNT, QUERY, quality="exploratory")
    assert [s.source for s in result.sources] == ["returns.md"]


def test_best_chunk_per_source(engine, vectors, store):
    weak, strong = doc("faq part one"), doc("faq part two")
    vectors[weak] = unit(0.2)
    vectors[strong] = unit(0.9)
    store.replace_chunks(ACCOUNT, "faq.md", [weak, strong])

    result = engine.search(ACCOUNT, QUERY)

    assert len(result.sources) == 1
    assert result.sources[0].chunk == strong
    assert result.total_sources == 1


def test_top_k_sorted_descending(engine, vectors):
    for i, similarity in enumerate([0.71, 0.95, 0.80, 0.74, 0.90, 0.85, 0.99]):
        index(engine, vectors, f"doc-{i}.md", similarity)

    result = engine.search(ACCOUNT, QUERY)

    similarities = [s.similarity for s in result.sources]
    assert len(similarities) == 5
    assert similarities == sorted(similarities, reverse=True)
    assert similarities[0] == pytest.approx(0.99)
    assert result.total_sources == 7


def test_empty_index_skips_embedding(engine, embedder):
    result = engine.search(ACCOUNT, QUERY)
    assert result.sources == []
    assert not result.has_grounded_knowledge
    embedder.embed.assert_not_called()


def test_unembedded_chunks_embedded_lazily(engine, vectors, store):
    content = doc("policy")
    vectors[content] = unit(0.8)
    store.replace_chunks(ACCOUNT, "policy.md", [content])

    engine.search(ACCOUNT, QUERY)

    assert store.list_chunks(ACCOUNT)[0]["embedding"] == pytest.approx(unit(0.8))


def test_embedding_failure_raises_grounding_unavailable(store):
    embedder = MagicMock()
    embedder.embed.side_effect = CollaboratorError("connection refused")
    engine = GroundingEngine(store, embedder, "nomic-embed-text")
    store.replace_chunks(ACCOUNT, "policy.md", [doc("policy")])

    with pytest.raises(GroundingUnavailable):
        engine.search(ACCOUNT, QUERY)


def test_index_document_replaces_chunks(engine, vectors, store):
    index(engine, vectors, "faq.md", 0.8)
    index(engine, vectors, "faq.md", 0.8)
    rows = store.list_chunks(ACCOUNT)
    assert len(rows) == 1
    assert rows[0]["embedding"] is not None


def test_config_top_k(store, embedder, vectors):
    engine = GroundingEngine(store, embedder, "m", config=GroundingConfig(top_k=1))
    index(engine, vectors, "a.md", 0.9)
    index(engine, vectors, "b.md", 0.8)
    assert [s.source for s in engine.search(ACCOUNT, QUERY).sources] == ["a.md"]


# --- cache ------------------------------------------------------------------


def test_cache_keys_on_model_and_text():
    cache = EmbeddingCache()
    cache.put("hello", "model-a", [1.0])

    assert cache.get("hello", "model-a") == [1.0]
    assert cache.get("hello", "model-b") is None
    assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1}

    cache.clear()
    assert cache.stats() == {"entries": 0, "hits": 0, "misses": 0}


def test_repeated_query_hits_cache(engine, embedder, vectors):
    index(engine, vectors, "a.md", 0.9)
    engine.search(ACCOUNT, QUERY)
    engine.search(ACCOUNT, QUERY)

    query_calls = [c for c in embedder.embed.call_args_list if c.args[0] == QUERY]
    assert len(query_calls) == 1
    assert engine.cache.stats()["hits"] >= 1


def test_stored_vectors_record_their_model(engine, vectors, store):
    index(engine, vectors, "faq.md", 0.8)
    assert store.list_chunks(ACCOUNT)[0]["embedding_model"] == "nomic-embed-text"


def test_model_change_reembeds_stored_chunks(store, vectors):
    content = doc("shipping")
    old = MagicMock()
    old.embed.return_value = [0.1, 0.2, 0.3]
    GroundingEngine(store, old, "old-model").index_document(ACCOUNT, "shipping.md", content)

    new = MagicMock()
    new.embed.side_effect = lambda text, model: [1.0, 0.0, 0.0, 0.0] if text == QUERY else [0.8, 0.6, 0.0, 0.0]
    result = GroundingEngine(store, new, "new-model").search(ACCOUNT, QUERY)

    assert [s.source for s in result.sources] == ["shipping.md"]
    assert result.sources[0].similarity == pytest.approx(0.8)
    row = store.list_chunks(ACCOUNT)[0]
    assert row["embedding_model"] == "new-model"
    assert len(row["embedding"]) == 4


def test_mismatched_vectors_raise_grounding_unavailable(store):
    embedder = MagicMock()
    embedder.embed.side_effect = lambda text, model: [1.0, 0.0] if text == QUERY else [1.0, 0.0, 0.0]
    engine = GroundingEngine(store, embedder, "nomic-embed-text")
    store.replace_chunks(ACCOUNT, "policy.md", [doc("policy")])

    with pytest.raises(GroundingUnavailable, match="length mismatch"):
        engine.search(ACCOUNT, QUERY)


def test_clear_cache_drops_model_tag(engine, vectors, store):
    index(engine, vectors, "faq.md", 0.8)
    assert store.clear_chunk_embeddings(ACCOUNT) == 1
    row = store.list_chunks(ACCOUNT)[0]
    assert row["embedding"] is None
    assert row["embedding_model"] is None
