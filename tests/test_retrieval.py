import asyncio

import pytest

from docrag.errors import ExternalServiceError, RetrievalError
from docrag.retrieval import HybridRetriever, extract_terms, rank_sparse, reciprocal_rank_fusion, tokenize
from docrag.schemas import ResultSource
from conftest import FakeEmbedder, InMemoryChunkStore, make_result


def test_tokenize_handles_hangul_and_case():
    assert tokenize("Reset 비밀번호, please!") == ["reset", "비밀번호", "please"]


def test_extract_terms_prefers_longer_unique_terms():
    assert extract_terms("How do I reset my password quickly? password!") == [
        "password", "quickly", "reset", "how", "do", "my",
    ]
    assert extract_terms("a b c") == []


def test_rrf_fuses_and_tags_sources():
    dense = [make_result("a", score=0.9), make_result("b", score=0.8), make_result("c", score=0.7)]
    sparse = [make_result("c", score=3.0), make_result("d", score=2.0)]
    fused = reciprocal_rank_fusion(dense, sparse, limit=10)

    assert [r.chunk_id for r in fused] == ["c", "a", "b", "d"]
    assert fused[0].score == pytest.approx(1 / 63 + 1 / 61)
    assert [r.source for r in fused] == [
        ResultSource.HYBRID, ResultSource.DENSE, ResultSource.DENSE, ResultSource.SPARSE,
    ]
    assert fused[0].dense_score == 0.7
    assert fused[3].dense_score is None


def test_rrf_ties_keep_dense_order_and_limit():
    dense = [make_result("a"), make_result("b")]
    sparse = [make_result("x"), make_result("y")]
    fused = reciprocal_rank_fusion(dense, sparse, limit=3)
    assert [r.chunk_id for r in fused] == ["a", "x", "b"]


def test_rank_sparse_puts_phrase_matches_first():
    candidates = [
        make_result("1", "password policy overview for admins"),
        make_result("2", "To reset password open the settings page"),
        make_result("3", "billing questions and invoices"),
    ]
    ranked = rank_sparse("Reset  password", candidates)
    assert ranked[0].chunk_id == "2"
    assert ranked[0].score >= 1.0
    assert all(r.source == ResultSource.SPARSE for r in ranked)


def test_rank_sparse_without_query_tokens():
    ranked = rank_sparse("???", [make_result("1", "text")])
    assert [r.chunk_id for r in ranked] == ["1"]
    assert rank_sparse("query", []) == []


def test_hybrid_search_overfetches_and_fuses():
    store = InMemoryChunkStore(
        dense=[make_result("a", "alpha text", 0.9), make_result("b", "beta text", 0.8)],
        keyword=[make_result("b", "beta text"), make_result("c", "gamma beta")],
    )
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=5)
    results = asyncio.run(retriever.hybrid_search("acme", "beta", limit=5))

    assert store.dense_calls[0]["limit"] == 10
    assert store.keyword_calls[0]["terms"] == ["beta"]
    assert results[0].chunk_id == "b"
    assert results[0].source == ResultSource.HYBRID
    assert {r.chunk_id for r in results} == {"a", "b", "c"}


def test_hybrid_search_empty_inputs_return_nothing():
    store = InMemoryChunkStore(dense=[make_result("a")])
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=5)
    assert asyncio.run(retriever.hybrid_search("acme", "   ")) == []
    assert asyncio.run(retriever.hybrid_search("acme", "query", dataset_ids=[])) == []
    assert asyncio.run(retriever.hybrid_search_multi_dataset("acme", [], "query")) == []
    assert store.dense_calls == []


def test_hybrid_search_degrades_to_sparse_when_dense_fails():
    store = InMemoryChunkStore(keyword=[make_result("k", "keyword hit")])
    retriever = HybridRetriever(store, FakeEmbedder(fail=True), timeout_seconds=5)
    results = asyncio.run(retriever.hybrid_search("acme", "keyword"))
    assert [r.chunk_id for r in results] == ["k"]
    assert results[0].source == ResultSource.SPARSE
    assert results[0].dense_score is None


def test_hybrid_search_degrades_to_dense_when_sparse_fails():
    store = InMemoryChunkStore(dense=[make_result("d", score=0.8)], keyword_error=RuntimeError("db"))
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=5)
    results = asyncio.run(retriever.hybrid_search("acme", "query"))
    assert [r.chunk_id for r in results] == ["d"]
    assert results[0].dense_score == 0.8


def test_hybrid_search_raises_when_both_paths_fail():
    store = InMemoryChunkStore(keyword_error=RuntimeError("db"))
    retriever = HybridRetriever(store, FakeEmbedder(fail=True), timeout_seconds=5)
    with pytest.raises(RetrievalError):
        asyncio.run(retriever.hybrid_search("acme", "query"))


def test_slow_dense_path_times_out():
    class SlowStore(InMemoryChunkStore):
        async def dense_search(self, tenant_id, embedding, limit, dataset_ids=None):
            await asyncio.sleep(1)
            return []

    store = SlowStore(keyword=[make_result("k", "keyword hit")])
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=0.05)
    results = asyncio.run(retriever.hybrid_search("acme", "keyword"))
    assert [r.chunk_id for r in results] == ["k"]


def test_multi_dataset_search_passes_dataset_filter():
    store = InMemoryChunkStore(dense=[make_result("a")])
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=5)
    asyncio.run(retriever.hybrid_search_multi_dataset("acme", ("ds-1", "ds-2"), "query", limit=3))
    assert store.dense_calls[0]["dataset_ids"] == ["ds-1", "ds-2"]
    assert store.keyword_calls[0]["dataset_ids"] == ["ds-1", "ds-2"]


def test_vector_search_wraps_store_errors():
    store = InMemoryChunkStore(dense_error=RuntimeError("connection reset"))
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=5)
    with pytest.raises(ExternalServiceError) as info:
        asyncio.run(retriever.vector_search("acme", "query"))
    assert info.value.service == "vector_search"
    assert asyncio.run(retriever.vector_search("acme", " ")) == []


def test_sample_chunks_requires_datasets():
    store = InMemoryChunkStore(dense=[make_result("a"), make_result("b")])
    retriever = HybridRetriever(store, FakeEmbedder(), timeout_seconds=5)
    assert asyncio.run(retriever.sample_chunks_by_datasets("acme", [])) == []
    assert len(asyncio.run(retriever.sample_chunks_by_datasets("acme", ["ds"], limit=1))) == 1
