"""Tests for the RAGEngine orchestrator."""

import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from context_engine.config import RAGConfig
from context_engine.errors import GenerationFailed, InvalidInput
from context_engine.llm.base import Generator
from context_engine.rag.chunking import ChunkingOptions
from context_engine.rag.context import ContextBuilder
from context_engine.rag.engine import QueryOptions, RAGEngine, detect_intent
from context_engine.rag.models import Citation, Document, GeneratedResponse, GenerationChunk

from conftest import FailingEmbedder, ScriptedGenerator


DOCS = [
    Document(id="ml", title="ML Notes", source="notes/ml.md",
             content="Machine learning builds models from training data. Neural networks are popular."),
    Document(id="db", title="Databases", source="notes/db.md",
             content="Relational databases store rows in tables. SQL queries relational databases."),
]

FIXED = ChunkingOptions(strategy="fixed", chunk_size=1000, min_chunk_size=0)


@pytest.fixture
def generator():
    return ScriptedGenerator()


@pytest.fixture
def rag(embedder, store, generator, config):
    with RAGEngine(embedder, store, generator, config=config, background_sweep=False) as engine:
        for doc in DOCS:
            engine.ingest(doc, FIXED)
        yield engine


class TestIngestion:
    """Tests for ingesting and deleting documents."""

    def test_ingest_embeds_and_stores(self, rag, store):
        assert set(store.rows) == {"ml#0", "db#0"}
        content, embedding, metadata = store.rows["ml#0"]
        assert embedding
        assert metadata["document_title"] == "ML Notes"

    def test_ingest_without_index(self, embedder, store, generator, config):
        with RAGEngine(embedder, store, generator, config=config, background_sweep=False) as engine:
            chunks = engine.ingest(Document(id="x", content="Only chunked."), index=False)
        assert chunks[0].embedding is None
        assert store.rows == {}

    def test_ingest_clears_search_cache(self, rag, store):
        rag.query("machine learning", QueryOptions(include_related=False))
        rag.ingest(Document(id="ml2", content="Machine learning again."), FIXED)
        assert rag.search_engine.get_cache_stats()["size"] == 0

    def test_ingest_batch_reports_per_document(self, rag, store):
        processed = rag.ingest_batch([Document(id="a", content="Alpha text."), "not a document"], FIXED)
        assert processed[0].success and processed[0].chunks[0].embedding
        assert processed[1].success is False
        assert "a#0" in store.rows

    def test_delete_documents(self, rag, store):
        assert rag.delete_documents(["db"]) == 1
        assert set(store.rows) == {"ml#0"}
        assert rag.delete_documents([]) == 0


class TestQuery:
    """Tests for the query pipeline."""

    def test_answers_with_sources_and_citations(self, rag, generator):
        response = rag.query("What is machine learning?")

        assert not response.degraded
        assert response.answer == "The answer [1]."
        assert response.sources[0].chunk.document_id == "ml"
        assert response.confidence == pytest.approx(0.8)
        assert [c.index for c in response.citations] == [1]
        assert response.citations[0].source == "notes/ml.md"
        assert response.follow_up_questions == ("What else should I know?",)
        assert response.metadata["intent"] == "definition"
        assert response.metadata["states"][-1] == "done"

    def test_generator_sees_numbered_context(self, rag, generator):
        rag.query("machine learning", QueryOptions(include_related=False))
        request = generator.requests[0]
        assert request.query == "machine learning"
        assert request.context[0].startswith("Machine learning builds models")
        assert request.options["temperature"] == 0.7

    def test_generation_option_overrides(self, rag, generator):
        rag.query("machine learning", QueryOptions(include_related=False,
                                                   generation={"temperature": 0.1, "model": "tiny"}))
        assert generator.requests[0].options["temperature"] == 0.1
        assert generator.requests[0].options["model"] == "tiny"

    def test_out_of_range_citations_are_dropped(self, embedder, store, config):
        class Citing(Generator):
            def generate(self, request):
                return GeneratedResponse(answer="See [1] and [7].", confidence=0.6,
                                         citations=(Citation(index=7), Citation(index=1)))

        with RAGEngine(embedder, store, Citing(), config=config, background_sweep=False) as engine:
            engine.ingest(DOCS[0], FIXED)
            response = engine.query("machine learning", QueryOptions(include_related=False))

        assert [c.index for c in response.citations] == [1]
        assert "[7]" not in response.answer
        assert "[1]" in response.answer

    def test_metrics(self, rag):
        response = rag.query("machine learning")
        metrics = response.metrics
        assert metrics.total_latency > 0
        assert metrics.retrieval_latency == pytest.approx(0.3 * metrics.total_latency)
        assert metrics.generation_latency == pytest.approx(0.6 * metrics.total_latency)
        assert metrics.hallucination_score == pytest.approx(0.2)
        assert 0 < metrics.context_utilization <= 1

    def test_related_documents_exclude_sources(self, rag):
        response = rag.query("machine learning", QueryOptions(max_results=1))
        source_ids = {r.id for r in response.sources}
        assert all(r.id not in source_ids for r in response.related_documents)
        assert len(response.related_documents) <= 3

    def test_invalid_query_raises(self, rag):
        with pytest.raises(InvalidInput):
            rag.query("   ")
        with pytest.raises(InvalidInput):
            rag.query("ok", {"max_results": 2})
        assert rag.get_statistics()["total_queries"] == 0

    def test_empty_context_still_generates(self, rag, generator):
        response = rag.query("machine learning", QueryOptions(max_context_tokens=1, include_related=False))
        assert not response.degraded
        assert generator.requests[0].context == ()
        assert response.metadata["context_fallback"] == "empty_context"
        assert response.citations == ()

    def test_context_build_failure_falls_back_to_empty(self, embedder, store, generator, config):
        def broken(text):
            raise RuntimeError("tokenizer crashed")

        with RAGEngine(embedder, store, generator, config=config, background_sweep=False,
                       context_builder=ContextBuilder(token_estimator=broken)) as engine:
            engine.ingest(DOCS[0], FIXED)
            response = engine.query("machine learning", QueryOptions(include_related=False))

        assert not response.degraded
        assert response.context.is_empty
        assert generator.requests[-1].context == ()


class TestDegradedResponses:
    """Tests for backend failures turning into degraded responses."""

    def test_retrieval_failure(self, store, generator, config):
        with RAGEngine(FailingEmbedder(), store, generator, config=config, background_sweep=False) as engine:
            response = engine.query("machine learning")

        assert response.degraded
        assert response.confidence == 0
        assert response.answer.startswith("I apologize, but I encountered an error")
        assert response.metadata["error_kind"] == "retrieval_failed"
        assert response.metadata["failed_after"] == "query_processed"
        assert response.metadata["states"][-1] == "failed"
        assert generator.requests == []

    def test_generation_failure(self, rag, generator):
        generator.error = RuntimeError("model offline")
        response = rag.query("machine learning")

        assert response.degraded
        assert response.metadata["error_kind"] == "generation_failed"
        assert "model offline" in response.answer
        assert len(rag.get_conversation_history()) == 0
        assert rag.get_statistics()["failed_queries"] == 1

    def test_generation_timeout(self, embedder, store):
        class Slow(Generator):
            def generate(self, request):
                time.sleep(0.5)
                return GeneratedResponse(answer="late")

        config = RAGConfig(retrieval_timeout=None, generation_timeout=0.05, min_chunk_size=0)
        with RAGEngine(embedder, store, Slow(), config=config, background_sweep=False) as engine:
            engine.ingest(DOCS[0], FIXED)
            response = engine.query("machine learning", QueryOptions(include_related=False))

        assert response.degraded
        assert response.metadata["error_kind"] == GenerationFailed.kind

    def test_non_response_from_generator(self, embedder, store, config):
        class Wrong(Generator):
            def generate(self, request):
                return "plain string"

        with RAGEngine(embedder, store, Wrong(), config=config, background_sweep=False) as engine:
            response = engine.query("anything at all")
        assert response.metadata["error_kind"] == "generation_failed"


class TestHistory:
    """Tests for conversation history handling."""

    def test_history_is_bounded(self, embedder, store, generator):
        config = RAGConfig(retrieval_timeout=None, generation_timeout=None,
                           max_conversation_history=2, min_chunk_size=0)
        with RAGEngine(embedder, store, generator, config=config, background_sweep=False) as engine:
            engine.ingest(DOCS[0], FIXED)
            for query in ("first question", "second question", "third question"):
                engine.query(query, QueryOptions(include_related=False))
            history = engine.get_conversation_history()

        assert [t.query for t in history] == ["second question", "third question"]

    def test_history_limit_and_clear(self, rag):
        rag.query("machine learning", QueryOptions(include_related=False))
        rag.query("relational databases", QueryOptions(include_related=False))
        assert [t.query for t in rag.get_conversation_history(1)] == ["relational databases"]
        rag.clear_conversation_history()
        assert rag.get_conversation_history() == []

    def test_follow_up_uses_history(self, rag, generator):
        rag.query("Tell me about relational databases", QueryOptions(include_related=False))
        response = rag.query("what about SQL", QueryOptions(include_related=False))

        assert response.sources[0].chunk.document_id == "db"
        history_messages = generator.requests[-1].conversation_history
        assert history_messages[0] == {"role": "user", "content": "Tell me about relational databases"}
        assert history_messages[1]["role"] == "assistant"


class TestConcurrency:
    """Tests for queries issued from several threads at once."""

    def test_bounds_hold_under_concurrent_queries(self, embedder, store, generator):
        config = RAGConfig(retrieval_timeout=None, generation_timeout=None, stream_delay=0.0,
                           max_conversation_history=5, cache_max_size=4, min_chunk_size=0)
        with RAGEngine(embedder, store, generator, config=config, background_sweep=False) as engine:
            for doc in DOCS:
                engine.ingest(doc, FIXED)

            def ask(worker):
                for i in range(5):
                    engine.query(f"machine learning question {worker} {i}")
                    engine.search_engine.search(f"relational databases {worker} {i}")

            with ThreadPoolExecutor(max_workers=8) as pool:
                list(pool.map(ask, range(8)))

            stats = engine.get_statistics()
            cache_stats = engine.search_engine.get_cache_stats()
            history = engine.get_conversation_history()

        assert stats["total_queries"] == 40
        assert stats["failed_queries"] == 0
        assert len(history) == 5
        assert cache_stats["size"] <= 4


class TestStreaming:
    """Tests for stream_query."""

    def test_streams_and_records_history(self, rag):
        pieces = list(rag.stream_query("machine learning"))
        assert pieces[-1].done
        assert "".join(p.content for p in pieces) == "The answer [1]."
        assert rag.get_conversation_history()[-1].response == "The answer [1]."

    def test_stream_failure_yields_apology(self, rag, generator):
        generator.error = RuntimeError("model offline")
        pieces = list(rag.stream_query("machine learning"))
        assert len(pieces) == 1
        assert pieces[0].done
        assert pieces[0].content.startswith("I apologize")

    def test_incremental_generator(self, rag):
        class Chunky(Generator):
            supports_streaming = True

            def generate_stream(self, request):
                yield GenerationChunk("Hel")
                yield GenerationChunk("lo")
                yield GenerationChunk("", done=True)

        rag.generator = Chunky()
        assert [p.content for p in rag.stream_query("machine learning")] == ["Hel", "lo", ""]

    def test_stream_validates_eagerly(self, rag):
        with pytest.raises(InvalidInput):
            rag.stream_query("")


class TestStatisticsAndEvaluation:
    """Tests for get_statistics and evaluate_performance."""

    def test_statistics(self, rag, generator):
        rag.query("machine learning")
        generator.error = RuntimeError("down")
        rag.query("machine learning")
        stats = rag.get_statistics()

        assert stats["total_queries"] == 2
        assert stats["failed_queries"] == 1
        assert stats["error_rate"] == 0.5
        assert stats["average_response_time"] > 0
        assert stats["conversation_turns"] == 1
        assert "zh" in stats["supported_languages"]
        assert stats["cache"]["size"] >= 1

    def test_evaluate_performance(self, rag):
        report = rag.evaluate_performance(["machine learning", {"query": "relational databases"}, ""])

        assert report.total == 3
        assert report.completed == 2
        assert len(report.failures) == 1
        assert report.average_confidence == pytest.approx(0.8)
        assert report.success_rate == 1.0
        assert report.hallucination_rate == 0.0

    def test_evaluate_empty(self, rag):
        report = rag.evaluate_performance([])
        assert report.completed == 0
        assert report.success_rate == 0.0

    def test_evaluate_accepts_a_generator(self, rag):
        report = rag.evaluate_performance(q for q in ["machine learning", "relational databases"])
        assert report.total == 2
        assert report.completed == 2


class TestIntent:
    @pytest.mark.parametrize("query, intent", [
        ("What is BM25?", "definition"),
        ("Explain chunking", "explanation"),
        ("Compare RRF and weighted fusion", "comparison"),
        ("Why does the cache expire?", "causal"),
        ("chunk sizes", "general"),
    ])
    def test_detect_intent(self, query, intent):
        assert detect_intent(query) == intent
