"""
Tests for the corpus store, search index and initialize-once knowledge base
"""

import asyncio
import json

import pytest


class TestCorpusStore:
    """Tests for CorpusStore loading and scope filtering"""

    @pytest.mark.asyncio
    async def test_pcm_scope_keeps_protocol_manual_documents(self, corpus_file):
        """Should drop documents outside the protocol manual when scope is pcm"""
        from pcm_advisor.corpus import CorpusStore

        docs = await CorpusStore(corpus_file, scope="pcm").load()

        ids = [d.id for d in docs]
        assert "web-supply" not in ids
        assert "tp-1210" in ids
        assert "mcg-1309" in ids

    @pytest.mark.asyncio
    async def test_other_scope_keeps_everything(self, corpus_file, sample_documents):
        """Should keep all documents for any non-pcm scope"""
        from pcm_advisor.corpus import CorpusStore

        docs = await CorpusStore(corpus_file, scope="all").load()

        assert len(docs) == len(sample_documents)

    @pytest.mark.asyncio
    async def test_missing_file_degrades_to_empty(self, tmp_path):
        """Should return no documents instead of raising for a missing file"""
        from pcm_advisor.corpus import CorpusStore

        docs = await CorpusStore(tmp_path / "nope.json", scope="pcm").load()

        assert docs == []

    @pytest.mark.asyncio
    async def test_malformed_entries_skipped(self, tmp_path):
        """Should skip malformed and duplicate entries"""
        from pcm_advisor.corpus import CorpusStore

        path = tmp_path / "kb.json"
        path.write_text(json.dumps([
            {"id": "a", "title": "A", "category": "markdown"},
            {"title": "no id"},
            {"id": "a", "title": "A again", "category": "markdown"},
        ]))

        docs = await CorpusStore(path, scope="all").load()

        assert [d.title for d in docs] == ["A"]


class TestSearchIndex:
    """Tests for SearchIndex ranking"""

    def _index(self, sample_documents):
        from pcm_advisor.models import Document
        from pcm_advisor.search_index import SearchIndex

        return SearchIndex([Document(**d) for d in sample_documents])

    def test_exact_title_in_top_results(self, sample_documents):
        """Should return each document for its own title"""
        index = self._index(sample_documents)

        for doc in sample_documents:
            hits = index.search(doc["title"], limit=1)
            assert hits and hits[0].id == doc["id"]

    def test_search_is_deterministic(self, sample_documents):
        """Should return identical ordered hits for identical queries"""
        index = self._index(sample_documents)

        first = [d.id for d in index.search("seizure midazolam dyspnea", limit=5)]
        second = [d.id for d in index.search("seizure midazolam dyspnea", limit=5)]

        assert first == second

    def test_fuzzy_match_tolerates_typos(self, sample_documents):
        """Should find documents despite a small misspelling"""
        index = self._index(sample_documents)

        hits = index.search("seizrue", limit=1)

        assert hits[0].id == "tp-1231"

    def test_prefix_match(self, sample_documents):
        """Should match on term prefixes"""
        index = self._index(sample_documents)

        hits = index.search("respirat", limit=1)

        assert hits[0].id == "tp-1237"

    def test_limit_respected(self, sample_documents):
        """Should never return more than limit hits"""
        index = self._index(sample_documents)

        assert len(index.search("the", limit=2)) <= 2
        assert index.search("seizure", limit=0) == []

    def test_no_match_returns_empty(self, sample_documents):
        """Should return nothing for unknown vocabulary"""
        index = self._index(sample_documents)

        assert index.search("xylophone", limit=5) == []


class TestKnowledgeBase:
    """Tests for the initialize-once KnowledgeBase"""

    def test_search_before_initialize_raises(self, knowledge_base):
        """Should raise KnowledgeBaseNotLoadedError before initialization"""
        from pcm_advisor.error_handling import KnowledgeBaseNotLoadedError

        with pytest.raises(KnowledgeBaseNotLoadedError):
            knowledge_base.search("seizure")

    @pytest.mark.asyncio
    async def test_concurrent_initialize_builds_once(self, knowledge_base):
        """Should share one build across concurrent first callers"""
        calls = []
        original = knowledge_base.corpus.load

        async def counting_load():
            calls.append(1)
            await asyncio.sleep(0.01)
            return await original()

        knowledge_base.corpus.load = counting_load

        await asyncio.gather(*(knowledge_base.initialize() for _ in range(10)))
        await knowledge_base.initialize()

        assert len(calls) == 1
        assert knowledge_base.is_loaded

    @pytest.mark.asyncio
    async def test_failed_build_can_be_retried(self, knowledge_base):
        """Should allow a new build after the first one failed"""
        original = knowledge_base.corpus.load
        attempts = []

        async def flaky_load():
            attempts.append(1)
            if len(attempts) == 1:
                raise RuntimeError("disk unavailable")
            return await original()

        knowledge_base.corpus.load = flaky_load

        with pytest.raises(RuntimeError):
            await knowledge_base.initialize()
        await knowledge_base.initialize()

        assert knowledge_base.is_loaded
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_synonym_search_finds_respiratory_protocol(self, knowledge_base):
        """Should find the respiratory distress protocol for a colloquial complaint"""
        await knowledge_base.initialize()

        hits = knowledge_base.search("cant breathe", limit=3)

        assert hits[0].id == "tp-1237"

    @pytest.mark.asyncio
    async def test_get_and_find(self, knowledge_base):
        """Should look documents up by id and predicate"""
        await knowledge_base.initialize()

        assert knowledge_base.get("tp-1231").title == "TP 1231 Seizure"
        assert knowledge_base.get("missing") is None
        assert knowledge_base.find(lambda d: "1309" in d.title).id == "mcg-1309"
