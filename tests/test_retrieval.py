"""
Tests for the retrieval orchestrator and context assembly
"""

import pytest


def _manager(knowledge_base, metadata_store, **kwargs):
    from pcm_advisor.provider_impressions import load_catalog
    from pcm_advisor.retrieval import RetrievalManager

    return RetrievalManager(
        knowledge_base,
        metadata_store=metadata_store,
        catalog=load_catalog(),
        default_limit=3,
        use_markdown=kwargs.pop("use_markdown", False),
        scope="pcm",
        **kwargs,
    )


class TestContextChunks:
    """Tests for chunk formatting helpers"""

    def test_chunk_format(self):
        """Should number chunks and label their source"""
        from pcm_advisor.models import Document
        from pcm_advisor.retrieval import build_kb_chunks

        doc = Document(id="x", title="TP 1231 Seizure", category="markdown", subcategory="LA County EMS",
                       content="Protect the patient.")

        assert build_kb_chunks([doc]) == ["#1 • TP 1231 Seizure [markdown / LA County EMS]\nProtect the patient."]

    def test_long_content_truncated(self):
        """Should cut content at 1400 characters with an ellipsis"""
        from pcm_advisor.models import Document
        from pcm_advisor.retrieval import CHUNK_CHARACTER_LIMIT, build_kb_chunks

        doc = Document(id="x", title="Long", category="pdf", content="a" * 2000)
        chunk = build_kb_chunks([doc])[0]

        assert chunk.endswith(" …")
        assert chunk.count("a") == CHUNK_CHARACTER_LIMIT

    def test_primary_codes_from_titles(self):
        """Should read protocol codes from the top three hits"""
        from pcm_advisor.models import Document
        from pcm_advisor.retrieval import primary_protocol_codes

        hits = [Document(id=str(i), title=f"TP {code} Something", category="markdown")
                for i, code in enumerate(["1210", "1237", "1231", "1244"])]

        assert primary_protocol_codes(hits) == {"1210", "1237", "1231"}


class TestRetrievalManager:
    """Tests for RetrievalManager.search"""

    @pytest.mark.asyncio
    async def test_respiratory_query_returns_context(self, knowledge_base, metadata_store):
        """Should return respiratory hits and a numbered context"""
        manager = _manager(knowledge_base, metadata_store)

        result = await manager.search("cant breathe")

        assert result.hits[0].id == "tp-1237"
        assert "#1 • TP 1237 Respiratory Distress" in result.context
        assert not result.degraded

    @pytest.mark.asyncio
    async def test_critical_metadata_prefixed(self, knowledge_base, metadata_store):
        """Should prepend critical protocol elements for the primary protocol"""
        manager = _manager(knowledge_base, metadata_store)

        result = await manager.search("cardiac arrest cpr")

        assert result.context.startswith("CRITICAL PROTOCOL ELEMENTS:")
        assert "BASE HOSPITAL CONTACT REQUIRED: Termination of resuscitation" in result.context
        assert "POSITIONING: Supine on a firm surface" in result.context

    @pytest.mark.asyncio
    async def test_missing_metadata_degrades(self, knowledge_base, tmp_path):
        """Should mark the result degraded when metadata is unavailable"""
        from pcm_advisor.metadata_store import MetadataStore

        manager = _manager(knowledge_base, MetadataStore(tmp_path / "missing.json"))

        result = await manager.search("cardiac arrest")

        assert result.degraded
        assert "CRITICAL PROTOCOL ELEMENTS" not in result.context
        assert result.hits

    @pytest.mark.asyncio
    async def test_pediatric_dosing_block(self, knowledge_base, metadata_store):
        """Should put weight-based dosing first for weight + medication queries"""
        manager = _manager(knowledge_base, metadata_store)

        result = await manager.search("20kg child seizure midazolam")

        assert result.context.startswith("**PEDIATRIC WEIGHT-BASED DOSING (LA County MCG 1309):**")
        assert "Midazolam for 20 kg" in result.context
        assert result.hits[0].id == "mcg-1309"

    @pytest.mark.asyncio
    async def test_no_hits_message(self, knowledge_base, metadata_store):
        """Should return the fixed no-match message when nothing matches"""
        manager = _manager(knowledge_base, metadata_store)

        result = await manager.search("xylophone")

        assert result.hits == []
        assert result.context == "No direct matches in knowledge base."

    @pytest.mark.asyncio
    async def test_markdown_keeps_critical_block(self, knowledge_base, metadata_store):
        """Should preserve the critical block when rendering markdown"""
        manager = _manager(knowledge_base, metadata_store, use_markdown=True)

        result = await manager.search("cardiac arrest cpr")

        assert result.context.startswith("CRITICAL PROTOCOL ELEMENTS:")
        assert "## TP 1210 Cardiac Arrest" in result.context
        assert "**1 mg**" in result.context

    @pytest.mark.asyncio
    async def test_markdown_without_hits_degrades(self, knowledge_base, metadata_store):
        """Should fall back to the plain context when there is nothing to render"""
        manager = _manager(knowledge_base, metadata_store, use_markdown=True)

        result = await manager.search("xylophone")

        assert result.degraded
        assert result.context == "No direct matches in knowledge base."

    @pytest.mark.asyncio
    async def test_query_code_pulls_in_protocol(self, knowledge_base, metadata_store):
        """Should include a protocol named by number even when it ranks low"""
        manager = _manager(knowledge_base, metadata_store)

        result = await manager.search("wheezing, also review 1231")

        assert any(h.id == "tp-1231" for h in result.hits)
