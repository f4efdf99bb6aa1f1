"""
Tests for the protocol API backend, the feature-flagged adapter and the file source

The HTTP layer is exercised through httpx.MockTransport; integration tests
against a real protocol API run only with --live.
"""

import httpx
import pytest

PROTOCOL_ROW = {
    "tp_code": "1210",
    "tp_name": "Cardiac Arrest",
    "tp_category": "Cardiac",
    "version": 3,
    "effective_date": "2024-07-01T00:00:00Z",
    "expiration_date": None,
    "is_current": True,
    "full_text": "Begin high quality CPR and follow the cardiac arrest algorithm.",
    "base_contact_required": True,
    "warnings": ["Minimize interruptions"],
}


def _backend(handler, **kwargs):
    from pcm_advisor.backend import HttpProtocolBackend

    return HttpProtocolBackend(
        base_url=kwargs.pop("base_url", "https://db.test/rest/v1"),
        api_key=kwargs.pop("api_key", "test-key"),
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


class TestRowMapping:
    """Tests for row to model mapping"""

    def test_row_to_protocol(self):
        """Should map table columns onto Protocol fields"""
        from datetime import date
        from pcm_advisor.backend import row_to_protocol

        protocol = row_to_protocol(PROTOCOL_ROW)

        assert protocol.name == "Cardiac Arrest"
        assert protocol.version == "3"
        assert protocol.effective_date == date(2024, 7, 1)
        assert protocol.base_contact_required

    def test_protocol_to_document(self):
        """Should expose protocols in knowledge-base shape"""
        from pcm_advisor.backend import protocol_to_document, row_to_protocol

        doc = protocol_to_document(row_to_protocol(PROTOCOL_ROW))

        assert doc.id == "1210"
        assert doc.title == "1210: Cardiac Arrest"
        assert doc.category == "Cardiac"


class TestHttpProtocolBackend:
    """Tests for HttpProtocolBackend"""

    @pytest.mark.asyncio
    async def test_get_protocol_by_code(self):
        """Should query the current protocol version with auth headers"""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["params"] = dict(request.url.params)
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(200, json=[PROTOCOL_ROW])

        backend = _backend(handler)
        protocol = await backend.get_protocol_by_code("1210")
        await backend.close()

        assert protocol.tp_code == "1210"
        assert seen["path"] == "/rest/v1/protocols"
        assert seen["params"]["tp_code"] == "eq.1210"
        assert seen["params"]["is_current"] == "eq.true"
        assert seen["apikey"] == "test-key"

    @pytest.mark.asyncio
    async def test_missing_protocol_returns_none(self):
        """Should return None when no row matches"""
        backend = _backend(lambda request: httpx.Response(200, json=[]))

        assert await backend.get_protocol_by_code("1299") is None

    @pytest.mark.asyncio
    async def test_retryable_status_raises_unavailable(self):
        """Should raise BackendUnavailableError for 5xx responses"""
        from pcm_advisor.error_handling import BackendUnavailableError

        backend = _backend(lambda request: httpx.Response(503))

        with pytest.raises(BackendUnavailableError) as exc_info:
            await backend.get_protocol_by_code("1210")
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_client_error_is_not_retryable(self):
        """Should raise a plain advisor error for 4xx responses"""
        from pcm_advisor.error_handling import BackendUnavailableError, ProtocolAdvisorError

        backend = _backend(lambda request: httpx.Response(404))

        with pytest.raises(ProtocolAdvisorError) as exc_info:
            await backend.get_protocol_by_code("1210")
        assert not isinstance(exc_info.value, BackendUnavailableError)

    @pytest.mark.asyncio
    async def test_transport_error_raises_unavailable(self):
        """Should wrap connection failures"""
        from pcm_advisor.error_handling import BackendUnavailableError

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = _backend(handler)

        with pytest.raises(BackendUnavailableError):
            await backend.get_protocol_by_code("1210")

    @pytest.mark.asyncio
    async def test_unconfigured_backend_is_disabled(self):
        """Should refuse to call out without a base URL"""
        from pcm_advisor.error_handling import BackendDisabledError

        backend = _backend(lambda request: httpx.Response(200, json=[]), base_url="")

        with pytest.raises(BackendDisabledError):
            await backend.get_protocol_by_code("1210")

    @pytest.mark.asyncio
    async def test_search_protocol_chunks(self):
        """Should map chunk rows to documents"""
        def handler(request):
            assert request.url.params["content"] == "wfts(english).wheezing"
            return httpx.Response(200, json=[
                {"id": 7, "title": "TP 1237 Respiratory Distress", "category": "Protocol", "content": "Albuterol"},
            ])

        backend = _backend(handler)
        docs = await backend.search_protocol_chunks("wheezing", limit=3)

        assert [d.id for d in docs] == ["7"]


class TestDatabaseRetrievalAdapter:
    """Tests for the feature-flagged adapter"""

    @pytest.mark.asyncio
    async def test_disabled_returns_empty(self):
        """Should not touch the backend when disabled"""
        from unittest.mock import AsyncMock, Mock
        from pcm_advisor.backend import DatabaseRetrievalAdapter

        backend = Mock()
        backend.search_protocols = AsyncMock()
        adapter = DatabaseRetrievalAdapter(backend, enabled=False)

        assert await adapter.search_protocols("seizure") == []
        assert await adapter.get_protocol_by_code("1231") is None
        backend.search_protocols.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_returns_empty(self):
        """Should swallow backend failures into empty results"""
        from pcm_advisor.backend import DatabaseRetrievalAdapter

        adapter = DatabaseRetrievalAdapter(_backend(lambda request: httpx.Response(500)), enabled=True)

        assert await adapter.search_protocols("seizure") == []
        assert await adapter.get_protocol_by_code("1231") is None
        assert await adapter.search_protocol_chunks("seizure") == []

    @pytest.mark.asyncio
    async def test_enabled_returns_documents(self):
        """Should convert protocols to documents"""
        from pcm_advisor.backend import DatabaseRetrievalAdapter

        adapter = DatabaseRetrievalAdapter(
            _backend(lambda request: httpx.Response(200, json=[PROTOCOL_ROW])), enabled=True
        )

        doc = await adapter.get_protocol_by_code("1210")

        assert doc.title == "1210: Cardiac Arrest"


class TestFileProtocolSource:
    """Tests for the file fallback source"""

    @pytest.mark.asyncio
    async def test_get_protocol(self, knowledge_base, metadata_store):
        """Should rebuild a protocol from metadata and corpus text"""
        from pcm_advisor.backend import FileProtocolSource

        protocol = await FileProtocolSource(knowledge_base, metadata_store).get_protocol("1237")

        assert protocol.name == "TP 1237 Respiratory Distress"
        assert protocol.contraindications == ["CPAP in patients unable to protect their airway"]
        assert "Albuterol" in protocol.full_text

    @pytest.mark.asyncio
    async def test_unknown_code(self, knowledge_base, metadata_store):
        """Should return None for codes with neither metadata nor a document"""
        from pcm_advisor.backend import FileProtocolSource

        assert await FileProtocolSource(knowledge_base, metadata_store).get_protocol("1299") is None

    @pytest.mark.asyncio
    async def test_document_without_metadata(self, knowledge_base, metadata_store):
        """Should rebuild a protocol from its document when no metadata row exists"""
        from pcm_advisor.backend import FileProtocolSource

        protocol = await FileProtocolSource(knowledge_base, metadata_store).get_protocol("1231")

        assert protocol.tp_code == "1231"
        assert protocol.name == "TP 1231 Seizure"
        assert not protocol.base_contact_required
        assert "Midazolam 10 mg IM" in protocol.full_text

    @pytest.mark.asyncio
    async def test_missing_metadata_file(self, knowledge_base, tmp_path):
        """Should still serve protocols from the corpus when the metadata file is missing"""
        from pcm_advisor.backend import FileProtocolSource
        from pcm_advisor.metadata_store import MetadataStore

        source = FileProtocolSource(knowledge_base, MetadataStore(tmp_path / "missing.json"))
        protocol = await source.get_protocol("1237")

        assert protocol.name == "TP 1237 Respiratory Distress"
        assert protocol.contraindications == []

    @pytest.mark.asyncio
    async def test_packaged_protocols_resolve(self, packaged_knowledge_base, packaged_metadata_store):
        """Should resolve every shipped treatment protocol, with or without metadata"""
        from pcm_advisor.backend import FileProtocolSource

        source = FileProtocolSource(packaged_knowledge_base, packaged_metadata_store)

        for code in ("1203", "1205", "1210", "1217", "1241", "1244"):
            protocol = await source.get_protocol(code)
            assert protocol is not None, code
            assert protocol.full_text.startswith(f"Treatment Protocol {code}")


@pytest.mark.integration
class TestLiveProtocolApi:
    """Integration tests against a real protocol API (--live)"""

    @pytest.mark.asyncio
    async def test_fetch_cardiac_arrest(self, protocol_api_url):
        """Should fetch TP 1210 from the live API"""
        import os
        from pcm_advisor.backend import HttpProtocolBackend

        backend = HttpProtocolBackend(base_url=protocol_api_url, api_key=os.environ.get("PROTOCOL_API_KEY", ""))
        try:
            protocol = await backend.get_protocol_by_code("1210")
        finally:
            await backend.close()

        assert protocol is not None
        assert protocol.tp_code == "1210"
