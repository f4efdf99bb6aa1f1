"""
Tests for the FastAPI surface
"""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def services(knowledge_base, metadata_store):
    from pcm_advisor.error_recovery import ErrorRecoveryCoordinator
    from pcm_advisor.guardrails import GuardrailEngine
    from pcm_advisor.provider_impressions import load_catalog
    from pcm_advisor.retrieval import RetrievalManager
    from pcm_advisor.routes import AdvisorServices
    from pcm_advisor.tools import ProtocolToolHandler
    from pcm_advisor.validation_monitor import ValidationMonitor
    from pcm_advisor.validation_pipeline import ValidationPipeline

    catalog = load_catalog()
    recovery = ErrorRecoveryCoordinator(
        knowledge_base=knowledge_base, metadata_store=metadata_store, use_database=False, retry_base_delay=0,
    )
    return AdvisorServices(
        retrieval=RetrievalManager(knowledge_base, metadata_store=metadata_store, catalog=catalog,
                                   default_limit=3, use_markdown=False, scope="pcm"),
        recovery=recovery,
        pipeline=ValidationPipeline(catalog=catalog),
        guardrails=GuardrailEngine(catalog=catalog),
        tools=ProtocolToolHandler(recovery, catalog=catalog),
        monitor=ValidationMonitor(),
    )


@pytest.fixture
def client(services):
    from pcm_advisor.routes import create_app

    with TestClient(create_app(services)) as test_client:
        yield test_client


class TestSearchEndpoint:
    """Tests for POST /api/protocols/search"""

    def test_search(self, client):
        """Should return context and hits"""
        response = client.post("/api/protocols/search", json={"query": "cant breathe"})

        assert response.status_code == 200
        body = response.json()
        assert body["hits"][0]["id"] == "tp-1237"
        assert body["degraded"] is False

    def test_empty_query_rejected(self, client):
        """Should reject empty queries"""
        response = client.post("/api/protocols/search", json={"query": ""})

        assert response.status_code == 422

    def test_correlation_header(self, client):
        """Should echo the correlation id"""
        response = client.post("/api/protocols/search", json={"query": "seizure"},
                               headers={"X-Correlation-ID": "corr-123"})

        assert response.headers["X-Correlation-ID"] == "corr-123"


class TestValidateEndpoint:
    """Tests for POST /api/protocols/validate"""

    def test_blocking_result_skips_guardrail(self, client):
        """Should report critical errors without guardrail output"""
        response = client.post("/api/protocols/validate", json={
            "response": "Follow TP 9999.",
            "protocol_codes": ["1210"],
        })

        body = response.json()
        assert body["validation"]["valid"] is False
        assert body["guardrail"] is None
        assert any("9999" in note for note in body["notes"])

    def test_guardrail_correction(self, client):
        """Should return the corrected text for a passing answer"""
        response = client.post("/api/protocols/validate", json={
            "response": "Per TP 1237, give epinephrine 0.3 mg IM.",
            "protocol_codes": ["1237"],
        })

        body = response.json()
        assert body["validation"]["valid"] is True
        assert "epinephrine IM 0.5 mg" in body["corrected_text"]
        assert body["guardrail"]["pcm_citations_present"] is True

    def test_recorded_in_monitor(self, client):
        """Should record validations for the monitor report"""
        client.post("/api/protocols/validate", json={"response": "Follow TP 9999."})

        report = client.get("/api/protocols/admin/monitor/report")
        metrics = client.get("/api/protocols/admin/monitor/metrics").json()

        assert "TARGET (99%): ✗ NOT MET" in report.text
        assert metrics["metrics"]["total_validations"] == 1


class TestToolEndpoint:
    """Tests for POST /api/protocols/tools/{name}"""

    def test_tool_call(self, client):
        """Should dispatch tool calls"""
        response = client.post("/api/protocols/tools/get_protocol_by_code", json={"tpCode": "1210"})

        assert response.json()["protocols"][0]["tp_code"] == "1210"

    def test_unknown_tool(self, client):
        """Should return an error payload for unknown tools"""
        response = client.post("/api/protocols/tools/nope", json={})

        assert response.status_code == 200
        assert response.json() == {"error": "Unknown function: nope"}


class TestAdminEndpoints:
    """Tests for cache, circuit breaker and monitor administration"""

    def test_cache_lifecycle(self, client):
        """Should show and clear cached protocols"""
        client.post("/api/protocols/tools/get_protocol_by_code", json={"tpCode": "1210"})

        assert client.get("/api/protocols/admin/cache").json()["size"] == 1
        assert client.delete("/api/protocols/admin/cache").json() == {"status": "cleared"}
        assert client.get("/api/protocols/admin/cache").json()["size"] == 0

    def test_circuit_breakers(self, client, services):
        """Should report and reset circuit breakers"""
        breaker = services.recovery.get_circuit_breaker("protocol-database")
        for _ in range(3):
            breaker.record_failure()

        assert client.get("/api/protocols/admin/circuit-breakers").json() == {
            "protocol-database": {"state": "open", "failures": 3}
        }
        assert client.post("/api/protocols/admin/circuit-breakers/reset").json() == {"status": "reset"}
        assert services.recovery.get_circuit_breaker_status()["protocol-database"]["state"] == "closed"


class TestErrorHandling:
    """Tests for advisor error mapping"""

    def test_advisor_error_is_sanitized(self, services):
        """Should map advisor errors to a safe 503 body"""
        from pcm_advisor.error_handling import KnowledgeBaseNotLoadedError
        from pcm_advisor.routes import create_app

        services.retrieval = Mock()
        services.retrieval.search = AsyncMock(side_effect=KnowledgeBaseNotLoadedError("Knowledge base not loaded"))

        with TestClient(create_app(services)) as client:
            response = client.post("/api/protocols/search", json={"query": "seizure"})

        assert response.status_code == 503
        body = response.json()
        assert body["code"] == "KB_001"
        assert body["error"] == "Knowledge base not loaded"
        assert len(body["request_id"]) == 8


class TestLifecycle:
    """Tests for application startup and shutdown"""

    def test_shutdown_closes_protocol_backend(self, services):
        """Should close the protocol backend when the app shuts down"""
        from pcm_advisor.routes import create_app

        services.recovery.aclose = AsyncMock()

        with TestClient(create_app(services)) as client:
            client.get("/api/protocols/admin/circuit-breakers")
            services.recovery.aclose.assert_not_awaited()

        services.recovery.aclose.assert_awaited_once()
