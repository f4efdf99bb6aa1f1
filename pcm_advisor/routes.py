"""
PCM Advisor - FastAPI Routes

Optional HTTP surface over the core: search, response validation, tool
dispatch and the administrative operations (cache, circuit breakers,
validation monitor). Service objects live on app.state and are handed to
endpoints through a dependency, so tests build an app around their own
instances.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .backend import FileProtocolSource, HttpProtocolBackend
from .config import get_settings
from .error_handling import ProtocolAdvisorError, get_safe_error_response
from .error_recovery import ErrorRecoveryCoordinator
from .guardrails import GuardrailEngine, collect_notes
from .metadata_store import MetadataStore
from .models import GuardrailCheck, RetrievalResult, ValidationResult, ValidationStage
from .provider_impressions import load_catalog
from .retrieval import RetrievalManager
from .search_index import KnowledgeBase
from .structured_logging import create_correlation_middleware
from .tools import ProtocolToolHandler
from .validation_monitor import ValidationMonitor
from .validation_pipeline import ValidationPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/protocols", tags=["protocols"])


@dataclass
class AdvisorServices:
    """Everything the endpoints need, constructed once per app."""
    retrieval: RetrievalManager
    recovery: ErrorRecoveryCoordinator
    pipeline: ValidationPipeline
    guardrails: GuardrailEngine
    tools: ProtocolToolHandler
    monitor: ValidationMonitor = field(default_factory=ValidationMonitor)

    @classmethod
    def from_settings(cls) -> "AdvisorServices":
        settings = get_settings()
        knowledge_base = KnowledgeBase()
        metadata = MetadataStore()
        catalog = load_catalog()
        backend = HttpProtocolBackend() if settings.use_database_protocols else None
        recovery = ErrorRecoveryCoordinator(
            knowledge_base=knowledge_base,
            backend=backend,
            file_source=FileProtocolSource(knowledge_base, metadata),
            metadata_store=metadata,
        )
        retrieval = RetrievalManager(knowledge_base, metadata_store=metadata, catalog=catalog)
        return cls(
            retrieval=retrieval,
            recovery=recovery,
            pipeline=ValidationPipeline(catalog=catalog, dosing=retrieval.dosing),
            guardrails=GuardrailEngine(catalog=catalog, dosing=retrieval.dosing),
            tools=ProtocolToolHandler(recovery, catalog=catalog),
        )


def get_services(request: Request) -> AdvisorServices:
    return request.app.state.services


# ═══════════════════════════════════════════════════════════════════════════
# REQUEST / RESPONSE MODELS
# ═══════════════════════════════════════════════════════════════════════════

class SearchRequest(BaseModel):
    query: str = Field(..., min_length=1, max_length=2000)
    limit: Optional[int] = Field(None, ge=1, le=20)
    use_markdown: Optional[bool] = None


class ValidateResponseRequest(BaseModel):
    response: str = Field(..., min_length=1)
    protocol_codes: List[str] = Field(default_factory=list, max_length=10)


class ValidateResponseResult(BaseModel):
    validation: ValidationResult
    guardrail: Optional[GuardrailCheck] = None
    corrected_text: Optional[str] = None
    notes: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════
# SEARCH / VALIDATION
# ═══════════════════════════════════════════════════════════════════════════

@router.post("/search", response_model=RetrievalResult, summary="Search the PCM knowledge base")
async def search_protocols(request: SearchRequest, services: AdvisorServices = Depends(get_services)):
    return await services.retrieval.search(request.query, request.limit, request.use_markdown)


@router.post("/validate", response_model=ValidateResponseResult, summary="Validate a generated answer")
async def validate_response(request: ValidateResponseRequest, services: AdvisorServices = Depends(get_services)):
    """
    Run post-response validation against the named protocols; the guardrail
    only runs when nothing critical was found.
    """
    protocols = []
    for code in request.protocol_codes:
        result = await services.recovery.retrieve_protocol_with_fallback(code)
        if result.success and result.data is not None:
            protocols.append(result.data)

    validation = services.pipeline.validate_response(request.response, protocols)
    services.monitor.record_validation(ValidationStage.POST_RESPONSE, validation, 0.0,
                                       {"query": request.response[:200]})
    if validation.blocking:
        return ValidateResponseResult(validation=validation, notes=[e.message for e in validation.critical_errors])

    check = services.guardrails.evaluate(request.response)
    return ValidateResponseResult(
        validation=validation,
        guardrail=check,
        corrected_text=services.guardrails.apply_corrections(request.response, check),
        notes=collect_notes(check),
    )


@router.post("/tools/{name}", summary="Dispatch an LLM function call")
async def call_tool(name: str, arguments: Optional[Dict[str, Any]] = Body(None),
                    services: AdvisorServices = Depends(get_services)):
    return await services.tools.handle(name, arguments)


# ═══════════════════════════════════════════════════════════════════════════
# ADMIN
# ═══════════════════════════════════════════════════════════════════════════

@router.get("/admin/cache")
async def cache_stats(services: AdvisorServices = Depends(get_services)):
    return services.recovery.get_cache_stats()


@router.delete("/admin/cache")
async def clear_cache(services: AdvisorServices = Depends(get_services)):
    services.recovery.clear_cache()
    return {"status": "cleared"}


@router.get("/admin/circuit-breakers")
async def circuit_breaker_status(services: AdvisorServices = Depends(get_services)):
    return services.recovery.get_circuit_breaker_status()


@router.post("/admin/circuit-breakers/reset")
async def reset_circuit_breakers(services: AdvisorServices = Depends(get_services)):
    services.recovery.reset_all_circuit_breakers()
    return {"status": "reset"}


@router.get("/admin/monitor/report", response_class=PlainTextResponse)
async def monitor_report(window_seconds: Optional[float] = None,
                         services: AdvisorServices = Depends(get_services)):
    return services.monitor.generate_report(window_seconds)


@router.get("/admin/monitor/metrics")
async def monitor_metrics(services: AdvisorServices = Depends(get_services)):
    return services.monitor.export_metrics()


# ═══════════════════════════════════════════════════════════════════════════
# APP FACTORY
# ═══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Close the protocol backend client on shutdown"""
    yield
    logger.info("Shutting down PCM advisor, closing protocol backend")
    await app.state.services.recovery.aclose()


def create_app(services: Optional[AdvisorServices] = None) -> FastAPI:
    app = FastAPI(
        title="PCM Protocol Advisor",
        description="Protocol retrieval and validation for the LA County Prehospital Care Manual",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services or AdvisorServices.from_settings()
    app.middleware("http")(create_correlation_middleware())

    @app.exception_handler(ProtocolAdvisorError)
    async def advisor_error_handler(request: Request, exc: ProtocolAdvisorError):
        return JSONResponse(status_code=503, content=get_safe_error_response(exc))

    app.include_router(router)
    return app
