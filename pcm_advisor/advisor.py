"""
Protocol Advisor (response gate)

End-to-end flow for one question:

    Stage 1  validate_query
    retrieval (search index + protocol fallback chain)
    Stage 2  validate_retrieved_protocols
    Stage 3  validate_llm_context
    LLM round-trip (opaque async callable)
    Stage 4  validate_response
    guardrail evaluate + dose corrections

Stages run strictly in order and every stage is recorded in the monitor.
Any critical error stops the flow and the caller gets the fixed
conservative message with fallback=True. The guardrail only ever sees text
that already passed Stage 4.
"""

import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .error_handling import CONSERVATIVE_MESSAGE
from .error_recovery import ErrorRecoveryCoordinator
from .guardrails import GuardrailEngine, collect_notes
from .models import Document, GuardrailCheck, Protocol, ValidationResult, ValidationStage
from .retrieval import RetrievalManager, primary_protocol_codes
from .structured_logging import log_context
from .validation_monitor import ValidationMonitor
from .validation_pipeline import ValidationPipeline

logger = logging.getLogger(__name__)

# (query, context) -> generated answer text, or None when the model is unavailable
LLMCallable = Callable[[str, str], Awaitable[Optional[str]]]

LLM_UNAVAILABLE_NOTE = "Language model unavailable"
MAX_RESOLVED_PROTOCOLS = 5


class Citation(BaseModel):
    title: str
    category: str
    subcategory: Optional[str] = None


class AdvisorResponse(BaseModel):
    """What the orchestration layer hands back to the user."""
    text: str
    citations: List[Citation] = Field(default_factory=list)
    protocols: List[str] = Field(default_factory=list)
    guardrail_notes: List[str] = Field(default_factory=list)
    validation: Dict[str, ValidationResult] = Field(default_factory=dict)
    fallback: bool = False
    degraded: bool = False


def build_citations(hits: List[Document], limit: int = 3) -> List[Citation]:
    return [Citation(title=h.title, category=h.category, subcategory=h.subcategory) for h in hits[:limit]]


class ProtocolAdvisor:
    """
    Usage:
        advisor = ProtocolAdvisor(retrieval, recovery, llm=my_llm)
        response = await advisor.answer("adult chest pain, what do I give?")
        if response.fallback:
            ...
    """

    def __init__(
        self,
        retrieval: RetrievalManager,
        recovery: ErrorRecoveryCoordinator,
        llm: LLMCallable,
        pipeline: Optional[ValidationPipeline] = None,
        guardrails: Optional[GuardrailEngine] = None,
        monitor: Optional[ValidationMonitor] = None,
    ):
        self.retrieval = retrieval
        self.recovery = recovery
        self.llm = llm
        self.pipeline = pipeline or ValidationPipeline(catalog=retrieval.catalog, dosing=retrieval.dosing)
        self.guardrails = guardrails or GuardrailEngine(catalog=retrieval.catalog, dosing=retrieval.dosing)
        self.monitor = monitor or ValidationMonitor()

    async def answer(self, query: str, session_id: Optional[str] = None) -> AdvisorResponse:
        with log_context(session_id=session_id):
            return await self._answer(query)

    async def _answer(self, query: str) -> AdvisorResponse:
        results: Dict[str, ValidationResult] = {}
        notes: List[str] = []

        pre = self._run_stage(ValidationStage.PRE_RETRIEVAL, query, results,
                              lambda: self.pipeline.validate_query(query))
        notes.extend(w.message for w in pre.warnings)

        retrieval = await self.retrieval.search(query)
        citations = build_citations(retrieval.hits)
        protocols = await self.resolve_protocols(retrieval.hits, (pre.metadata or {}).get("detected_codes", []))
        codes = [p.tp_code for p in protocols]

        retrieved = self._run_stage(ValidationStage.DURING_RETRIEVAL, query, results,
                                    lambda: self.pipeline.validate_retrieved_protocols(protocols))
        if retrieved.blocking:
            return self._fallback(results, citations, codes, retrieved, retrieval.degraded)

        context_check = self._run_stage(ValidationStage.PRE_RESPONSE, query, results,
                                        lambda: self.pipeline.validate_llm_context(
                                            retrieval.context, protocols, retrieval.reference_codes))
        if context_check.blocking:
            return self._fallback(results, citations, codes, context_check, retrieval.degraded)

        with log_context(stage="llm"):
            try:
                text = await self.llm(query, retrieval.context)
            except Exception as e:
                logger.error("LLM call failed, returning fallback", extra={"error": str(e)}, exc_info=True)
                text = None
        if not text:
            return self._fallback(results, citations, codes, None, retrieval.degraded,
                                  extra_notes=[LLM_UNAVAILABLE_NOTE])

        response_check = self._run_stage(ValidationStage.POST_RESPONSE, query, results,
                                         lambda: self.pipeline.validate_response(
                                             text, protocols, retrieval.reference_codes))
        if response_check.blocking:
            return self._fallback(results, citations, codes, response_check, retrieval.degraded)

        notes.extend(e.message for e in response_check.errors)
        notes.extend(w.message for w in response_check.warnings)

        with log_context(stage="guardrail"):
            check = self.guardrails.evaluate(text)
        if self.guardrail_blocks(check):
            return self._fallback(results, citations, codes, None, retrieval.degraded,
                                  extra_notes=collect_notes(check))
        if check.corrections:
            logger.info("Applying guardrail dose corrections", extra={"corrections": len(check.corrections)})
            text = self.guardrails.apply_corrections(text, check)
        notes.extend(collect_notes(check))

        logger.info("Answer passed validation", extra={"protocols": codes[:3], "citations": len(citations)})
        return AdvisorResponse(
            text=text,
            citations=citations,
            protocols=codes,
            guardrail_notes=notes,
            validation=results,
            degraded=retrieval.degraded,
        )

    async def resolve_protocols(self, hits: List[Document], query_codes: List[str]) -> List[Protocol]:
        """Protocols for the codes named in the query and the top hits, via the fallback chain."""
        codes: List[str] = []
        for code in list(query_codes) + sorted(primary_protocol_codes(hits)):
            if code not in codes:
                codes.append(code)

        protocols: List[Protocol] = []
        for code in codes[:MAX_RESOLVED_PROTOCOLS]:
            result = await self.recovery.retrieve_protocol_with_fallback(code)
            if result.success and result.data is not None:
                protocols.append(result.data)
            else:
                logger.info(f"No protocol record for {code}", extra={"strategy": result.strategy_used})
        return protocols

    @staticmethod
    def guardrail_blocks(check: GuardrailCheck) -> bool:
        return check.contains_unauthorized_med or bool(check.invalid_protocols)

    def _run_stage(self, stage: ValidationStage, query: str, results: Dict[str, ValidationResult],
                   validate: Callable[[], ValidationResult]) -> ValidationResult:
        with log_context(stage=stage.value):
            start = time.perf_counter()
            result = validate()
            duration_ms = (time.perf_counter() - start) * 1000
        self.monitor.record_validation(stage, result, duration_ms, {"query": query})
        results[stage.value] = result
        return result

    def _fallback(
        self,
        results: Dict[str, ValidationResult],
        citations: List[Citation],
        codes: List[str],
        blocking: Optional[ValidationResult],
        degraded: bool,
        extra_notes: Optional[List[str]] = None,
    ) -> AdvisorResponse:
        notes = [e.message for e in blocking.critical_errors] if blocking is not None else []
        notes.extend(extra_notes or [])
        logger.info("Returning fallback response", extra={"notes": notes, "citations": len(citations)})
        return AdvisorResponse(
            text=CONSERVATIVE_MESSAGE,
            citations=citations,
            protocols=codes,
            guardrail_notes=notes,
            validation=results,
            fallback=True,
            degraded=degraded,
        )
