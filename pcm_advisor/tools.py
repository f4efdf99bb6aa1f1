"""
Protocol Tool Calls

Function calls the LLM may make during a round-trip. Each call arrives as
a name plus JSON arguments and is validated into a discriminated union of
request models before anything is dispatched; unknown names and malformed
arguments come back as {"error": ...} with a sanitized message.
"""

import json
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from .error_handling import (
    CONSERVATIVE_MESSAGE,
    ErrorCode,
    ProtocolAdvisorError,
    ToolCallError,
    sanitize_error_message,
)
from .error_recovery import ErrorRecoveryCoordinator
from .models import Document, Protocol
from .provider_impressions import ProviderImpressionCatalog, load_catalog

logger = logging.getLogger(__name__)

DEFAULT_TOOL_RESULTS = 5
PEDIATRIC_AGE_LIMIT = 18


class _ToolArgs(BaseModel):
    """LLM arguments use camelCase; snake_case is accepted too."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ═══════════════════════════════════════════════════════════════════════════════
# Arguments
# ═══════════════════════════════════════════════════════════════════════════════

class PatientDescriptionArgs(_ToolArgs):
    chief_complaint: str = Field(..., min_length=1)
    age: Optional[float] = Field(None, ge=0, le=130)
    sex: Literal["male", "female", "unknown"] = "unknown"
    symptoms: List[str] = Field(default_factory=list)
    vitals: Dict[str, float] = Field(default_factory=dict)
    allergies: List[str] = Field(default_factory=list)
    medications: List[str] = Field(default_factory=list)
    weight_kg: Optional[float] = Field(None, gt=0, le=500)


class ChiefComplaintArgs(_ToolArgs):
    chief_complaint: str = Field(..., min_length=1)
    pain_location: Optional[str] = None
    severity: Optional[Literal["mild", "moderate", "severe", "critical"]] = None


class CallTypeArgs(_ToolArgs):
    dispatch_code: Optional[str] = None
    call_type: Optional[str] = None

    @model_validator(mode="after")
    def require_one(self) -> "CallTypeArgs":
        if not (self.dispatch_code or self.call_type):
            raise ValueError("dispatchCode or callType is required")
        return self


class ProtocolByCodeArgs(_ToolArgs):
    tp_code: str = Field(..., pattern=r"^\d{4}(-[Pp])?$")
    include_pediatric: bool = False


class ProviderImpressionsArgs(_ToolArgs):
    symptoms: List[str] = Field(..., min_length=1)
    keywords: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Calls (discriminated on name)
# ═══════════════════════════════════════════════════════════════════════════════

class PatientDescriptionCall(BaseModel):
    name: Literal["search_protocols_by_patient_description"]
    arguments: PatientDescriptionArgs


class ChiefComplaintCall(BaseModel):
    name: Literal["search_protocols_by_chief_complaint"]
    arguments: ChiefComplaintArgs


class CallTypeCall(BaseModel):
    name: Literal["search_protocols_by_call_type"]
    arguments: CallTypeArgs


class ProtocolByCodeCall(BaseModel):
    name: Literal["get_protocol_by_code"]
    arguments: ProtocolByCodeArgs


class ProviderImpressionsCall(BaseModel):
    name: Literal["get_provider_impressions"]
    arguments: ProviderImpressionsArgs


ToolCall = Annotated[
    Union[PatientDescriptionCall, ChiefComplaintCall, CallTypeCall, ProtocolByCodeCall, ProviderImpressionsCall],
    Field(discriminator="name"),
]

_TOOL_CALL_ADAPTER = TypeAdapter(ToolCall)

TOOL_NAMES = (
    "search_protocols_by_patient_description",
    "search_protocols_by_chief_complaint",
    "search_protocols_by_call_type",
    "get_protocol_by_code",
    "get_provider_impressions",
)


def parse_tool_call(name: str, arguments: Union[str, Dict[str, Any], None]) -> ToolCall:
    """
    Validate a raw function call.

    Raises ToolCallError for unknown names, undecodable JSON or arguments
    that do not fit the tool's schema.
    """
    if name not in TOOL_NAMES:
        raise ToolCallError(f"Unknown function: {name}", error_code=ErrorCode.UNKNOWN_TOOL)

    if isinstance(arguments, str):
        try:
            arguments = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError:
            raise ToolCallError(f"Arguments for {name} are not valid JSON")

    try:
        return _TOOL_CALL_ADAPTER.validate_python({"name": name, "arguments": arguments or {}})
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"][1:]) or "arguments" for err in e.errors())
        raise ToolCallError(f"Invalid arguments for {name}: {fields}")


def _document_summary(doc: Document) -> Dict[str, Any]:
    return {"id": doc.id, "title": doc.title, "category": doc.category, "subcategory": doc.subcategory}


def _protocol_summary(protocol: Protocol) -> Dict[str, Any]:
    return {
        "tp_code": protocol.tp_code,
        "name": protocol.name,
        "category": protocol.category,
        "base_contact_required": protocol.base_contact_required,
        "warnings": protocol.warnings,
        "contraindications": protocol.contraindications,
        "full_text": protocol.full_text,
    }


class ProtocolToolHandler:
    """
    Usage:
        tools = ProtocolToolHandler(recovery)
        result = await tools.handle("get_protocol_by_code", '{"tpCode": "1210"}')
    """

    def __init__(self, recovery: ErrorRecoveryCoordinator, catalog: Optional[ProviderImpressionCatalog] = None,
                 limit: int = DEFAULT_TOOL_RESULTS):
        self.recovery = recovery
        self.catalog = catalog or load_catalog()
        self.limit = limit

    async def handle(self, name: str, arguments: Union[str, Dict[str, Any], None]) -> Dict[str, Any]:
        """Dispatch one function call; never raises."""
        try:
            call = parse_tool_call(name, arguments)
            return await self.dispatch(call)
        except ProtocolAdvisorError as e:
            logger.warning(f"Tool call rejected: {name}", extra={"tool": name, "error_code": e.error_code.value})
            return {"error": sanitize_error_message(str(e))}

    async def dispatch(self, call: ToolCall) -> Dict[str, Any]:
        logger.info(f"Tool call: {call.name}", extra={"tool": call.name})
        if isinstance(call, PatientDescriptionCall):
            return await self.search_by_patient_description(call.arguments)
        if isinstance(call, ChiefComplaintCall):
            return await self.search_by_chief_complaint(call.arguments)
        if isinstance(call, CallTypeCall):
            return await self.search_by_call_type(call.arguments)
        if isinstance(call, ProtocolByCodeCall):
            return await self.get_protocol_by_code(call.arguments)
        return self.get_provider_impressions(call.arguments)

    # ─────────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────────

    async def _search(self, query: str) -> Dict[str, Any]:
        result = await self.recovery.search_with_fallback(query, self.limit)
        return {
            "query": query,
            "protocols": [_document_summary(d) for d in result.data or []],
            "strategy": result.strategy_used,
        }

    async def search_by_patient_description(self, args: PatientDescriptionArgs) -> Dict[str, Any]:
        terms = [args.chief_complaint, *args.symptoms]
        if args.age is not None and args.age < PEDIATRIC_AGE_LIMIT:
            terms.append("pediatric")
        return await self._search(" ".join(terms))

    async def search_by_chief_complaint(self, args: ChiefComplaintArgs) -> Dict[str, Any]:
        terms = [args.chief_complaint]
        if args.pain_location:
            terms.append(args.pain_location)
        return await self._search(" ".join(terms))

    async def search_by_call_type(self, args: CallTypeArgs) -> Dict[str, Any]:
        return await self._search(" ".join(t for t in (args.call_type, args.dispatch_code) if t))

    async def get_protocol_by_code(self, args: ProtocolByCodeArgs) -> Dict[str, Any]:
        code = args.tp_code.upper()
        codes = [code]
        if args.include_pediatric and not code.endswith("-P") and self.catalog.is_valid(f"{code}-P"):
            codes.append(f"{code}-P")

        protocols = []
        strategies = []
        for tp_code in codes:
            result = await self.recovery.retrieve_protocol_with_fallback(tp_code)
            strategies.append(result.strategy_used)
            if result.success and result.data is not None:
                protocols.append(_protocol_summary(result.data))

        if not protocols:
            return {
                "error": f"Protocol {code} not found",
                "code": ErrorCode.PROTOCOL_NOT_FOUND.value,
                "message": CONSERVATIVE_MESSAGE,
                "fallback": True,
            }
        return {"protocols": protocols, "strategy": strategies[0]}

    def get_provider_impressions(self, args: ProviderImpressionsArgs) -> Dict[str, Any]:
        query = " ".join(args.symptoms + args.keywords)
        matches = self.catalog.match(query, limit=self.limit)
        return {"provider_impressions": [pi.model_dump(exclude={"keywords"}) for pi in matches]}
