"""
PCM Advisor - Pydantic Models
Data models for protocol documents, protocol records, validation results,
guardrail checks and retrieval results.
"""

from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ═══════════════════════════════════════════════════════════════════════════════
# Knowledge base
# ═══════════════════════════════════════════════════════════════════════════════

class Document(BaseModel):
    """An indexed unit of protocol text. Immutable once loaded."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    category: str
    subcategory: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    content: str = ""


class DoseRange(BaseModel):
    """Accepted dose range for one medication and route."""
    model_config = ConfigDict(frozen=True)

    medication: str
    route: str
    min_dose: float
    max_dose: float
    unit: str
    weight_based: bool = False
    pediatric_only: bool = False
    notes: Optional[str] = None


class Protocol(BaseModel):
    """Authoritative protocol record behind a Document."""
    tp_code: str
    name: str = ""
    category: str = ""
    version: str = "1"
    effective_date: date
    expiration_date: Optional[date] = None
    is_current: bool = True
    full_text: str = ""
    keywords: List[str] = Field(default_factory=list)
    base_contact_required: bool = False
    warnings: List[str] = Field(default_factory=list)
    contraindications: List[str] = Field(default_factory=list)
    dose_overrides: List[DoseRange] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_dates(self) -> "Protocol":
        if self.expiration_date is not None and self.effective_date > self.expiration_date:
            raise ValueError("effective_date must not be after expiration_date")
        return self


class BaseContact(BaseModel):
    required: bool = False
    criteria: Optional[str] = None
    scenarios: List[str] = Field(default_factory=list)


class Positioning(BaseModel):
    position: str
    context: Optional[str] = None


class TransportDestination(BaseModel):
    destination: str
    criteria: Optional[str] = None


class ProtocolMetadata(BaseModel):
    """Critical protocol elements, cross-referenced by document id."""
    id: str
    title: str = ""
    category: str = ""
    protocol_codes: Optional[List[str]] = None
    base_contact: BaseContact = Field(default_factory=BaseContact)
    positioning: Optional[Positioning] = None
    transport: List[TransportDestination] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    contraindications: List[str] = Field(default_factory=list)


class RetrievalResult(BaseModel):
    """Assembled LLM context plus the documents it was built from."""
    context: str
    hits: List[Document] = Field(default_factory=list)
    # Protocol codes the assembled context mentions (hits, cross-references, impression section)
    reference_codes: List[str] = Field(default_factory=list)
    degraded: bool = False


# ═══════════════════════════════════════════════════════════════════════════════
# Validation
# ═══════════════════════════════════════════════════════════════════════════════

class Severity(str, Enum):
    """Validation finding severity"""
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ValidationStage(str, Enum):
    """The four ordered validation stages"""
    PRE_RETRIEVAL = "pre-retrieval"
    DURING_RETRIEVAL = "during-retrieval"
    PRE_RESPONSE = "pre-response"
    POST_RESPONSE = "post-response"


class ValidationError(BaseModel):
    code: str
    message: str
    severity: Severity = Severity.ERROR
    context: Optional[Dict[str, Any]] = None


class ValidationWarning(BaseModel):
    code: str
    message: str
    severity: Severity = Severity.WARNING
    context: Optional[Dict[str, Any]] = None


class ValidationResult(BaseModel):
    """Output of one pipeline stage."""
    valid: bool
    errors: List[ValidationError] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None

    @property
    def critical_errors(self) -> List[ValidationError]:
        return [e for e in self.errors if e.severity == Severity.CRITICAL]

    @property
    def blocking(self) -> bool:
        """True when a critical error must keep the response from the user."""
        return bool(self.critical_errors)

    def error_codes(self) -> List[str]:
        return [e.code for e in self.errors]

    def warning_codes(self) -> List[str]:
        return [w.code for w in self.warnings]


class TextValidation(BaseModel):
    """Result of the pure text validators (medications, protocol citations)."""
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    found: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Guardrails
# ═══════════════════════════════════════════════════════════════════════════════

class GuardrailCorrection(BaseModel):
    original: str
    replacement: str
    citations: List[str] = Field(default_factory=list)


class GuardrailCheck(BaseModel):
    """Detection flags plus dosing issues and corrections for one response."""
    pcm_citations_present: bool = False
    contains_unauthorized_med: bool = False
    outside_scope: bool = False
    pediatric_marker_missing: bool = False
    scene_safety_concern: bool = False
    unauthorized_medications: List[str] = Field(default_factory=list)
    invalid_protocols: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)
    dosing_issues: List[str] = Field(default_factory=list)
    corrections: List[GuardrailCorrection] = Field(default_factory=list)
