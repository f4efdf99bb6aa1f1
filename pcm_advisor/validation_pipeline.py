"""
Protocol Validation Pipeline

Four ordered stages bracketing the LLM call:

1. Pre-Retrieval   (query)              normalization, code and medication mentions
2. During-Retrieval (retrieved protocols) currency, dates, completeness
3. Pre-Response    (LLM context)        citations, formulary, doses, base contact
4. Post-Response   (LLM output)         hallucinated citations, formulary, doses,
                                          contradictions, base contact

Each stage returns its own ValidationResult. A critical error blocks the
response from reaching the user; errors and warnings are advisory.

Severity policy:
    Stage 1  valid = no errors             (INVALID_PROTOCOL_CODE is the only error)
    Stage 2  valid = no critical errors
    Stage 3  valid = no errors
    Stage 4  valid = no critical errors
"""

import logging
import re
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from .dosing import DosingRegistry, extract_medication_doses, within_range
from .medication_validator import (
    AUTHORIZED_MEDICATIONS,
    find_medications,
    is_authorized_medication,
    validate_medications,
)
from .models import (
    DoseRange,
    Protocol,
    Severity,
    ValidationError,
    ValidationResult,
    ValidationWarning,
)
from .protocol_validator import validate_protocol_citations
from .provider_impressions import ProviderImpressionCatalog, load_catalog

logger = logging.getLogger(__name__)

MIN_PROTOCOL_TEXT_LENGTH = 50

# ═══════════════════════════════════════════════════════════════════════════════
# Text patterns
# ═══════════════════════════════════════════════════════════════════════════════

# TP 1210, TP-1210, TP1210-P, Protocol 1210, bare 1210. MCG/Ref numbers are not protocol citations.
PROTOCOL_CODE_PATTERN = re.compile(
    r"\b(?:(?P<skip>MCG|Ref\.?)\s*|(?P<prefix>TP[-\s]?|Protocol\s+))?(?P<code>\d{4}(?:-P)?)\b",
    re.IGNORECASE,
)
BARE_CODE_RANGE = (1200, 1399)

BASE_CONTACT_PHRASE = re.compile(r"\bbase\s+(?:hospital|contact)\b", re.IGNORECASE)

QUERY_NORMALIZATIONS: Tuple[Tuple[re.Pattern, str], ...] = tuple(
    (re.compile(rf"\b{re.escape(source)}\b", re.IGNORECASE), target)
    for source, target in (
        ("cant breathe", "can't breathe"),
        ("cant breath", "can't breathe"),
        ("sob", "shortness of breath"),
        ("loc", "loss of consciousness"),
        ("ams", "altered mental status"),
        ("mvc", "motor vehicle collision"),
        ("gcs", "glasgow coma scale"),
        ("cpr", "cardiac arrest"),
        ("vfib", "ventricular fibrillation"),
        ("vtach", "ventricular tachycardia"),
        ("stemi", "st-elevation myocardial infarction"),
        ("nstemi", "non-st-elevation myocardial infarction"),
        ("copd", "chronic obstructive pulmonary disease"),
        ("chf", "congestive heart failure"),
        ("mi", "myocardial infarction"),
        ("cva", "cerebrovascular accident"),
        ("tia", "transient ischemic attack"),
    )
)

VAGUE_TERMS = frozenset({"pain", "sick", "hurt", "bad", "help", "what", "how"})

TIME_SENSITIVE_TERMS = ("time", "urgent", "immediate")

_MED_NAMES = "|".join(
    re.escape(n).replace(r"\ ", r"\s+") for n in sorted(AUTHORIZED_MEDICATIONS, key=len, reverse=True)
)
_GIVE = re.compile(rf"\b(?:give|administer)\s+(?P<med>{_MED_NAMES})\b", re.IGNORECASE)
_AVOID = re.compile(
    rf"\b(?:do\s+not|don't|avoid|contraindicated)\b[^.\n]*?\b(?P<med>{_MED_NAMES})\b", re.IGNORECASE
)
_CONTACT_BASE = re.compile(r"\b(?:contact|call)\s+(?:the\s+)?base\s+hospital", re.IGNORECASE)
_NO_CONTACT_BASE = re.compile(r"\b(?:do\s+not|don't|no\s+need\s+to)\s+(?:contact|call)\s+(?:the\s+)?base",
                              re.IGNORECASE)
_SPACES = re.compile(r"\s+")


def extract_protocol_codes(text: str) -> List[str]:
    """Distinct protocol codes cited in text, in first-seen order."""
    codes: List[str] = []
    for match in PROTOCOL_CODE_PATTERN.finditer(text or ""):
        if match.group("skip"):
            continue
        code = match.group("code").upper()
        if not match.group("prefix"):
            number = int(code[:4])
            if not BARE_CODE_RANGE[0] <= number <= BARE_CODE_RANGE[1]:
                continue
        if code not in codes:
            codes.append(code)
    return codes


def normalize_query(query: str) -> str:
    normalized = (query or "").lower()
    for pattern, replacement in QUERY_NORMALIZATIONS:
        normalized = pattern.sub(replacement, normalized)
    return normalized


def is_vague_query(query: str) -> bool:
    words = [w for w in (query or "").lower().split() if len(w) > 2]
    vague = sum(1 for w in words if w in VAGUE_TERMS)
    return len(words) <= 3 or vague >= len(words) / 2


def mentions_base_contact(text: str) -> bool:
    return bool(BASE_CONTACT_PHRASE.search(text or ""))


def detect_contradictions(text: str) -> List[str]:
    """A directive and its direct negation for the same action."""
    contradictions = []
    given = {_SPACES.sub(" ", m.group("med").lower()) for m in _GIVE.finditer(text or "")}
    avoided = {_SPACES.sub(" ", m.group("med").lower()) for m in _AVOID.finditer(text or "")}
    for med in sorted(given & avoided):
        contradictions.append(f"Contradictory medication instructions for {med}")

    if _CONTACT_BASE.search(text or "") and _NO_CONTACT_BASE.search(text or ""):
        contradictions.append("Contradictory base hospital contact instructions")
    return contradictions


def detect_protocol_conflicts(protocols: List[Protocol]) -> List[str]:
    required = [p.tp_code for p in protocols if p.base_contact_required]
    not_required = [p.tp_code for p in protocols if not p.base_contact_required]
    if required and not_required:
        return [
            f"Mixed base contact requirements: {', '.join(required)} require base contact, "
            f"but {', '.join(not_required)} do not"
        ]
    return []


def _fmt(value: float) -> str:
    return f"{value:g}"


# ═══════════════════════════════════════════════════════════════════════════════
# Pipeline
# ═══════════════════════════════════════════════════════════════════════════════

class ValidationPipeline:
    """
    Stateless four-stage validator.

    Usage:
        pipeline = ValidationPipeline()
        stage1 = pipeline.validate_query("20kg child seizure midazolam")
        stage2 = pipeline.validate_retrieved_protocols(protocols)
        stage3 = pipeline.validate_llm_context(context, protocols)
        stage4 = pipeline.validate_response(answer, protocols)
        if stage4.blocking:
            ...
    """

    def __init__(self, catalog: Optional[ProviderImpressionCatalog] = None,
                 dosing: Optional[DosingRegistry] = None):
        self.catalog = catalog or load_catalog()
        self.dosing = dosing or DosingRegistry()

    # ───────────────────────────────────────────────────────────────────────────
    # Stage 1: pre-retrieval
    # ───────────────────────────────────────────────────────────────────────────

    def validate_query(self, query: str) -> ValidationResult:
        errors: List[ValidationError] = []
        warnings: List[ValidationWarning] = []

        codes = extract_protocol_codes(query)
        medications = find_medications(query)

        for code in codes:
            if not self.catalog.is_valid(code):
                errors.append(ValidationError(
                    code="INVALID_PROTOCOL_CODE",
                    message=f"Protocol {code} not found in LA County PCM",
                    severity=Severity.ERROR,
                    context={"protocol_code": code},
                ))

        if medications and not codes:
            warnings.append(ValidationWarning(
                code="MEDICATION_WITHOUT_PROTOCOL",
                message="Medication query should include clinical context for accurate guidance",
                context={"medications": medications},
            ))

        if is_vague_query(query):
            warnings.append(ValidationWarning(
                code="VAGUE_QUERY",
                message="Query may be too vague - consider asking for specific protocols or symptoms",
                context={"query": query},
            ))

        for med in medications:
            if not is_authorized_medication(med):
                warnings.append(ValidationWarning(
                    code="UNAUTHORIZED_MEDICATION_QUERY",
                    message=f'"{med}" is not in LA County formulary - response may suggest alternatives',
                    context={"medication": med},
                ))

        return self._result(
            "pre-retrieval", not errors, errors, warnings,
            metadata={
                "normalized_query": normalize_query(query),
                "detected_codes": codes,
                "detected_medications": medications,
            },
        )

    # ───────────────────────────────────────────────────────────────────────────
    # Stage 2: during retrieval
    # ───────────────────────────────────────────────────────────────────────────

    def validate_retrieved_protocols(self, protocols: List[Protocol],
                                     today: Optional[date] = None) -> ValidationResult:
        errors: List[ValidationError] = []
        warnings: List[ValidationWarning] = []
        today = today or date.today()

        if not protocols:
            warnings.append(ValidationWarning(
                code="NO_PROTOCOLS_RETRIEVED",
                message="No protocols found - query may be too specific or contain errors",
            ))
            return self._result("during-retrieval", True, errors, warnings)

        for protocol in protocols:
            code = protocol.tp_code
            if not protocol.is_current:
                errors.append(ValidationError(
                    code="DEPRECATED_PROTOCOL",
                    message=f"Protocol {code} is not current version",
                    severity=Severity.CRITICAL,
                    context={"protocol": code},
                ))

            if protocol.effective_date > today:
                errors.append(ValidationError(
                    code="PROTOCOL_NOT_EFFECTIVE",
                    message=f"Protocol {code} is not yet effective",
                    severity=Severity.ERROR,
                    context={"protocol": code, "effective_date": protocol.effective_date.isoformat()},
                ))

            if protocol.expiration_date is not None and protocol.expiration_date < today:
                errors.append(ValidationError(
                    code="PROTOCOL_EXPIRED",
                    message=f"Protocol {code} has expired",
                    severity=Severity.CRITICAL,
                    context={"protocol": code, "expiration_date": protocol.expiration_date.isoformat()},
                ))

            if len(protocol.full_text or "") < MIN_PROTOCOL_TEXT_LENGTH:
                errors.append(ValidationError(
                    code="INCOMPLETE_PROTOCOL",
                    message=f"Protocol {code} has insufficient content",
                    severity=Severity.CRITICAL,
                    context={"protocol": code},
                ))

            if not (protocol.name or "").strip():
                errors.append(ValidationError(
                    code="MISSING_PROTOCOL_NAME",
                    message=f"Protocol {code} has no name",
                    severity=Severity.ERROR,
                    context={"protocol": code},
                ))

            if protocol.warnings:
                warnings.append(ValidationWarning(
                    code="CRITICAL_WARNINGS_PRESENT",
                    message=f"Protocol {code} has {len(protocol.warnings)} critical warnings",
                    context={"protocol": code, "warnings": protocol.warnings},
                ))

        conflicts = detect_protocol_conflicts(protocols)
        if conflicts:
            warnings.append(ValidationWarning(
                code="PROTOCOL_CONFLICTS",
                message="Multiple protocols with potentially conflicting guidance",
                context={"conflicts": conflicts},
            ))

        valid = not any(e.severity == Severity.CRITICAL for e in errors)
        return self._result("during-retrieval", valid, errors, warnings)

    # ───────────────────────────────────────────────────────────────────────────
    # Stage 3: pre-response
    # ───────────────────────────────────────────────────────────────────────────

    def validate_llm_context(self, context: str, protocols: List[Protocol],
                             reference_codes: Iterable[str] = ()) -> ValidationResult:
        """
        Check the assembled context before it reaches the model.

        reference_codes are protocols present in the retrieved context (lower
        ranked hits, cross-references) that may be cited but carry no rules.
        """
        errors: List[ValidationError] = []
        warnings: List[ValidationWarning] = []
        retrieved = sorted({p.tp_code.upper() for p in protocols} | {c.upper() for c in reference_codes})

        for citation in extract_protocol_codes(context):
            if citation not in retrieved:
                errors.append(ValidationError(
                    code="UNRETRIEVED_CITATION",
                    message=f"Context references protocol {citation} not in retrieved protocols",
                    severity=Severity.ERROR,
                    context={"citation": citation, "retrieved_protocols": retrieved},
                ))

        medication_check = validate_medications(context)
        for message in medication_check.errors:
            errors.append(ValidationError(
                code="CONTEXT_MEDICATION_ERROR",
                message=message,
                severity=Severity.CRITICAL,
                context={"source": "llm_context"},
            ))
        for message in medication_check.warnings:
            warnings.append(ValidationWarning(
                code="CONTEXT_MEDICATION_WARNING",
                message=message,
                context={"source": "llm_context"},
            ))

        dose_errors, dose_warnings = self._check_doses(context, protocols)
        errors.extend(dose_errors)
        warnings.extend(dose_warnings)

        time_sensitive = [
            p.tp_code for p in protocols
            if any(term in w.lower() for w in p.warnings for term in TIME_SENSITIVE_TERMS)
        ]
        if time_sensitive:
            warnings.append(ValidationWarning(
                code="TIME_SENSITIVE_PROTOCOL",
                message="Context includes time-sensitive protocols - emphasize urgency in response",
                context={"protocols": time_sensitive},
            ))

        requiring_contact = [p.tp_code for p in protocols if p.base_contact_required]
        if requiring_contact and not mentions_base_contact(context):
            errors.append(ValidationError(
                code="MISSING_BASE_CONTACT",
                message="Base Hospital contact required but not mentioned in context",
                severity=Severity.CRITICAL,
                context={"protocols": requiring_contact},
            ))

        return self._result("pre-response", not errors, errors, warnings)

    # ───────────────────────────────────────────────────────────────────────────
    # Stage 4: post-response
    # ───────────────────────────────────────────────────────────────────────────

    def validate_response(self, response: str, protocols: List[Protocol],
                          reference_codes: Iterable[str] = ()) -> ValidationResult:
        errors: List[ValidationError] = []
        warnings: List[ValidationWarning] = []
        sources = sorted({p.tp_code.upper() for p in protocols} | {c.upper() for c in reference_codes})
        cited = extract_protocol_codes(response)

        for citation in cited:
            if citation not in sources:
                errors.append(ValidationError(
                    code="HALLUCINATED_CITATION",
                    message=f"Response cites protocol {citation} not in source protocols",
                    severity=Severity.CRITICAL,
                    context={"citation": citation, "source_protocols": sources},
                ))

        medication_check = validate_medications(response)
        for message in medication_check.errors:
            errors.append(ValidationError(
                code="RESPONSE_MEDICATION_ERROR",
                message=message,
                severity=Severity.CRITICAL,
                context={"source": "llm_output"},
            ))
        for message in medication_check.warnings:
            warnings.append(ValidationWarning(
                code="RESPONSE_MEDICATION_WARNING",
                message=message,
                context={"source": "llm_output"},
            ))

        dose_errors, dose_warnings = self._check_doses(response, protocols)
        errors.extend(dose_errors)
        warnings.extend(dose_warnings)

        contradictions = detect_contradictions(response)
        if contradictions:
            errors.append(ValidationError(
                code="RESPONSE_CONTRADICTIONS",
                message="Response contains contradictory information",
                severity=Severity.ERROR,
                context={"contradictions": contradictions},
            ))

        for message in validate_protocol_citations(response, self.catalog).errors:
            errors.append(ValidationError(
                code="INVALID_PROTOCOL_CITATION",
                message=message,
                severity=Severity.ERROR,
                context={"source": "llm_output"},
            ))

        # Rules follow the protocols the answer cites; an uncited answer answers to all of them
        governing = [p for p in protocols if p.tp_code.upper() in cited] or protocols
        has_base_contact = mentions_base_contact(response)
        mentions_contraindications = "contraindicat" in response.lower()
        for protocol in governing:
            if protocol.base_contact_required and not has_base_contact:
                errors.append(ValidationError(
                    code="MISSING_BASE_CONTACT_REQUIREMENT",
                    message=f"Response missing Base Hospital contact requirement for {protocol.tp_code}",
                    severity=Severity.CRITICAL,
                    context={"protocol": protocol.tp_code},
                ))
            if protocol.contraindications and not mentions_contraindications:
                warnings.append(ValidationWarning(
                    code="CONTRAINDICATIONS_NOT_MENTIONED",
                    message=f"Protocol {protocol.tp_code} has contraindications that may not be mentioned",
                    context={"protocol": protocol.tp_code, "contraindications": protocol.contraindications},
                ))

        valid = not any(e.severity == Severity.CRITICAL for e in errors)
        return self._result("post-response", valid, errors, warnings)

    # ───────────────────────────────────────────────────────────────────────────
    # Helpers
    # ───────────────────────────────────────────────────────────────────────────

    def _check_doses(self, text: str, protocols: Iterable[Protocol]
                     ) -> Tuple[List[ValidationError], List[ValidationWarning]]:
        errors: List[ValidationError] = []
        warnings: List[ValidationWarning] = []
        overrides: List[DoseRange] = [r for p in protocols for r in p.dose_overrides]
        seen = set()

        for dose in extract_medication_doses(text):
            key = (dose.name, dose.quantity, dose.unit, dose.route)
            if key in seen:
                continue
            seen.add(key)

            ranges = self.dosing.ranges_for(dose.name, dose.route, dose.unit, overrides)
            if not ranges:
                warnings.append(ValidationWarning(
                    code="DOSE_RANGE_UNKNOWN",
                    message=f"No dose range defined for {dose.label} ({dose.unit})",
                    context={"medication": dose.name, "route": dose.route, "unit": dose.unit},
                ))
                continue

            if any(within_range(dose.quantity, r) for r in ranges):
                continue

            accepted = ", ".join(
                f"{r.route} {_fmt(r.min_dose)}-{_fmt(r.max_dose)} {r.unit}" for r in ranges
            )
            errors.append(ValidationError(
                code="DOSE_OUT_OF_RANGE",
                message=(
                    f"Dose {_fmt(dose.quantity)} {dose.unit} for {dose.label} "
                    f"outside LA County range ({accepted})"
                ),
                severity=Severity.CRITICAL,
                context={
                    "medication": dose.name,
                    "route": dose.route,
                    "dose": f"{_fmt(dose.quantity)} {dose.unit}",
                    "valid_range": accepted,
                },
            ))
        return errors, warnings

    @staticmethod
    def _result(stage: str, valid: bool, errors: List[ValidationError], warnings: List[ValidationWarning],
                metadata: Optional[Dict] = None) -> ValidationResult:
        if errors:
            logger.info(
                f"Validation stage {stage} found {len(errors)} errors",
                extra={
                    "validation_stage": stage,
                    "valid": valid,
                    "error_codes": [e.code for e in errors],
                    "warning_codes": [w.code for w in warnings],
                }
            )
        return ValidationResult(valid=valid, errors=errors, warnings=warnings, metadata=metadata)
