"""
Guardrail Engine

Last-line safety net over the final LLM text, independent of the
validation pipeline. Produces detection flags, human-readable notes and,
for every "<drug> <amount> <unit>" mention outside the accepted adult
doses, a correction listing every accepted dose with its citations.

evaluate() never raises: a failed dose computation for one mention is
logged and that mention gets no correction.
"""

import logging
import re
from typing import List, Optional

from .dosing import (
    ADULT_REFERENCE_WEIGHT_KG,
    DosingRegistry,
    MedicationDose,
    extract_medication_doses,
    within_tolerance,
)
from .medication_validator import find_brand_names, find_unauthorized_medications, suggested_substitute
from .models import GuardrailCheck, GuardrailCorrection
from .protocol_validator import extract_tp_citations
from .provider_impressions import ProviderImpressionCatalog, load_catalog

logger = logging.getLogger(__name__)

OUTSIDE_SCOPE = re.compile(r"(other counties|general medicine advice|non-ems)")
SCENE_SAFETY_TERMS = ("scene unsafe", "leave patient", "exit immediately", "retreat")
PEDIATRIC_CONTEXT = re.compile(r"\b(pediatric|child|infant|neonate|age\s*(?:under|less than)\s*18)\b")
PEDIATRIC_MARKER = re.compile(r"\b(mcg\s*1309|color\s*code|broslow|length-?based)\b")


class GuardrailEngine:
    """
    Usage:
        engine = GuardrailEngine()
        check = engine.evaluate(answer)
        if check.corrections:
            answer = engine.apply_corrections(answer, check)
    """

    def __init__(self, catalog: Optional[ProviderImpressionCatalog] = None,
                 dosing: Optional[DosingRegistry] = None,
                 reference_weight_kg: float = ADULT_REFERENCE_WEIGHT_KG):
        self.catalog = catalog or load_catalog()
        self.dosing = dosing or DosingRegistry()
        self.reference_weight_kg = reference_weight_kg

    def evaluate(self, text: str) -> GuardrailCheck:
        text = text or ""
        lower = text.lower()
        check = GuardrailCheck()

        citations = extract_tp_citations(text)
        check.pcm_citations_present = bool(citations)
        if not citations:
            check.notes.append("Missing explicit PCM citation.")
        check.invalid_protocols = [c for c in citations if not self.catalog.is_valid(c)]
        if check.invalid_protocols:
            check.notes.append(
                f"CRITICAL: Invalid protocol numbers detected: {', '.join(check.invalid_protocols)} "
                f"- these may be hallucinated"
            )

        check.unauthorized_medications = find_unauthorized_medications(text)
        check.contains_unauthorized_med = bool(check.unauthorized_medications)
        if check.contains_unauthorized_med:
            check.notes.append(
                f"CRITICAL: Contains non-LA County medication: {', '.join(check.unauthorized_medications)} "
                f"- remove these"
            )
            check.notes.append(
                "Formulary substitutes: "
                + ", ".join(f"{m} → {suggested_substitute(m)}" for m in check.unauthorized_medications)
            )

        brands = find_brand_names(text)
        if brands:
            check.notes.append(
                "Use generic names: " + ", ".join(f"{brand} → {generic}" for brand, generic in brands)
            )

        check.outside_scope = bool(OUTSIDE_SCOPE.search(lower))
        if check.outside_scope:
            check.notes.append("Potentially outside LA County EMS scope.")

        check.pediatric_marker_missing = bool(PEDIATRIC_CONTEXT.search(lower)) and not PEDIATRIC_MARKER.search(lower)
        if check.pediatric_marker_missing:
            check.notes.append("Pediatric context detected without PCM pediatric marker (MCG 1309).")

        check.scene_safety_concern = any(term in lower for term in SCENE_SAFETY_TERMS)
        if check.scene_safety_concern:
            check.notes.append("Scene safety guidance may be unsafe; review PCM Scene Safety flow.")

        for dose in extract_medication_doses(text):
            try:
                correction = self._dose_correction(dose)
            except (ArithmeticError, ValueError, TypeError, KeyError) as e:
                logger.warning(
                    f"Dose check failed for {dose.text!r}, no correction available",
                    extra={"medication": dose.name, "error": str(e)}
                )
                continue
            if correction is not None:
                check.dosing_issues.append(f"{dose.text} outside PCM ranges.")
                check.corrections.append(correction)

        return check

    def _dose_correction(self, dose: MedicationDose) -> Optional[GuardrailCorrection]:
        result = self.dosing.calculate(dose.name, weight_kg=self.reference_weight_kg, scenario="guardrail")
        if result is None or not result.recommendations:
            return None

        if any(r.unit == dose.unit and within_tolerance(dose.quantity, r.quantity)
               for r in result.recommendations):
            return None

        replacement = "; ".join(
            f"{result.medication} {r.route} {r.quantity:g} {r.unit}" for r in result.recommendations
        )
        return GuardrailCorrection(original=dose.text, replacement=replacement, citations=list(result.citations))

    @staticmethod
    def apply_corrections(text: str, check: GuardrailCheck) -> str:
        """Replace each flagged dose span with the accepted doses and their sources."""
        corrected = text
        for correction in check.corrections:
            sources = f" [{'; '.join(correction.citations)}]" if correction.citations else ""
            corrected = corrected.replace(correction.original, f"{correction.replacement}{sources}", 1)
        return corrected


def collect_notes(check: GuardrailCheck) -> List[str]:
    """Notes plus dosing issues, in the order they should be shown."""
    return list(check.notes) + list(check.dosing_issues)
