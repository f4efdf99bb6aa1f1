"""
Protocol Citation Validator

Validates protocol citations in generated text:
1. Cited TP codes must exist in the LA County PCM (provider-impression table)
2. The name written next to a citation should match the protocol on record
3. MCG references outside the commonly cited set are flagged for review
"""

import re
from typing import List, Optional

from .models import TextValidation
from .provider_impressions import ProviderImpressionCatalog, load_catalog

COMMON_MCG_CODES = frozenset({"1309", "1335", "1375", "1302"})

TP_CITATION = re.compile(r"\b(?:TP|Protocol)\s+(\d{4}(?:-P)?)\b", re.IGNORECASE)
MCG_CITATION = re.compile(r"\bMCG\s+(\d{4})", re.IGNORECASE)

_NORMALIZE = re.compile(r"[^a-z0-9]")
_NAME_COMPARE_LENGTH = 10
_MIN_NAME_LENGTH = 5


def extract_tp_citations(text: str) -> List[str]:
    """Distinct TP/Protocol citation codes in first-seen order."""
    codes: List[str] = []
    for match in TP_CITATION.finditer(text or ""):
        code = match.group(1).upper()
        if code not in codes:
            codes.append(code)
    return codes


def _normalized(name: str) -> str:
    return _NORMALIZE.sub("", name.lower())


def _mentioned_name(text: str, code: str) -> Optional[str]:
    pattern = re.compile(
        rf"\b(?:TP|Protocol)\s+{re.escape(code)}\b(?!-P\b)[\s:\-–(]*([^.,;)\n]*)", re.IGNORECASE
    )
    match = pattern.search(text)
    if not match:
        return None
    return match.group(1).strip() or None


def names_match(mentioned: str, expected: str) -> bool:
    """Paraphrase-tolerant comparison on normalized prefixes."""
    mentioned_n = _normalized(mentioned)
    expected_n = _normalized(expected)
    return (mentioned_n[:_NAME_COMPARE_LENGTH] in expected_n
            or expected_n[:_NAME_COMPARE_LENGTH] in mentioned_n)


def validate_protocol_citations(text: str, catalog: Optional[ProviderImpressionCatalog] = None) -> TextValidation:
    """
    Validate every TP/Protocol/MCG citation in text.

    Unknown TP codes are errors (likely hallucinated); name mismatches and
    uncommon MCG codes are warnings.
    """
    catalog = catalog or load_catalog()
    errors: List[str] = []
    warnings: List[str] = []

    for match in MCG_CITATION.finditer(text or ""):
        code = match.group(1)
        if code not in COMMON_MCG_CODES:
            warnings.append(f"Uncommon MCG code: MCG {code} - verify this is correct")

    citations = extract_tp_citations(text)
    for code in citations:
        if not catalog.is_valid(code):
            errors.append(
                f"INVALID PROTOCOL: TP {code} does not exist in LA County PCM. This may be hallucinated."
            )
            continue

        expected = catalog.protocol_name(code)
        mentioned = _mentioned_name(text, code)
        if not expected or not mentioned or len(mentioned) <= _MIN_NAME_LENGTH:
            continue
        if not names_match(mentioned, expected):
            warnings.append(
                f'PROTOCOL NAME MISMATCH: TP {code} cited as "{mentioned}" but actual name is "{expected}"'
            )

    return TextValidation(valid=not errors, errors=errors, warnings=warnings, found=citations)


def get_valid_protocols(catalog: Optional[ProviderImpressionCatalog] = None) -> List[str]:
    return sorted((catalog or load_catalog()).valid_codes)


def is_valid_protocol(code: str, catalog: Optional[ProviderImpressionCatalog] = None) -> bool:
    return (catalog or load_catalog()).is_valid(code)


def get_protocol_name(code: str, catalog: Optional[ProviderImpressionCatalog] = None) -> Optional[str]:
    return (catalog or load_catalog()).protocol_name(code)
