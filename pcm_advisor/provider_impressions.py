"""
Provider Impressions

Provider-impression (PI) to treatment-protocol mapping. This table is the
authoritative source of valid protocol codes and their names; pediatric
variants carry a "-P" suffix.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Union

from pydantic import BaseModel, Field

from .config import get_settings

logger = logging.getLogger(__name__)

# Query terms that make the provider-impressions reference worth including
MEDICAL_TERMS = (
    'chest pain', 'cardiac', 'stroke', 'seizure', 'trauma', 'respiratory', 'abdominal',
    'allergic', 'burn', 'overdose', 'diabetic', 'fever', 'shock', 'hypotension',
    'bradycardia', 'tachycardia', 'syncope', 'dizziness', 'headache', 'nausea',
    'vomiting', 'bleeding', 'pregnancy', 'childbirth', 'newborn', 'behavioral',
    'psychiatric', 'alcohol', 'intoxication', 'electrocution', 'hypothermia',
    'hyperthermia', 'carbon monoxide', 'hazmat', 'dystonic', 'epistaxis', 'eye',
    'dental', 'ent', 'brue', 'airway', 'obstruction', 'choking', 'inhalation',
    'smoke', 'stings', 'bites', 'submersion', 'drowning', 'breath', 'anaphylaxis',
)

SECTION_HEADER = "**PROVIDER IMPRESSIONS REFERENCE (LA County):**"


class ProviderImpression(BaseModel):
    pi_name: str
    pi_code: str
    tp_name: str
    tp_code: str
    tp_code_pediatric: Optional[str] = None
    guidelines: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class ProviderImpressionCatalog:
    """Immutable PI table with protocol-code lookups."""

    def __init__(self, impressions: List[ProviderImpression]):
        self.impressions = list(impressions)
        names: Dict[str, str] = {}
        for pi in self.impressions:
            names.setdefault(pi.tp_code, pi.tp_name)
            if pi.tp_code_pediatric:
                names.setdefault(pi.tp_code_pediatric, f"{pi.tp_name} (Pediatric)")
        self._names = names
        self._codes: FrozenSet[str] = frozenset(names)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ProviderImpressionCatalog":
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(
                f"Provider impressions unavailable: {path}",
                extra={"path": str(path), "reason": str(e)}
            )
            return cls([])
        return cls([ProviderImpression.model_validate(entry) for entry in raw])

    @property
    def valid_codes(self) -> FrozenSet[str]:
        return self._codes

    def is_valid(self, code: str) -> bool:
        return code.upper() in self._codes

    def protocol_name(self, code: str) -> Optional[str]:
        return self._names.get(code.upper())

    def match(self, query: str, limit: int = 3) -> List[ProviderImpression]:
        ql = query.lower()
        found = []
        for pi in self.impressions:
            if (pi.pi_name.lower() in ql
                    or pi.pi_code.lower() in ql
                    or pi.tp_name.lower() in ql
                    or any(k.lower() in ql for k in pi.keywords)):
                found.append(pi)
                if len(found) >= limit:
                    break
        return found

    def build_section(self, query: str, pcm_only: bool = True) -> str:
        """
        Reference section prepended to the LLM context, or "" when the query
        carries no recognised medical term or no PI matches.
        """
        ql = query.lower()
        if not any(term in ql for term in MEDICAL_TERMS):
            return ""
        relevant = self.match(ql)
        if not relevant:
            return ""

        section = SECTION_HEADER + "\n"
        for pi in relevant:
            codes = pi.tp_code + (f"/{pi.tp_code_pediatric}" if pi.tp_code_pediatric else "")
            section += f"• **{pi.pi_name} ({pi.pi_code})** → **{pi.tp_name} ({codes})**\n"
            if not pcm_only and pi.guidelines:
                section += f"  {pi.guidelines}\n\n"
            else:
                section += "\n"
        return section + "---\n\n"


@lru_cache()
def load_catalog(path: Optional[str] = None) -> ProviderImpressionCatalog:
    """Load (once per path) the PI catalog; defaults to the configured file."""
    return ProviderImpressionCatalog.from_file(path or get_settings().provider_impressions_file)
