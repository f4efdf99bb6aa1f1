"""
Medication Formulary Validator

Checks medication mentions in arbitrary text against the LA County EMS
formulary:
1. Only authorized medications may be recommended
2. Brand names should be replaced with generic names
3. Unknown drug-like words are flagged for review, not rejected

Pure functions over static tables; the whole text is scanned once with a
precompiled pattern and each hit is classified by table lookup.
"""

import re
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .models import TextValidation

AUTHORIZED_MEDICATIONS: FrozenSet[str] = frozenset({
    # Cardiac
    "epinephrine", "norepinephrine", "nitroglycerin", "aspirin", "atropine",
    "adenosine", "amiodarone", "lidocaine", "dopamine",
    # Respiratory
    "albuterol",
    # Sedation / seizure
    "midazolam",
    # Pain
    "fentanyl", "morphine", "ketorolac", "acetaminophen",
    # Antiemetic
    "ondansetron",
    # Allergy
    "diphenhydramine",
    # Antidotes
    "naloxone", "glucagon", "calcium chloride", "calcium gluconate",
    # Metabolic
    "dextrose", "sodium bicarbonate", "magnesium sulfate",
    # OB
    "oxytocin",
    # Toxicology / hemorrhage
    "activated charcoal", "tranexamic acid",
})

BRAND_TO_GENERIC: Dict[str, str] = {
    "narcan": "naloxone",
    "versed": "midazolam",
    "toradol": "ketorolac",
    "tylenol": "acetaminophen",
    "zofran": "ondansetron",
    "benadryl": "diphenhydramine",
    "proventil": "albuterol",
    "ventolin": "albuterol",
    "epipen": "epinephrine",
    "adrenalin": "epinephrine",
    "ativan": "lorazepam",
    "valium": "diazepam",
    "xanax": "alprazolam",
    "klonopin": "clonazepam",
}

# Unauthorized medication -> in-formulary substitute
UNAUTHORIZED_MEDICATIONS: Dict[str, str] = {
    "lorazepam": "midazolam",
    "diazepam": "midazolam",
    "alprazolam": "midazolam",
    "clonazepam": "midazolam",
    "haloperidol": "midazolam",
    "haldol": "midazolam",
    "ketamine": "fentanyl for analgesia or midazolam for sedation",
    "etomidate": "midazolam",
    "propofol": "midazolam",
    "succinylcholine": "BLS airway management (no paralytics in LA County scope)",
    "rocuronium": "BLS airway management (no paralytics in LA County scope)",
    "vecuronium": "BLS airway management (no paralytics in LA County scope)",
}

# Drug-like words that are ordinary vocabulary
NON_MEDICATION_WORDS: FrozenSet[str] = frozenset({
    "routine", "baseline", "guideline", "medicine", "determine", "examine",
    "decline", "combine", "outside", "provide", "override", "decide",
    "genuine", "machine", "discipline", "magazine", "pristine", "engine",
    "estimate", "sideline", "timeline", "midline", "hotline",
})

_UNRECOGNIZED_SUFFIXES = ("ine", "lam", "ide", "xone")


class MedicationClass(str, Enum):
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"
    BRAND = "brand"
    CANDIDATE = "candidate"


def _word_pattern(name: str) -> str:
    return re.escape(name).replace(r"\ ", r"\s+")


_KNOWN_NAMES: Dict[str, MedicationClass] = {
    **{name: MedicationClass.AUTHORIZED for name in AUTHORIZED_MEDICATIONS},
    **{name: MedicationClass.UNAUTHORIZED for name in UNAUTHORIZED_MEDICATIONS},
    **{name: MedicationClass.BRAND for name in BRAND_TO_GENERIC},
}

MEDICATION_PATTERN = re.compile(
    r"\b(?:(?P<known>"
    + "|".join(_word_pattern(n) for n in sorted(_KNOWN_NAMES, key=lambda n: (-len(n), n)))
    + r")|(?P<candidate>[a-z]{4,}(?:ine|ol|lam|ide|cin|pine|xone|amine|cillin|mycin|azole)))\b",
    re.IGNORECASE,
)

_SPACES = re.compile(r"\s+")


def classify(name: str) -> MedicationClass:
    return _KNOWN_NAMES.get(name.lower(), MedicationClass.CANDIDATE)


def _scan(text: str) -> Dict[str, MedicationClass]:
    """Distinct mentions in first-seen order, lower-cased, with their class."""
    found: Dict[str, MedicationClass] = {}
    for match in MEDICATION_PATTERN.finditer(text or ""):
        if match.group("known"):
            name = _SPACES.sub(" ", match.group("known").lower())
            found.setdefault(name, _KNOWN_NAMES[name])
        else:
            found.setdefault(match.group("candidate").lower(), MedicationClass.CANDIDATE)
    return found


def validate_medications(text: str) -> TextValidation:
    """
    Validate every medication mention in text.

    Unauthorized medications (directly or by brand name) are errors with a
    suggested substitute; brand names of authorized medications and
    unrecognized drug-like words are warnings.
    """
    errors: List[str] = []
    warnings: List[str] = []
    authorized: List[str] = []

    for name, kind in _scan(text).items():
        if kind == MedicationClass.BRAND:
            generic = BRAND_TO_GENERIC[name]
            if generic in UNAUTHORIZED_MEDICATIONS:
                errors.append(
                    f'UNAUTHORIZED MEDICATION: "{name}" ({generic}) is NOT in LA County formulary '
                    f'- do not recommend. Use {UNAUTHORIZED_MEDICATIONS[generic]} instead.'
                )
            else:
                warnings.append(f'Use generic name: "{name}" should be "{generic}" per LA County protocols')
                if generic not in authorized:
                    authorized.append(generic)
        elif kind == MedicationClass.UNAUTHORIZED:
            errors.append(
                f'UNAUTHORIZED MEDICATION: "{name}" is NOT authorized in LA County EMS '
                f'- do not recommend. Use {UNAUTHORIZED_MEDICATIONS[name]} instead.'
            )
        elif kind == MedicationClass.AUTHORIZED:
            if name not in authorized:
                authorized.append(name)
        elif (len(name) > 6
              and name.endswith(_UNRECOGNIZED_SUFFIXES)
              and name not in NON_MEDICATION_WORDS):
            warnings.append(
                f'UNRECOGNIZED MEDICATION: "{name}" - verify this is in LA County formulary. '
                f'If not in the knowledge base, do not recommend.'
            )

    return TextValidation(valid=not errors, errors=errors, warnings=warnings, found=authorized)


def find_medications(text: str) -> List[str]:
    """Generic names of every recognised medication mentioned (authorized or not)."""
    names = []
    for name, kind in _scan(text).items():
        if kind == MedicationClass.CANDIDATE:
            continue
        generic = normalize_to_generic(name)
        if generic not in names:
            names.append(generic)
    return names


def find_unauthorized_medications(text: str) -> List[str]:
    return [m for m in find_medications(text) if m in UNAUTHORIZED_MEDICATIONS]


def find_brand_names(text: str) -> List[Tuple[str, str]]:
    """(brand, generic) pairs for brand names of formulary medications."""
    return [
        (name, BRAND_TO_GENERIC[name])
        for name, kind in _scan(text).items()
        if kind == MedicationClass.BRAND and BRAND_TO_GENERIC[name] not in UNAUTHORIZED_MEDICATIONS
    ]


def is_authorized_medication(medication: str) -> bool:
    generic = normalize_to_generic(medication)
    return generic in AUTHORIZED_MEDICATIONS and generic not in UNAUTHORIZED_MEDICATIONS


def normalize_to_generic(medication: str) -> str:
    med = _SPACES.sub(" ", medication.strip().lower())
    return BRAND_TO_GENERIC.get(med, med)


def suggested_substitute(medication: str) -> Optional[str]:
    return UNAUTHORIZED_MEDICATIONS.get(normalize_to_generic(medication))


def get_authorized_medications() -> List[str]:
    return sorted(AUTHORIZED_MEDICATIONS)
