"""
Dosing Registry

LA County medication dosing reference used by retrieval (pediatric
weight-based dosing block), the validation pipeline (dose range checks)
and the guardrail engine (dose corrections).

Features:
- Accepted dose ranges per medication and route (adult and per-kg)
- Dose calculator keyed by medication and patient weight
- Extraction of "<drug> <amount> <unit> [route]" mentions from free text
- Extraction of weight-plus-medication pediatric queries ("20kg midazolam")

Usage:
    registry = DosingRegistry()
    result = registry.calculate("midazolam", weight_kg=20)
    print(result.summary_line)
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .models import DoseRange

# Patients below this weight get per-kg pediatric dosing
PEDIATRIC_WEIGHT_LIMIT_KG = 40.0
ADULT_REFERENCE_WEIGHT_KG = 70.0

DOSE_TOLERANCE = 0.15
MIN_ABSOLUTE_TOLERANCE = 0.05

_LB_PER_KG = 2.20462


def tolerance(value: float) -> float:
    return max(abs(value) * DOSE_TOLERANCE, MIN_ABSOLUTE_TOLERANCE)


def within_tolerance(value: float, expected: float) -> bool:
    return abs(value - expected) <= tolerance(expected)


def within_range(value: float, dose_range: DoseRange) -> bool:
    low = dose_range.min_dose - tolerance(dose_range.min_dose)
    high = dose_range.max_dose + tolerance(dose_range.max_dose)
    return low <= value <= high


def _r(medication, route, low, high, unit, weight_based=False, pediatric_only=False, notes=None) -> DoseRange:
    return DoseRange(
        medication=medication, route=route, min_dose=low, max_dose=high, unit=unit,
        weight_based=weight_based, pediatric_only=pediatric_only, notes=notes,
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Accepted dose ranges
# ═══════════════════════════════════════════════════════════════════════════════

MEDICATION_DOSE_RANGES: Tuple[DoseRange, ...] = (
    # Cardiac
    _r("epinephrine", "IV", 0.01, 1, "mg"),
    _r("epinephrine", "IM", 0.3, 0.5, "mg"),
    _r("epinephrine", "IV", 0.01, 0.3, "mg/kg", True, True),
    _r("atropine", "IV", 0.5, 3, "mg"),
    _r("atropine", "IV", 0.02, 1, "mg/kg", True, True),
    _r("amiodarone", "IV", 150, 300, "mg"),
    _r("amiodarone", "IV", 5, 5, "mg/kg", True, True),
    _r("adenosine", "IV", 6, 12, "mg"),
    _r("adenosine", "IV", 0.1, 0.3, "mg/kg", True, True),
    _r("nitroglycerin", "SL", 0.3, 0.4, "mg"),
    _r("aspirin", "PO", 162, 325, "mg"),

    # Respiratory
    _r("albuterol", "NEB", 2.5, 5, "mg"),

    # Pain management
    _r("fentanyl", "IV", 25, 100, "mcg"),
    _r("fentanyl", "IN", 25, 100, "mcg"),
    _r("fentanyl", "IV", 1, 2, "mcg/kg", True, True),
    _r("morphine", "IV", 2, 10, "mg"),
    _r("morphine", "IV", 0.05, 0.1, "mg/kg", True, True),
    _r("ketorolac", "IV", 15, 30, "mg"),
    _r("ketorolac", "IM", 30, 60, "mg"),
    _r("acetaminophen", "IV", 500, 1000, "mg"),

    # Neurological
    _r("midazolam", "IV", 2, 5, "mg"),
    _r("midazolam", "IM", 5, 10, "mg"),
    _r("midazolam", "IN", 5, 10, "mg"),
    _r("midazolam", "IV", 0.05, 0.2, "mg/kg", True, True),

    # Antiemetics
    _r("ondansetron", "IV", 4, 8, "mg"),
    _r("ondansetron", "IV", 0.1, 0.15, "mg/kg", True, True),

    # Antidotes
    _r("naloxone", "IV", 0.4, 2, "mg"),
    _r("naloxone", "IN", 2, 4, "mg"),
    _r("naloxone", "IV", 0.1, 2, "mg/kg", True, True),
    _r("glucagon", "IM", 0.5, 1, "mg"),
    _r("calcium chloride", "IV", 500, 1000, "mg"),

    # Metabolic
    _r("dextrose", "IV", 12.5, 25, "g", notes="D50 (50%)"),
    _r("dextrose", "IV", 0.5, 1, "g/kg", True, True, notes="D10 or D25"),
    _r("magnesium sulfate", "IV", 2, 4, "g"),
    _r("sodium bicarbonate", "IV", 50, 100, "mEq"),

    # Allergy
    _r("diphenhydramine", "IV", 25, 50, "mg"),
    _r("diphenhydramine", "IM", 25, 50, "mg"),
)


# ═══════════════════════════════════════════════════════════════════════════════
# Dose calculator
# ═══════════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class AdultDose:
    route: str
    quantity: float
    unit: str
    indication: str


@dataclass(frozen=True)
class PediatricDose:
    route: str
    per_kg: float
    unit: str
    max_dose: float
    indication: str


@dataclass(frozen=True)
class MedicationProfile:
    name: str
    adult: Tuple[AdultDose, ...]
    pediatric: Tuple[PediatricDose, ...] = ()
    citations: Tuple[str, ...] = ()


@dataclass
class DoseRecommendation:
    route: str
    quantity: float
    unit: str
    indication: str
    per_kg: Optional[float] = None

    def describe(self) -> str:
        text = f"{self.route} {_fmt(self.quantity)} {self.unit}"
        if self.per_kg is not None:
            text += f" ({_fmt(self.per_kg)} {self.unit}/kg"
            text += f", {self.indication})" if self.indication else ")"
        elif self.indication:
            text += f" ({self.indication})"
        return text


@dataclass
class DosingResult:
    medication: str
    weight_kg: float
    pediatric: bool
    recommendations: List[DoseRecommendation] = field(default_factory=list)
    citations: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def summary_line(self) -> str:
        doses = "; ".join(r.describe() for r in self.recommendations)
        return f"{self.medication.capitalize()} for {_fmt(self.weight_kg)} kg: {doses}"


def _fmt(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


_DRUG_REF = "LA County MCG 1317 (Drug Reference)"
_PED_REF = "LA County MCG 1309 (Pediatric Dosing)"

MEDICATION_PROFILES: Dict[str, MedicationProfile] = {
    p.name: p for p in (
        MedicationProfile(
            "epinephrine",
            adult=(AdultDose("IM", 0.5, "mg", "anaphylaxis"), AdultDose("IV", 1, "mg", "cardiac arrest")),
            pediatric=(PediatricDose("IM", 0.01, "mg", 0.5, "anaphylaxis"),
                       PediatricDose("IV", 0.01, "mg", 1, "cardiac arrest")),
            citations=(_DRUG_REF, "TP 1210", "TP 1219"),
        ),
        MedicationProfile(
            "atropine",
            adult=(AdultDose("IV", 1, "mg", "symptomatic bradycardia"),),
            pediatric=(PediatricDose("IV", 0.02, "mg", 0.5, "symptomatic bradycardia"),),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "amiodarone",
            adult=(AdultDose("IV", 300, "mg", "VF/pulseless VT"), AdultDose("IV", 150, "mg", "repeat / stable VT")),
            pediatric=(PediatricDose("IV", 5, "mg", 300, "VF/pulseless VT"),),
            citations=(_DRUG_REF, "TP 1210"),
        ),
        MedicationProfile(
            "adenosine",
            adult=(AdultDose("IV", 6, "mg", "SVT"), AdultDose("IV", 12, "mg", "SVT repeat")),
            pediatric=(PediatricDose("IV", 0.1, "mg", 6, "SVT"),),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "nitroglycerin",
            adult=(AdultDose("SL", 0.4, "mg", "cardiac chest pain"),),
            citations=(_DRUG_REF, "TP 1211"),
        ),
        MedicationProfile(
            "aspirin",
            adult=(AdultDose("PO", 325, "mg", "cardiac chest pain"), AdultDose("PO", 162, "mg", "cardiac chest pain")),
            citations=(_DRUG_REF, "TP 1211"),
        ),
        MedicationProfile(
            "albuterol",
            adult=(AdultDose("NEB", 5, "mg", "bronchospasm"),),
            pediatric=(PediatricDose("NEB", 0.15, "mg", 5, "bronchospasm"),),
            citations=(_DRUG_REF, "TP 1237"),
        ),
        MedicationProfile(
            "fentanyl",
            adult=(AdultDose("IV", 50, "mcg", "pain"), AdultDose("IN", 50, "mcg", "pain"),
                   AdultDose("IV", 100, "mcg", "pain, max single dose")),
            pediatric=(PediatricDose("IV", 1, "mcg", 50, "pain"), PediatricDose("IN", 1.5, "mcg", 75, "pain")),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "morphine",
            adult=(AdultDose("IV", 4, "mg", "pain"),),
            pediatric=(PediatricDose("IV", 0.1, "mg", 4, "pain"),),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "ketorolac",
            adult=(AdultDose("IV", 15, "mg", "pain"), AdultDose("IM", 30, "mg", "pain")),
            pediatric=(PediatricDose("IV", 0.5, "mg", 15, "pain"),),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "acetaminophen",
            adult=(AdultDose("IV", 1000, "mg", "pain / fever"),),
            pediatric=(PediatricDose("IV", 15, "mg", 1000, "pain / fever"),),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "midazolam",
            adult=(AdultDose("IV", 5, "mg", "seizure"), AdultDose("IM", 10, "mg", "seizure"),
                   AdultDose("IN", 10, "mg", "seizure")),
            pediatric=(PediatricDose("IM", 0.2, "mg", 10, "seizure"), PediatricDose("IV", 0.1, "mg", 5, "seizure"),
                       PediatricDose("IN", 0.2, "mg", 10, "seizure")),
            citations=(_DRUG_REF, "TP 1231"),
        ),
        MedicationProfile(
            "ondansetron",
            adult=(AdultDose("IV", 4, "mg", "nausea/vomiting"),),
            pediatric=(PediatricDose("IV", 0.15, "mg", 4, "nausea/vomiting"),),
            citations=(_DRUG_REF, "TP 1205"),
        ),
        MedicationProfile(
            "naloxone",
            adult=(AdultDose("IN", 4, "mg", "opioid overdose"), AdultDose("IV", 2, "mg", "opioid overdose"),
                   AdultDose("IV", 0.4, "mg", "opioid overdose, titrated")),
            pediatric=(PediatricDose("IV", 0.1, "mg", 2, "opioid overdose"),),
            citations=(_DRUG_REF, "TP 1241"),
        ),
        MedicationProfile(
            "glucagon",
            adult=(AdultDose("IM", 1, "mg", "hypoglycemia"),),
            pediatric=(PediatricDose("IM", 0.03, "mg", 1, "hypoglycemia"),),
            citations=(_DRUG_REF, "TP 1203"),
        ),
        MedicationProfile(
            "dextrose",
            adult=(AdultDose("IV", 25, "g", "hypoglycemia"),),
            pediatric=(PediatricDose("IV", 0.5, "g", 25, "hypoglycemia (D10)"),),
            citations=(_DRUG_REF, "TP 1203"),
        ),
        MedicationProfile(
            "diphenhydramine",
            adult=(AdultDose("IV", 50, "mg", "allergic reaction"), AdultDose("IM", 50, "mg", "allergic reaction")),
            pediatric=(PediatricDose("IV", 1, "mg", 50, "allergic reaction"),),
            citations=(_DRUG_REF, "TP 1219"),
        ),
        MedicationProfile(
            "calcium chloride",
            adult=(AdultDose("IV", 1000, "mg", "hyperkalemia"),),
            pediatric=(PediatricDose("IV", 20, "mg", 1000, "hyperkalemia"),),
            citations=(_DRUG_REF,),
        ),
        MedicationProfile(
            "sodium bicarbonate",
            adult=(AdultDose("IV", 50, "mEq", "hyperkalemia / TCA overdose"),),
            pediatric=(PediatricDose("IV", 1, "mEq", 50, "hyperkalemia / TCA overdose"),),
            citations=(_DRUG_REF, "TP 1242"),
        ),
    )
}

MEDICATION_ALIASES: Dict[str, str] = {
    "epi": "epinephrine",
    "adrenalin": "epinephrine",
    "epipen": "epinephrine",
    "versed": "midazolam",
    "narcan": "naloxone",
    "zofran": "ondansetron",
    "toradol": "ketorolac",
    "tylenol": "acetaminophen",
    "benadryl": "diphenhydramine",
    "proventil": "albuterol",
    "ventolin": "albuterol",
    "nitro": "nitroglycerin",
    "asa": "aspirin",
    "bicarb": "sodium bicarbonate",
    "d10": "dextrose",
    "d50": "dextrose",
}

KNOWN_MEDICATION_NAMES: Tuple[str, ...] = tuple(sorted(
    set(MEDICATION_PROFILES) | {r.medication for r in MEDICATION_DOSE_RANGES} | set(MEDICATION_ALIASES),
    key=lambda name: (-len(name), name),
))


def resolve_medication(name: str) -> Optional[str]:
    key = re.sub(r"\s+", " ", (name or "").strip().lower())
    key = MEDICATION_ALIASES.get(key, key)
    if key in MEDICATION_PROFILES or any(r.medication == key for r in MEDICATION_DOSE_RANGES):
        return key
    return None


class DosingRegistry:
    """Dose calculator and range lookup over the static tables."""

    def __init__(self, profiles: Optional[Dict[str, MedicationProfile]] = None,
                 ranges: Iterable[DoseRange] = MEDICATION_DOSE_RANGES):
        self.profiles = dict(profiles or MEDICATION_PROFILES)
        self.ranges = tuple(ranges)

    def calculate(self, drug_key: str, weight_kg: float = ADULT_REFERENCE_WEIGHT_KG,
                  scenario: Optional[str] = None) -> Optional[DosingResult]:
        """
        Dose recommendations for a medication at a patient weight.

        Pediatric per-kg dosing applies below PEDIATRIC_WEIGHT_LIMIT_KG or when
        scenario == "pediatric"; each dose is capped at its maximum.
        Returns None for unknown medications or non-positive weights.
        """
        medication = resolve_medication(drug_key)
        profile = self.profiles.get(medication) if medication else None
        if profile is None or weight_kg is None or weight_kg <= 0:
            return None

        pediatric = scenario == "pediatric" or weight_kg < PEDIATRIC_WEIGHT_LIMIT_KG
        result = DosingResult(medication=profile.name, weight_kg=weight_kg, pediatric=pediatric)

        if pediatric and profile.pediatric:
            for dose in profile.pediatric:
                quantity = round(dose.per_kg * weight_kg, 2)
                if quantity > dose.max_dose:
                    quantity = dose.max_dose
                    result.notes.append(
                        f"{dose.route} dose capped at maximum {_fmt(dose.max_dose)} {dose.unit}"
                    )
                result.recommendations.append(
                    DoseRecommendation(dose.route, quantity, dose.unit, dose.indication, per_kg=dose.per_kg)
                )
            result.citations = [_PED_REF, *profile.citations]
        else:
            if pediatric:
                result.notes.append("No weight-based pediatric dose on file; adult dosing shown, contact Base")
            result.recommendations = [
                DoseRecommendation(d.route, d.quantity, d.unit, d.indication) for d in profile.adult
            ]
            result.citations = list(profile.citations)
        return result

    def ranges_for(self, medication: str, route: Optional[str] = None, unit: Optional[str] = None,
                   overrides: Iterable[DoseRange] = ()) -> List[DoseRange]:
        """
        Accepted ranges for a medication, narrowed by route and unit when given.
        Protocol overrides for the medication replace the registry ranges.
        """
        medication = resolve_medication(medication) or medication.lower()
        custom = [r for r in overrides if r.medication.lower() == medication]
        candidates = custom or [r for r in self.ranges if r.medication == medication]
        if route:
            candidates = [r for r in candidates if r.route.upper() == normalize_route(route)]
        if unit:
            candidates = [r for r in candidates if r.unit.lower() == unit.lower()]
        return candidates


# ═══════════════════════════════════════════════════════════════════════════════
# Text extraction
# ═══════════════════════════════════════════════════════════════════════════════

ROUTE_ALIASES = {"IO": "IV", "IVP": "IV", "ODT": "PO", "NEBULIZED": "NEB"}

_NAMES_ALTERNATION = "|".join(re.escape(n).replace(r"\ ", r"\s+") for n in KNOWN_MEDICATION_NAMES)

DOSE_PATTERN = re.compile(
    rf"\b({_NAMES_ALTERNATION})\s+(\d+(?:\.\d+)?)\s*(mg|mcg|g|meq|units?)(/kg)?\b"
    rf"(?:\s+(iv|io|ivp|im|po|sl|in|neb|nebulized|odt)\b)?",
    re.IGNORECASE,
)

WEIGHT_PATTERN = re.compile(
    r"\b(\d+(?:\.\d+)?)\s*(kg|kgs|kilos?|kilograms?|lbs?|pounds?)\b", re.IGNORECASE
)

_MEDICATION_MENTION = re.compile(rf"\b({_NAMES_ALTERNATION})\b", re.IGNORECASE)


def normalize_route(route: str) -> str:
    route = route.upper()
    return ROUTE_ALIASES.get(route, route)


def normalize_unit(unit: str) -> str:
    unit = unit.lower()
    if unit == "meq":
        return "mEq"
    if unit.startswith("unit"):
        return "units"
    return unit


@dataclass
class MedicationDose:
    name: str
    quantity: float
    unit: str
    route: Optional[str]
    text: str

    @property
    def label(self) -> str:
        return f"{self.name} {self.route}" if self.route else self.name


def extract_medication_doses(text: str) -> List[MedicationDose]:
    """Every "<drug> <amount> <unit>[/kg] [route]" mention, in text order."""
    doses = []
    for match in DOSE_PATTERN.finditer(text or ""):
        name, amount, unit, per_kg, route = match.groups()
        medication = resolve_medication(name)
        if medication is None:
            continue
        unit = normalize_unit(unit) + ("/kg" if per_kg else "")
        doses.append(MedicationDose(
            name=medication,
            quantity=float(amount),
            unit=unit,
            route=normalize_route(route) if route else None,
            text=match.group(0),
        ))
    return doses


def extract_weight_kg(text: str) -> Optional[float]:
    match = WEIGHT_PATTERN.search(text or "")
    if not match:
        return None
    value = float(match.group(1))
    if match.group(2).lower().startswith(("lb", "pound")):
        value = value / _LB_PER_KG
    return round(value, 1)


def extract_weight_medication_queries(text: str) -> List[Tuple[str, float]]:
    """(medication, weight_kg) pairs for queries such as "20kg child midazolam"."""
    weight = extract_weight_kg(text)
    if weight is None or weight <= 0:
        return []
    found: List[Tuple[str, float]] = []
    for match in _MEDICATION_MENTION.finditer(text):
        medication = resolve_medication(match.group(1))
        if medication and medication in MEDICATION_PROFILES and all(m != medication for m, _ in found):
            found.append((medication, weight))
    return found
