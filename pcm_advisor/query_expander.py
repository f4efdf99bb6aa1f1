"""
Query Expander

Rewrites a raw field query into an expanded query using the domain synonym
table: colloquial field language to clinical terms, abbreviations, brand
names to generics, and the protocol numbers each presentation maps to.

The table is compiled once at import. Every rule whose trigger matches
contributes its expansions; expansions are de-duplicated in first-seen
order and appended after the whitespace-normalized original query.
"""

import re
from dataclasses import dataclass
from typing import List, Pattern, Tuple


@dataclass(frozen=True)
class SynonymRule:
    patterns: Tuple[Pattern, ...]
    expansions: Tuple[str, ...]

    def matches(self, lowered: str) -> bool:
        return any(p.search(lowered) for p in self.patterns)


def _rule(patterns: List[str], expansions: List[str]) -> SynonymRule:
    return SynonymRule(
        patterns=tuple(re.compile(p) for p in patterns),
        expansions=tuple(expansions),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Synonym table
# ═══════════════════════════════════════════════════════════════════════════════

SYNONYM_RULES: Tuple[SynonymRule, ...] = (
    # Cardiac
    _rule([r"\bheart attack\b", r"\bmi\b(?!\s*miles)", r"\bmyocardial\b"],
          ["myocardial infarction", "stemi", "cardiac chest pain", "protocol 1211", "nitroglycerin", "aspirin"]),
    _rule([r"\bstemi\b", r"\bchest pain\b", r"\bacs\b", r"\bangina\b"],
          ["protocol 1211", "cardiac chest pain", "nitroglycerin", "aspirin", "morphine"]),
    _rule([r"\bchf\b", r"\bcongestive heart failure\b", r"\bpulmonary edema\b", r"\bfluid in lungs\b"],
          ["protocol 1214", "CHF", "pulmonary edema", "nitroglycerin"]),
    _rule([r"\bcardiac arrest\b", r"\bno pulse\b", r"\bpulseless\b", r"\bcode\b(?!\s*3)", r"\bcpr\b"],
          ["protocol 1210", "cardiac arrest", "epinephrine", "amiodarone", "CPR"]),

    # Respiratory
    _rule([r"\bcan'?t breathe?\b", r"\btrouble breathing\b", r"\bhard to breathe\b", r"\blabored breathing\b"],
          ["shortness of breath", "SOB", "dyspnea", "respiratory distress", "protocol 1237"]),
    _rule([r"\bbronchospasm\b", r"\bcopd\b", r"\basthma\b", r"\bwheez(?:e|ing)\b", r"\brespiratory distress\b"],
          ["shortness of breath", "protocol 1237", "albuterol", "nebulizer"]),
    _rule([r"\bchoking\b", r"\bairway obstruction\b", r"\bobstructed airway\b"],
          ["protocol 1234", "airway obstruction", "foreign body"]),

    # Neurological
    _rule([r"\bpassed out\b", r"\bblacked out\b", r"\bfainted\b", r"\bsyncope\b"],
          ["syncope", "loss of consciousness", "LOC", "protocol 1233", "altered mental status"]),
    _rule([r"\bunresponsive\b", r"\bunconscious\b", r"\bloc\b", r"\baltered\b", r"\bconfused\b"],
          ["altered mental status", "protocol 1229", "AMS", "ALOC", "unresponsive"]),
    _rule([r"\bseizure\b", r"\bseizing\b", r"\bconvuls(?:ion|ing)\b", r"\bpostictal\b", r"\bstatus epilepticus\b"],
          ["protocol 1231", "seizure", "benzodiazepine", "midazolam"]),
    _rule([r"\bstroke\b", r"\bcva\b", r"\btia\b", r"\bfacial droop\b", r"\bslurred speech\b", r"\bmlapss\b", r"\blams\b"],
          ["protocol 1232", "stroke assessment", "CVA", "base contact"]),

    # Trauma
    _rule([r"\bgsw\b", r"\bgunshot\b", r"\bgun shot\b", r"\bballistic\b"],
          ["gunshot wound", "penetrating trauma", "protocol 1244", "trauma triage"]),
    _rule([r"\bmvc\b", r"\bmotor vehicle\b", r"\bcar accident\b", r"\bauto accident\b", r"\bcollision\b"],
          ["motor vehicle collision", "blunt trauma", "protocol 1244", "trauma triage"]),
    _rule([r"\bfall\b", r"\bfell\b", r"\bfalling\b", r"\bfallen\b"],
          ["traumatic injury", "fall", "mechanism of injury", "protocol 1244"]),
    _rule([r"\btrauma\b", r"\bmechanism\b", r"\bblunt\b", r"\bpenetrating\b"],
          ["protocol 1244", "trauma triage", "traumatic injury"]),
    _rule([r"\bimpalement\b", r"\bimpaled\b", r"\bpenetrating\s+(?:injury|trauma)\b"],
          ["protocol 1244", "trauma triage", "penetrating trauma"]),
    _rule([r"\bcrush\b", r"\bentrapped\b", r"\bentrapment\b"],
          ["crush injury", "protocol 1242", "crush syndrome", "hyperkalemia", "sodium bicarbonate"]),

    # GI / abdominal
    _rule([r"\bbelly pain\b", r"\bstomach pain\b", r"\babdominal pain\b", r"\babdomen\b", r"\btummy\b"],
          ["abdominal pain", "GI emergency", "protocol 1205"]),
    _rule([r"\bthrowing up\b", r"\bvomiting\b", r"\bpuking\b", r"\bemesis\b", r"\bnausea\b"],
          ["nausea", "vomiting", "emesis", "GI emergency", "protocol 1205", "ondansetron"]),
    _rule([r"\bgi bleed\b", r"\bbleeding internally\b", r"\bvomiting blood\b", r"\bhematemesis\b", r"\bmelena\b"],
          ["GI bleed", "hemorrhage", "protocol 1207", "shock"]),

    # Hemorrhage
    _rule([r"\bbleeding out\b", r"\bhemorrhage\b", r"\blost blood\b", r"\bheavy bleeding\b"],
          ["hemorrhage", "shock", "hypotension", "protocol 1207", "protocol 1230"]),

    # Allergic
    _rule([r"\banaphylaxis\b", r"\ballergic reaction\b", r"\bthroat swelling\b", r"\bangioedema\b"],
          ["protocol 1219", "anaphylaxis", "epinephrine", "diphenhydramine"]),

    # OB
    _rule([r"\bpregnant\b", r"\bpregnancy\b", r"\bdelivery\b", r"\blabor\b", r"\bcontractions\b"],
          ["protocol 1217", "pregnancy complication", "delivery", "eclampsia"]),
    _rule([r"\beclampsia\b", r"\bpre-eclampsia\b", r"\bpreeclampsia\b", r"\bseizure.*pregnant\b"],
          ["eclampsia", "protocol 1217", "magnesium sulfate", "base contact"]),

    # Overdose / poisoning
    _rule([r"\boverdose\b", r"\bpoison\b", r"\bingestion\b", r"\bopioid\b"],
          ["protocol 1241", "overdose", "naloxone", "activated charcoal"]),
    _rule([r"\bnarcan\b"],
          ["naloxone", "opioid overdose", "protocol 1241"]),

    # Behavioral
    _rule([r"\bbehavioral\b", r"\bagitation\b", r"\bpsych\b", r"\bagitated\b", r"\bviolent\b"],
          ["protocol 1209", "behavioral crisis", "psychiatric", "midazolam"]),

    # Diabetic
    _rule([r"\bdiabetic\b", r"\bhypoglycemi\w+\b", r"\bhyperglycemi\w+\b", r"\blow blood sugar\b", r"\bhigh blood sugar\b"],
          ["protocol 1203", "diabetic emergency", "hypoglycemia", "dextrose", "glucagon"]),

    # Brand names to generics
    _rule([r"\bversed\b"], ["midazolam", "seizure", "sedation", "protocol 1231"]),
    _rule([r"\bbenadryl\b"], ["diphenhydramine", "allergy", "protocol 1219"]),
    _rule([r"\bzofran\b"], ["ondansetron", "nausea", "vomiting", "protocol 1205"]),
    _rule([r"\btoradol\b"], ["ketorolac", "pain management"]),
    _rule([r"\btylenol\b"], ["acetaminophen", "pain management", "fever"]),

    # Electrolytes and toxicology
    _rule([r"\bsodium\s*bi\s*carb\b", r"\bbicarb\b", r"\bbi\s*carb\b", r"\bnahco3\b"],
          ["sodium bicarbonate"]),
    _rule([r"\b(?:tca|tricyclic)\b"],
          ["tricyclic overdose", "qrs widening", "sodium bicarbonate"]),
    _rule([r"\bhyperk\b", r"\bhyperkalemi\w*"],
          ["hyperkalemia", "sodium bicarbonate", "cardiac arrest", "bradycardia"]),
    _rule([r"\bdialysis\b", r"\brenal failure\b", r"\bckd\b"],
          ["hyperkalemia", "sodium bicarbonate", "renal failure"]),
    _rule([r"\bpeaked\s*t\s*waves?\b"],
          ["hyperkalemia", "sodium bicarbonate"]),

    # Pediatrics
    _rule([r"\bpediatric\b", r"\bchild\b", r"\bnewborn\b", r"\bneonate\b", r"\binfant\b"],
          ["MCG 1309", "color code", "weight based", "pediatric doses"]),
)

_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Collapse runs of whitespace and trim."""
    return _WHITESPACE.sub(" ", query or "").strip()


def matching_rules(query: str) -> List[SynonymRule]:
    lowered = normalize_query(query).lower()
    return [rule for rule in SYNONYM_RULES if rule.matches(lowered)]


def expand_query(query: str) -> str:
    """
    Expand a query with synonyms from every matching rule.

    >>> expand_query("pt  cant breathe")
    'pt cant breathe shortness of breath SOB dyspnea respiratory distress protocol 1237'
    """
    normalized = normalize_query(query)
    expansions: List[str] = []
    seen = set()
    for rule in matching_rules(normalized):
        for term in rule.expansions:
            if term not in seen:
                seen.add(term)
                expansions.append(term)
    return " ".join([normalized, *expansions]).strip()
