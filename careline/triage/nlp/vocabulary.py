"""
Shared clinical vocabulary for the deterministic NLP fallbacks.

Symptom patterns map free text onto canonical symptom names; the red-flag
rules are written against those canonical names.  Drug aliases map brand
and regional names onto one canonical medication name.
"""

from __future__ import annotations

import re

# canonical symptom → regex patterns (matched against lowercased text)
SYMPTOM_PATTERNS: dict[str, list[str]] = {
    "chest pain": [r"chest\s*(pain|hurts?|ache)", r"pain in (my|the) chest", r"crushing.*chest", r"chest.*tight"],
    "shortness of breath": [r"short(ness)? of breath", r"can'?t (breathe|catch (my )?breath)", r"difficulty breathing", r"breathless", r"gasping for air"],
    "wheezing": [r"wheez"],
    "headache": [r"head\s*ache", r"migraine", r"my head (hurts|is pounding)"],
    "fever": [r"fever", r"high temperature", r"feverish"],
    "cough": [r"cough"],
    "sore throat": [r"sore throat", r"throat (hurts|is sore)"],
    "cold": [r"\bcold\b", r"runny nose", r"blocked nose", r"sneez"],
    "nausea": [r"nause", r"feel(ing)? sick"],
    "vomiting": [r"vomit(?!ing blood)", r"throwing up", r"been sick"],
    "vomiting blood": [r"vomit(ing)? blood", r"blood in (my )?vomit", r"throwing up blood"],
    "diarrhea": [r"diarrh", r"loose stools?"],
    "black stool": [r"black.*stool", r"tarry stool", r"blood in (my )?(stool|poo)"],
    "abdominal pain": [r"(stomach|abdominal|belly|tummy)\s*(pain|ache|hurts|cramps?)", r"pain in (my|the) (stomach|abdomen|belly)"],
    "dizziness": [r"dizz", r"light\s*headed", r"room is spinning"],
    "fainting": [r"faint", r"passed out", r"blacked out", r"lost consciousness"],
    "rash": [r"\brash\b", r"spots on (my )?skin"],
    "hives": [r"\bhives\b", r"welts"],
    "swelling": [r"swell(ing|ed|en)(?!.*(throat|tongue|lips?))", r"puffy (ankles|legs|feet)"],
    "throat swelling": [r"(throat|tongue|lips?).*(swell|closing)", r"swell.*(throat|tongue|lips?)", r"throat.*closing"],
    "bleeding": [r"bleed", r"blood (won'?t stop|everywhere)"],
    "fatigue": [r"tired", r"exhausted", r"fatigue", r"no energy"],
    "confusion": [r"confus", r"disoriented", r"not making sense", r"can'?t think straight"],
    "numbness": [r"\bnumb(ness)?\b", r"pins and needles", r"tingling"],
    "weakness": [r"weak(ness)? (in|on) (my )?(arm|leg|side)", r"(arm|leg) (is|feels) weak", r"can'?t (lift|move) my (arm|leg)"],
    "facial droop": [r"face.*droop", r"droop.*face", r"one side of (my|his|her) face"],
    "slurred speech": [r"slurr", r"can'?t speak properly", r"words (are|come out) (wrong|jumbled)"],
    "palpitations": [r"palpitation", r"heart (is )?(racing|pounding|fluttering)", r"irregular heartbeat"],
    "blurred vision": [r"blurr(ed|y) vision", r"vision (is )?blurr", r"can'?t see properly"],
    "seizure": [r"seizure", r"having (a )?fit", r"convuls"],
    "suicidal thoughts": [r"suicid", r"kill myself", r"want to die", r"\bend (it all|my life)", r"better off dead"],
    "low blood sugar": [r"low (blood )?sugar", r"\bhypo\b", r"hypoglyc", r"sugar (is )?(low|dropped)"],
    "high blood sugar": [r"high (blood )?sugar", r"hyperglyc", r"sugar (is )?(high|over)"],
    "back pain": [r"back\s*(pain|ache|hurts)"],
    "joint pain": [r"joint(s)? (pain|ache|hurt)", r"(knee|hip|shoulder) (pain|hurts)"],
    "insomnia": [r"can'?t sleep", r"insomnia", r"trouble sleeping"],
    "anxiety": [r"anxi", r"panic", r"nervous all the time"],
}

# canonical medication → aliases
DRUG_ALIASES: dict[str, list[str]] = {
    "paracetamol": ["paracetamol", "acetaminophen", "tylenol", "panadol"],
    "ibuprofen": ["ibuprofen", "advil", "nurofen", "motrin"],
    "aspirin": ["aspirin"],
    "naproxen": ["naproxen", "aleve"],
    "metformin": ["metformin", "glucophage"],
    "insulin": ["insulin", "lantus", "novorapid", "humalog"],
    "warfarin": ["warfarin", "coumadin"],
    "apixaban": ["apixaban", "eliquis"],
    "lisinopril": ["lisinopril"],
    "ramipril": ["ramipril"],
    "amlodipine": ["amlodipine"],
    "atorvastatin": ["atorvastatin", "lipitor"],
    "simvastatin": ["simvastatin"],
    "levothyroxine": ["levothyroxine", "thyroxine", "synthroid"],
    "omeprazole": ["omeprazole", "prilosec"],
    "amoxicillin": ["amoxicillin", "amoxil"],
    "clarithromycin": ["clarithromycin"],
    "sertraline": ["sertraline", "zoloft"],
    "fluoxetine": ["fluoxetine", "prozac"],
    "tramadol": ["tramadol"],
    "oxycodone": ["oxycodone", "oxycontin"],
    "codeine": ["codeine", "co-codamol"],
    "prednisolone": ["prednisolone", "prednisone"],
    "methotrexate": ["methotrexate"],
    "clozapine": ["clozapine"],
    "salbutamol": ["salbutamol", "albuterol", "ventolin"],
    "furosemide": ["furosemide", "lasix"],
}

_ALIAS_TO_DRUG: dict[str, str] = {
    alias: drug for drug, aliases in DRUG_ALIASES.items() for alias in aliases
}
_DRUG_RE = re.compile(
    r"\b(" + "|".join(sorted(map(re.escape, _ALIAS_TO_DRUG), key=len, reverse=True)) + r")\b"
)


def canonical_drug(name: str) -> str:
    """'Advil' → 'ibuprofen'; unknown names are just lowercased."""
    key = name.strip().lower()
    return _ALIAS_TO_DRUG.get(key, key)


def find_medications(text: str) -> list[str]:
    """Canonical medication names mentioned in text, in order of first mention."""
    found: list[str] = []
    for match in _DRUG_RE.finditer(text.lower()):
        drug = _ALIAS_TO_DRUG[match.group(1)]
        if drug not in found:
            found.append(drug)
    return found


def find_symptoms(text: str) -> list[str]:
    """Canonical symptom names mentioned in text."""
    lowered = text.lower()
    return [
        name for name, patterns in SYMPTOM_PATTERNS.items()
        if any(re.search(p, lowered) for p in patterns)
    ]
