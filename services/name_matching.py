# -*- coding: utf-8 -*-
"""
Arabic name matching.

Handles:
- Diacritics and tatweel removal
- Common letter variations (أ/إ/آ, ة, ى, ؤ, ئ)
- Edit-distance similarity on a 0-100 scale
- Weighted full-name and person scoring
"""

import re
from typing import Any, Dict, Optional, Tuple

# Arabic normalization mappings
ARABIC_NORMALIZATIONS = {
    'أ': 'ا', 'إ': 'ا', 'آ': 'ا', 'ٱ': 'ا',  # Alef variants
    'ة': 'ه',  # Taa marbuta
    'ى': 'ي',  # Alef maksura
    'ؤ': 'و',  # Waw with hamza
    'ئ': 'ي',  # Yaa with hamza
}

_DIACRITICS = re.compile(r'[\u064B-\u065F\u0670\u0640]')

# Full-name component weights
NAME_WEIGHTS = {
    'first_name': 0.30,
    'father_name': 0.30,
    'family_name': 0.40,
}

# Person score contributions (when national ids do not decide)
PHONE_POINTS = 30.0
NAME_FACTOR = 0.40
BIRTH_YEAR_POINTS = 15.0
GENDER_POINTS = 15.0

_GENDER_ALIASES = {
    'm': 'male', 'male': 'male', 'ذكر': 'male',
    'f': 'female', 'female': 'female', 'أنثى': 'female', 'انثى': 'female',
}


def normalize_arabic(text: Optional[str]) -> str:
    """Normalize Arabic (or Latin) text for comparison."""
    if not text:
        return ""
    text = _DIACRITICS.sub('', str(text))
    for orig, repl in ARABIC_NORMALIZATIONS.items():
        text = text.replace(orig, repl)
    return ' '.join(text.lower().split())


def normalize_phone(phone: Optional[str]) -> str:
    """Reduce a Syrian phone number to its national significant digits."""
    if not phone:
        return ""
    digits = re.sub(r'\D', '', str(phone))
    if digits.startswith('00963'):
        digits = digits[5:]
    elif digits.startswith('963'):
        digits = digits[3:]
    return digits.lstrip('0')


def normalize_gender(value: Optional[str]) -> str:
    if not value:
        return ""
    key = str(value).strip().lower()
    return _GENDER_ALIASES.get(key, key)


def levenshtein(s1: str, s2: str) -> int:
    """Edit distance (two-row dynamic programming)."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, 1):
        current = [i]
        for j, c2 in enumerate(s2, 1):
            cost = 0 if c1 == c2 else 1
            current.append(min(
                previous[j] + 1,         # Deletion
                current[j - 1] + 1,      # Insertion
                previous[j - 1] + cost,  # Substitution
            ))
        previous = current
    return previous[-1]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Normalized similarity of two strings, 0-100."""
    norm_a, norm_b = normalize_arabic(a), normalize_arabic(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 100.0
    distance = levenshtein(norm_a, norm_b)
    return round(max(0.0, 1.0 - distance / max(len(norm_a), len(norm_b))) * 100.0, 2)


def full_name_similarity(first: Dict[str, Any], second: Dict[str, Any]) -> float:
    """
    Weighted similarity over first, father and family names.

    Components missing on either side are dropped and the remaining
    weights renormalized, so a record without a father name is not
    penalized for it.
    """
    total = 0.0
    weight = 0.0
    for name, w in NAME_WEIGHTS.items():
        if first.get(name) and second.get(name):
            total += similarity(first.get(name), second.get(name)) * w
            weight += w
    if weight == 0:
        return 0.0
    return round(total / weight, 2)


def _same_year(a: Any, b: Any) -> bool:
    try:
        return a is not None and b is not None and int(a) == int(b)
    except (TypeError, ValueError):
        return False


def score_persons(first: Dict[str, Any], second: Dict[str, Any]) -> Tuple[float, Dict[str, Any]]:
    """
    Score two person records on a 0-100 scale.

    Returns the score and the criteria that contributed to it.
    """
    nid_a = str(first.get('national_id') or '').strip()
    nid_b = str(second.get('national_id') or '').strip()
    name_score = full_name_similarity(first, second)
    criteria: Dict[str, Any] = {'name_similarity': name_score}

    if nid_a and nid_a == nid_b:
        criteria['national_id'] = True
        return 100.0, criteria

    score = name_score * NAME_FACTOR

    phone_a = normalize_phone(first.get('mobile_number'))
    if phone_a and phone_a == normalize_phone(second.get('mobile_number')):
        criteria['phone'] = True
        score += PHONE_POINTS

    if _same_year(first.get('year_of_birth'), second.get('year_of_birth')):
        criteria['year_of_birth'] = True
        score += BIRTH_YEAR_POINTS

    gender_a = normalize_gender(first.get('gender'))
    if gender_a and gender_a == normalize_gender(second.get('gender')):
        criteria['gender'] = True
        score += GENDER_POINTS

    return round(min(score, 100.0), 2), criteria


def display_name(record: Dict[str, Any]) -> str:
    parts = [record.get('first_name'), record.get('father_name'), record.get('family_name')]
    return ' '.join(str(p) for p in parts if p)
