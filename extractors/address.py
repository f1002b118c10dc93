"""Address cleanup: raw feed address → geocoder-friendly query (no external services)."""

import re
from typing import Optional

LPR_CODE_REGEX = re.compile(r"\bLPR\s*\d+\b", re.I)
# "CALLE, 1234 (CRUCE)" and "CALLE (CRUCE)" both mean the corner of CALLE and CRUCE
CROSS_WITH_NUMBER_REGEX = re.compile(r"^(.+?),\s*\d+\s*\((.+?)\)\s*$")
CROSS_REGEX = re.compile(r"^(.+?)\s*\((.+?)\)\s*$")
# Operator notes in parentheses ("frente a plaza", "casa esquina") are not streets
ANNOTATION_REGEX = re.compile(
    r"\b(?:FRENTE|ESQUINA|CASA|LOCAL|DEPTO|DEPARTAMENTO|EDIFICIO|INTERIOR|ENTRADA|SALIDA"
    r"|ALTURA|LADO|CERCA|ESTACIONAMIENTO|SIN)\b"
)
LETTER_REGEX = re.compile(r"[^\W\d_]")
PARENTHETICAL_REGEX = re.compile(r"\([^()]*\)")
TRAILING_NUMBER_REGEX = re.compile(r"(?:\s*,\s*\d+)+\s*$")
DOT_SEPARATOR_REGEX = re.compile(r"\s*\.\s+")
SLASH_REGEX = re.compile(r"\s*/\s*")
AMPERSAND_RUN_REGEX = re.compile(r"(?:\s*&\s*)+")
WHITESPACE_REGEX = re.compile(r"\s+")
EDGE_JUNK = " ,&"

INTERSECTION = " & "


def _is_cross_street(street: str, cross: str) -> bool:
    """Parenthetical reads as a street name: has letters, same casing as the street, no note words."""
    if not LETTER_REGEX.search(cross):
        return False
    if any(ch.islower() for ch in cross) and not any(ch.islower() for ch in street):
        return False
    return ANNOTATION_REGEX.search(cross.upper()) is None


def _normalize_once(s: str) -> str:
    s = LPR_CODE_REGEX.sub("", s).strip()
    m = CROSS_WITH_NUMBER_REGEX.match(s) or CROSS_REGEX.match(s)
    # Anything else in parentheses is dropped below
    if m and _is_cross_street(m.group(1), m.group(2)):
        s = f"{m.group(1).strip()}{INTERSECTION}{m.group(2).strip()}"
    s = PARENTHETICAL_REGEX.sub("", s).replace("(", " ").replace(")", " ")
    s = TRAILING_NUMBER_REGEX.sub("", s)
    s = DOT_SEPARATOR_REGEX.sub(INTERSECTION, s)
    s = SLASH_REGEX.sub(INTERSECTION, s)
    s = AMPERSAND_RUN_REGEX.sub(INTERSECTION, s)
    s = WHITESPACE_REGEX.sub(" ", s)
    return s.strip(EDGE_JUNK)


def normalize(raw: Optional[str]) -> str:
    """
    Clean a feed address for geocoding. Idempotent: the pass runs until nothing changes.

    "APOQUINDO, 4499 (ESCUELA MILITAR)" → "APOQUINDO & ESCUELA MILITAR"
    "COLON / VESPUCIO LPR 12"           → "COLON & VESPUCIO"
    "EL TOQUI, 2001"                    → "EL TOQUI"
    """
    if not raw:
        return ""
    s = raw.strip()
    while True:
        cleaned = _normalize_once(s)
        if cleaned == s:
            return cleaned
        s = cleaned


def cache_key(raw: Optional[str]) -> str:
    """Geocode cache key: normalized, uppercased, trimmed."""
    return normalize(raw).upper().strip()


def geocoder_query(raw: Optional[str], locality: str) -> str:
    """Normalized address plus the fixed locality suffix sent to the geocoder."""
    base = normalize(raw)
    if not base:
        return ""
    return f"{base}, {locality}" if locality else base
