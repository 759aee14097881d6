"""Text normalization utilities for contractor names.

Handles case, whitespace, punctuation and legal-entity suffixes so that
"The Acme Corp." and "ACME CORPORATION" compare as the same name.
"""
from __future__ import annotations

import re
import unicodedata

LEGAL_SUFFIXES = (
    "INCORPORATED",
    "INC",
    "LLC",
    "L L C",
    "LLP",
    "CORPORATION",
    "CORP",
    "COMPANY",
    "CO",
    "LIMITED",
    "LTD",
    "PLLC",
    "PC",
)

_SUFFIX_PATTERN = re.compile(
    r"(?:\s*,\s*|\s+)(?:" + "|".join(re.escape(s) for s in LEGAL_SUFFIXES) + r")\.?$"
)
_LEADING_THE = re.compile(r"^THE\s+")


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def normalize_punctuation(text: str) -> str:
    """Normalize common punctuation variations."""
    # Replace smart quotes
    text = text.replace('“', '"').replace('”', '"')
    text = text.replace('‘', "'").replace('’', "'")

    # Normalize dashes
    text = text.replace('–', '-').replace('—', '-')

    # "&" carries meaning in firm names ("Booz Allen & Co")
    text = text.replace('&', ' AND ')

    return text


def strip_accents(text: str) -> str:
    """Fold accented characters to their ASCII base letters."""
    text = unicodedata.normalize('NFD', text)
    text = ''.join(c for c in text if unicodedata.category(c) != 'Mn')
    return unicodedata.normalize('NFC', text)


def strip_legal_suffixes(name: str) -> str:
    """Remove trailing legal-entity suffixes, repeatedly ("ACME CORP, INC.")."""
    previous = None
    while previous != name:
        previous = name
        name = _SUFFIX_PATTERN.sub("", name).strip()
    return name


def normalize_company_name(name: str | None) -> str:
    """Canonical comparison form of a contractor name.

    Steps: accent folding, uppercase, whitespace collapse, legal suffix and
    leading "THE" removal, then punctuation removal.

    Args:
        name: Raw contractor or profile name

    Returns:
        Normalized name, or "" for empty input
    """
    if not name or not name.strip():
        return ""

    text = normalize_punctuation(strip_accents(name))
    text = normalize_whitespace(text.upper())
    text = strip_legal_suffixes(text)
    text = _LEADING_THE.sub("", text)

    text = re.sub(r"[^\w\s]", "", text)
    text = normalize_whitespace(text)

    # Suffixes can surface again once punctuation is gone ("ACME L.L.C.")
    return strip_legal_suffixes(text)
