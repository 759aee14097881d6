"""Contractor name normalization."""

import pytest

from be.pipelines.normalization import (
    normalize_company_name,
    normalize_punctuation,
    normalize_whitespace,
    strip_accents,
    strip_legal_suffixes,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("Acme Corporation", "ACME"),
        ("ACME CORP.", "ACME"),
        ("The Acme Corp", "ACME"),
        ("Initech, Inc.", "INITECH"),
        ("Acme Holdings, LLC", "ACME HOLDINGS"),
        ("Acme L.L.C.", "ACME"),
        ("Booz Allen & Hamilton", "BOOZ ALLEN AND HAMILTON"),
        ("Société Générale", "SOCIETE GENERALE"),
        ("  Belmont  ", "BELMONT"),
    ],
)
def test_normalize_company_name(raw, expected):
    assert normalize_company_name(raw) == expected


def test_suffix_needs_a_word_boundary():
    # "CO" at the end of a word is not a suffix
    assert normalize_company_name("Costco") == "COSTCO"
    assert normalize_company_name("Disco") == "DISCO"


def test_empty_input():
    assert normalize_company_name(None) == ""
    assert normalize_company_name("   ") == ""


def test_stacked_suffixes_are_removed():
    assert strip_legal_suffixes("ACME CORP, INC.") == "ACME"


def test_helpers():
    assert normalize_whitespace("  a \t b\n") == "a b"
    assert normalize_punctuation("“A”–B") == '"A"-B'
    assert strip_accents("Café") == "Cafe"
