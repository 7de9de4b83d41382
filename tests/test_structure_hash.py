"""Tests for structural hashing.

Run from repo root:
    python -m pytest tests/test_structure_hash.py -v
"""

from __future__ import annotations

MSG_A = "You spent $50 at The Coffee Shop on 03/15/2024"
MSG_B = "You spent $75 at The Coffee Shop on 04/01/2024"


# ── Test 1: Skeleton ───────────────────────────────────────────────────────

def test_template_structure_placeholders():
    """Amount, currency, vendor and date spans become placeholders."""
    from smartpaste.parsing.structure_hash import template_structure

    assert template_structure(MSG_A) == "you spent {currency}{amount} at the {vendor} on {date}"


def test_template_structure_empty():
    from smartpaste.parsing.structure_hash import template_structure

    assert template_structure("") == ""
    assert template_structure("   ") == ""


def test_leftover_digits_become_num():
    """Digit runs outside any role span collapse to {num}."""
    from smartpaste.parsing.structure_hash import template_structure

    skeleton = template_structure("Paid SAR 20 at Jarir, 5 points earned")
    assert "{num} points earned" in skeleton
    assert "{amount}" in skeleton


# ── Test 2: Hash stability ─────────────────────────────────────────────────

def test_hash_same_template_different_values():
    """Same-template messages with different amounts and dates share a hash."""
    from smartpaste.parsing.structure_hash import compute_template_hash

    h1 = compute_template_hash(MSG_A)
    h2 = compute_template_hash(MSG_B)
    assert h1 == h2, f"Hashes differ: {h1} vs {h2}"


def test_hash_ignores_case_and_whitespace():
    from smartpaste.parsing.structure_hash import compute_template_hash

    noisy = "YOU  SPENT $50 at the coffee shop on 03/15/2024"
    assert compute_template_hash(noisy) == compute_template_hash(MSG_A)


def test_hash_ignores_digit_script():
    """Arabic-indic and ASCII digits hash the same."""
    from smartpaste.parsing.structure_hash import compute_template_hash

    assert compute_template_hash("Paid SAR ٥٠ at Panda") == compute_template_hash("Paid SAR 50 at Panda")


def test_hash_different_structure():
    """Different wording gives a different hash."""
    from smartpaste.parsing.structure_hash import compute_template_hash

    income = "Salary of SAR 5000 credited on 01/03/2024"
    assert compute_template_hash(income) != compute_template_hash(MSG_A)


def test_hash_format_and_determinism():
    from smartpaste.parsing.structure_hash import compute_template_hash

    h = compute_template_hash(MSG_A)
    assert len(h) == 16
    assert int(h, 16) >= 0
    assert all(compute_template_hash(MSG_A) == h for _ in range(5))


# ── Test 3: FNV-1a ─────────────────────────────────────────────────────────

def test_fnv1a_reference_vectors():
    """Published FNV-1a 64-bit vectors."""
    from smartpaste.parsing.structure_hash import fnv1a_64

    assert fnv1a_64("") == "cbf29ce484222325"
    assert fnv1a_64("a") == "af63dc4c8601ec8c"
