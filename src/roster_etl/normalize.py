"""Normalization functions for CRM lead/student ingestion.

All functions accept str | None (or loosely typed source values) and return
the appropriate type or None.  Malformed input is expected here; nothing in
this module raises on bad data.
"""

from __future__ import annotations

import re
from typing import Any

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: Any) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None.

    Non-string scalars (ints from JSON payloads) are stringified first.
    """
    if value is None:
        return None
    v = str(value).strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: Any) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: Any) -> str | None:
    """Lowercase and trim an email address; reject values without '@'."""
    v = trim(value)
    if v is None or "@" not in v:
        return None
    return v.lower()


# ---------------------------------------------------------------------------
# Rule 4: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: Any) -> str | None:
    """Return a digit-only comparable phone key or None.

    Keeps digits only.
    11-digit starting with 8 → leading digit replaced by 7.
    10-digit starting with 9 → 7 prepended (bare mobile number).
    Fewer than 10 or more than 15 digits → None.

    Two raw phones are the same contact iff their keys are equal.  Applying
    the function to its own output returns the output unchanged.
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if not digits:
        return None
    if len(digits) == 11 and digits.startswith("8"):
        digits = "7" + digits[1:]
    elif len(digits) == 10 and digits.startswith("9"):
        digits = "7" + digits
    if len(digits) < MIN_PHONE_DIGITS or len(digits) > MAX_PHONE_DIGITS:
        return None
    return digits


# ---------------------------------------------------------------------------
# Helper: display_name
# ---------------------------------------------------------------------------

def display_name(
    last_name: Any,
    first_name: Any,
    middle_name: Any = None,
) -> str | None:
    """Join "Last First Middle" the way the CRM displays people.

    Missing parts are dropped; returns None when every part is empty.
    """
    parts = [normalize_space(p) for p in (last_name, first_name, middle_name)]
    joined = " ".join(p for p in parts if p)
    return joined or None


# ---------------------------------------------------------------------------
# Helper: parse_bool
# ---------------------------------------------------------------------------

_TRUE_STRINGS = frozenset({"1", "true", "yes", "y", "да"})


def parse_bool(value: Any) -> bool:
    """Loose truthiness for source flags that arrive as bool, int or text."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    v = trim(value)
    return v is not None and v.lower() in _TRUE_STRINGS
