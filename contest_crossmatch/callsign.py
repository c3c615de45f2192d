"""Callsign normalization.

Logs record calls like ``VE3/W1AW/P``; matching works on the base call
(``W1AW``). Validity is a coarse ITU shape check, plus the one-by-one special
event form (``K1A``) which the shape check would otherwise reject.
"""

from __future__ import annotations

import re
from typing import Optional

CALL_RE = re.compile(r"^(?:[A-Z]{1,2}|[A-Z][0-9]|[0-9][A-Z]{1,2})[0-9]{1,2}[A-Z]{1,4}$")
ONE_BY_ONE = re.compile(r"^[A-Z][0-9][A-Z]$")


def normalize(text: Optional[str]) -> str:
    """Uppercase and drop whitespace; None becomes the empty string."""
    return re.sub(r"\s+", "", text or "").upper()


def base_call(text: Optional[str]) -> str:
    """Return the canonical base form of a logged callsign.

    Of the ``/``-separated parts, the longest one shaped like a callsign wins;
    if none is, the longest part is used as-is.
    """
    call = normalize(text)
    parts = [p for p in call.split("/") if p]
    if not parts:
        return call
    shaped = [p for p in parts if CALL_RE.match(p) or ONE_BY_ONE.match(p)]
    return max(shaped or parts, key=len)


def is_valid_format(text: Optional[str]) -> bool:
    call = base_call(text)
    return bool(CALL_RE.match(call) or ONE_BY_ONE.match(call))


def is_one_by_one(text: Optional[str]) -> bool:
    return bool(ONE_BY_ONE.match(normalize(text)))
