"""Similarity primitives shared by the comparator and the singleton resolver.

`tolerance` is a "hill" function: full credit inside ``full_range``, none
beyond ``zero_range`` and a straight line in between. String similarity is
Jaro-Winkler; the mode-aware variant weights a shared prefix less for Morse,
where a miscopied character is a real disagreement, than for voice modes,
where transcription errors cluster late in the call.
"""

from __future__ import annotations

from typing import Optional

from rapidfuzz.distance import JaroWinkler

from .errors import ConfigurationError
from .models import Mode

CW_PREFIX_WEIGHT = 0.05
VOICE_PREFIX_WEIGHT = 0.15


def tolerance(value: float, full_range: float, zero_range: float) -> float:
    """Score ``value`` in [0, 1]: 1.0 within full_range, 0.0 at or past zero_range.

    Raises ConfigurationError if zero_range <= full_range.
    """
    if zero_range <= full_range:
        raise ConfigurationError(
            f"zero range {zero_range} must exceed full range {full_range}"
        )
    value = abs(value)
    if value <= full_range:
        return 1.0
    if value >= zero_range:
        return 0.0
    return 1.0 - (value - full_range) / (zero_range - full_range)


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Plain Jaro-Winkler similarity; a missing side scores 0."""
    if a is None or b is None:
        return 0.0
    return JaroWinkler.similarity(a.upper(), b.upper())


def mode_similarity(a: Optional[str], b: Optional[str], both_cw: bool) -> float:
    """Jaro-Winkler with the prefix weight chosen by how the exchange was copied."""
    if a is None or b is None:
        return 0.0
    weight = CW_PREFIX_WEIGHT if both_cw else VOICE_PREFIX_WEIGHT
    return JaroWinkler.similarity(a.upper(), b.upper(), prefix_weight=weight)


def is_cw_pair(mode1: Optional[Mode], mode2: Optional[Mode]) -> bool:
    return mode1 == Mode.CW and mode2 == Mode.CW
