"""Pairwise QSO comparison: exact predicates, tolerance checks and scoring.

The engine never compares ORM rows directly. `MatchContext.view` flattens a
QSO, its resolved callsign/multiplier text and its log's clock adjustment into
an immutable `QSOView`, and everything here works on those views.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from .config import DEFAULT_SETTINGS, MatchSettings
from .models import Band, MatchType, Mode
from .similarity import is_cw_pair, mode_similarity, similarity, tolerance


@dataclass(frozen=True)
class ExchangeView:
    call_id: Optional[int]
    basecall: Optional[str] = None
    callsign: Optional[str] = None
    entity_id: Optional[int] = None
    multiplier_id: Optional[int] = None
    multiplier: Optional[str] = None
    serial: Optional[int] = None
    location: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class QSOView:
    """A QSO as the matcher sees it. ``time`` already includes the log's clock adjustment."""

    id: int
    log_id: int
    band: Band
    mode: Optional[Mode]
    time: Optional[datetime]
    sent: ExchangeView
    recvd: ExchangeView
    frequency: Optional[int] = None
    match_id: Optional[int] = None
    match_type: MatchType = MatchType.NONE

    def basic_line(self) -> str:
        """Normalized one-line rendering used as the pair-decision cache key."""
        when = self.time.strftime("%Y-%m-%d %H%M") if self.time else "----"
        fields = [
            self.band.value,
            self.mode.value if self.mode else "--",
            when,
            self.sent.callsign or "",
            "" if self.sent.serial is None else str(self.sent.serial),
            self.sent.location or "",
            self.recvd.callsign or "",
            "" if self.recvd.serial is None else str(self.recvd.serial),
            self.recvd.location or "",
        ]
        return " ".join(f.strip().upper() for f in fields if f is not None)


def exact_match(a: QSOView, b: QSOView) -> bool:
    return a.band == b.band and a.mode == b.mode


def inexact_match(a: QSOView, b: QSOView) -> bool:
    return a.band == b.band or a.mode == b.mode


def band_mode_match(a: QSOView, b: QSOView, strict: bool = True) -> bool:
    return exact_match(a, b) if strict else inexact_match(a, b)


def exchange_exact_match(sent: ExchangeView, recvd: ExchangeView) -> bool:
    """Same resolved callsign and same resolved multiplier; unresolved never matches."""
    return (
        sent.call_id is not None
        and sent.call_id == recvd.call_id
        and sent.multiplier_id is not None
        and sent.multiplier_id == recvd.multiplier_id
    )


def exchange_tolerance_match(
    sent_serial: Optional[int], recvd_serial: Optional[int], serial_range: int = 1
) -> bool:
    if sent_serial is None or recvd_serial is None:
        return False
    return abs(sent_serial - recvd_serial) <= serial_range


def minutes_apart(a: QSOView, b: QSOView) -> Optional[int]:
    """Whole minutes between the two QSOs, truncating any partial minute."""
    if a.time is None or b.time is None:
        return None
    return int(abs((a.time - b.time).total_seconds()) // 60)


def time_match(a: QSOView, b: QSOView, tolerance_minutes: float) -> bool:
    diff = minutes_apart(a, b)
    return diff is not None and diff <= tolerance_minutes


def serial_deviation(a: QSOView, b: QSOView) -> float:
    """Combined serial disagreement in both directions; inf when a serial is missing."""
    total = 0.0
    for recvd, sent in ((a.recvd.serial, b.sent.serial), (b.recvd.serial, a.sent.serial)):
        if recvd is None or sent is None:
            return math.inf
        total += abs(recvd - sent)
    return total


def time_deviation(a: QSOView, b: QSOView) -> float:
    diff = minutes_apart(a, b)
    return math.inf if diff is None else diff


def full_match(a: QSOView, b: QSOView, time_tolerance: float, serial_range: int = 1) -> bool:
    """True when everything ``a`` received agrees with what ``b`` sent."""
    return (
        exact_match(a, b)
        and time_match(a, b, time_tolerance)
        and exchange_exact_match(b.sent, a.recvd)
        and exchange_tolerance_match(b.sent.serial, a.recvd.serial, serial_range)
    )


def _serial_metric(sent: Optional[int], recvd: Optional[int]) -> int:
    if sent is None:
        return 0
    if recvd is None:
        return abs(sent)
    return abs(sent - recvd)


def impossible_match(a: QSOView, b: QSOView, settings: MatchSettings = DEFAULT_SETTINGS) -> bool:
    """Cheap rejection before scoring; anything rejected here would score 0."""
    if a.id == b.id or a.log_id == b.log_id:
        return True
    if a.sent.call_id == a.recvd.call_id or b.sent.call_id == b.recvd.call_id:
        return True
    if not inexact_match(a, b):
        return True
    diff = minutes_apart(a, b)
    if diff is None or diff >= settings.time_zero:
        return True
    return (
        _serial_metric(a.sent.serial, b.recvd.serial) >= settings.serial_zero
        or _serial_metric(b.sent.serial, a.recvd.serial) >= settings.serial_zero
    )


def probability_score(
    a: QSOView, b: QSOView, settings: MatchSettings = DEFAULT_SETTINGS
) -> Tuple[float, float]:
    """Return (metric, metric2) for a candidate pair.

    ``metric`` multiplies the time score, the cross similarity of the resolved
    callsigns and multipliers, and the serial score in both directions.
    ``metric2`` repeats the cross comparison on the raw logged text, weighted
    by mode, and is only used to break ties.
    """
    diff = minutes_apart(a, b)
    if diff is None:
        return 0.0, 0.0
    metric = (
        tolerance(diff, settings.time_full, settings.time_zero)
        * similarity(a.sent.basecall, b.recvd.basecall)
        * similarity(b.sent.basecall, a.recvd.basecall)
        * tolerance(_serial_metric(a.sent.serial, b.recvd.serial), settings.serial_full, settings.serial_zero)
        * tolerance(_serial_metric(b.sent.serial, a.recvd.serial), settings.serial_full, settings.serial_zero)
        * similarity(a.sent.multiplier, b.recvd.multiplier)
        * similarity(b.sent.multiplier, a.recvd.multiplier)
    )
    cw = is_cw_pair(a.mode, b.mode)
    metric2 = 1.0
    for attr in ("callsign", "location", "serial"):
        for sent, recvd in ((a.sent, b.recvd), (b.sent, a.recvd)):
            s = getattr(sent, attr)
            r = getattr(recvd, attr)
            metric2 *= mode_similarity(
                None if s is None else str(s), None if r is None else str(r), cw
            )
    return metric, metric2


@dataclass(frozen=True)
class MatchCandidate:
    """Two QSOs proposed as the same contact, with their similarity metrics."""

    q1: QSOView
    q2: QSOView
    metric: float = 0.0
    metric2: float = 0.0

    def lines(self) -> Tuple[str, str]:
        return self.q1.basic_line(), self.q2.basic_line()


class CandidateOrder:
    """Ranking contracts for candidate pairs.

    Keys sort ascending; the QSO ids come last so that equal candidates are
    always visited in the same order.
    """

    @staticmethod
    def by_probability(c: MatchCandidate) -> Tuple[float, float, int, int]:
        return (-c.metric, -c.metric2, c.q1.id, c.q2.id)

    @staticmethod
    def by_serial_then_time(c: MatchCandidate) -> Tuple[float, float, int, int]:
        return (serial_deviation(c.q1, c.q2), time_deviation(c.q1, c.q2), c.q1.id, c.q2.id)

    @staticmethod
    def by_time_then_serial(c: MatchCandidate) -> Tuple[float, float, int, int]:
        return (time_deviation(c.q1, c.q2), serial_deviation(c.q1, c.q2), c.q1.id, c.q2.id)


def rank_candidates(candidates: Iterable[MatchCandidate], key=CandidateOrder.by_probability) -> List[MatchCandidate]:
    return sorted(candidates, key=key)
