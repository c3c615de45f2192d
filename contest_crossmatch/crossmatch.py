"""Cross match the QSOs of every log in a contest.

Phases run in a fixed order and each one only looks at QSOs still in state
``None`` (time-shift resolution and the dupe sweeps being the exceptions
that re-read linked QSOs). The exact phases build candidate pairs from hash
indexes on the resolved exchange, rank them, and commit them one by one with
`claim_pair`, so a QSO is never linked twice. Re-running a phase is a no-op
once its candidates are exhausted.

Typical use::

    ctx = MatchContext.for_contest(engine, contest_id)
    report = run_crossmatch(ctx, probabilistic=True)
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Hashable, Iterable, List, NamedTuple, Optional

from loguru import logger
from sqlmodel import Session, select

from .adjudication import Adjudicator, PairDecider
from .comparator import (
    CandidateOrder,
    MatchCandidate,
    QSOView,
    band_mode_match,
    exchange_tolerance_match,
    full_match,
    rank_candidates,
    time_match,
)
from .context import MatchContext
from .models import TIME_SHIFT_TYPES, Callsign, MatchType
from .probmatch import score_candidates
from .singletons import SingletonResolver
from .storage import claim_pair, match_type_counts, restart_match, set_match_type


class Phase(str, Enum):
    OUTSIDE = "outside"
    PERFECT = "perfect"
    PARTIAL = "partial"
    BASIC = "basic"
    TIME_SHIFT = "time-shift"
    DUPES = "dupes"
    NIL = "nil"
    PROBABILITY = "probability"


class LinkCounts(NamedTuple):
    """QSOs given the first and second match type, and QSOs marked Dupe on conflict."""

    first: int = 0
    second: int = 0
    dupes: int = 0

    @property
    def links(self) -> int:
        return self.first + self.second


def _index(views: Iterable[QSOView], key) -> Dict[Hashable, List[QSOView]]:
    out: Dict[Hashable, List[QSOView]] = defaultdict(list)
    for v in views:
        k = key(v)
        if None not in k:
            out[k].append(v)
    return out


def _relaxed(strict: bool) -> str:
    return "" if strict else " allowing band or mode mismatch"


class CrossMatch:
    """The phases of a cross-match run over one contest."""

    def __init__(self, ctx: MatchContext, decider: Optional[PairDecider] = None):
        self.ctx = ctx
        self.settings = ctx.settings
        self.adjudicator = Adjudicator(ctx.contest_id, decider) if decider else None

    def restart_match(self) -> int:
        """Rewind the contest to ingested-but-unmatched; returns QSOs reset."""
        with self.ctx.session() as session:
            count = restart_match(session, self.ctx.log_ids)
            self.ctx.reload(session)
        logger.info(f"Restarted matching for {count} QSOs in {len(self.ctx.log_ids)} logs")
        return count

    def _link(
        self,
        session: Session,
        candidates: Iterable[MatchCandidate],
        first: MatchType,
        second: MatchType,
    ) -> LinkCounts:
        """Claim ranked candidates in order.

        A candidate that loses to a better-ranked pair is a repeat of an
        already-linked contact: whichever side is still unmatched becomes Dupe.
        """
        links = dupes = 0
        for c in candidates:
            if claim_pair(session, c.q1.id, c.q2.id, first, second):
                links += 1
                logger.debug(f"Linked QSO {c.q1.id} ({first.value}) with {c.q2.id} ({second.value})")
                continue
            marked = set_match_type(session, [c.q1.id, c.q2.id], MatchType.DUPE)
            session.commit()
            if marked:
                dupes += marked
                logger.debug(f"Marked {marked} of QSOs {c.q1.id}/{c.q2.id} as Dupe")
        return LinkCounts(links, links, dupes)

    def mark_outside_contest(self) -> int:
        """Mark unmatched QSOs timed outside the contest period; 0 without a period."""
        start, end = self.ctx.contest.start, self.ctx.contest.end
        if start is None and end is None:
            return 0
        with self.ctx.session() as session:
            ids = [
                v.id
                for v in self.ctx.load_views(session)
                if v.time is not None
                and ((start is not None and v.time < start) or (end is not None and v.time > end))
            ]
            count = set_match_type(session, ids, MatchType.OUTSIDE_CONTEST)
            session.commit()
        logger.info(f"{count} QSOs outside the contest period")
        return count

    def perfect_match(
        self,
        tolerance: Optional[int] = None,
        match_type: MatchType = MatchType.FULL,
        strict: bool = True,
    ) -> LinkCounts:
        """Link pairs whose exchanges agree exactly in both directions."""
        tolerance = self.settings.time_tolerance if tolerance is None else tolerance
        serial = self.settings.serial_tolerance
        logger.info(f"Starting perfect match{_relaxed(strict)} ({tolerance} minute tolerance)")
        with self.ctx.session() as session:
            views = self.ctx.load_views(session)
            index = _index(
                views,
                lambda v: (v.sent.call_id, v.sent.multiplier_id, v.recvd.call_id, v.recvd.multiplier_id),
            )
            candidates = []
            for q1 in views:
                key = (q1.recvd.call_id, q1.recvd.multiplier_id, q1.sent.call_id, q1.sent.multiplier_id)
                for q2 in index.get(key, ()):
                    if (
                        q1.id < q2.id
                        and q1.log_id != q2.log_id
                        and band_mode_match(q1, q2, strict)
                        and exchange_tolerance_match(q2.sent.serial, q1.recvd.serial, serial)
                        and exchange_tolerance_match(q1.sent.serial, q2.recvd.serial, serial)
                        and time_match(q1, q2, tolerance)
                    ):
                        candidates.append(MatchCandidate(q1, q2))
            ranked = rank_candidates(candidates, CandidateOrder.by_serial_then_time)
            counts = self._link(session, ranked, match_type, match_type)
        logger.info(f"Perfect match linked {counts.links} QSOs ({counts.dupes} dupes)")
        return counts

    def partial_match(
        self,
        tolerance: Optional[int] = None,
        full_type: MatchType = MatchType.FULL,
        partial_type: MatchType = MatchType.PARTIAL,
        strict: bool = True,
    ) -> LinkCounts:
        """Link pairs where q1 copied q2's exchange exactly and q2 only got q1's call right.

        q1 becomes ``full_type`` and q2 ``partial_type``.
        """
        tolerance = self.settings.time_tolerance if tolerance is None else tolerance
        serial = self.settings.serial_tolerance
        logger.info(f"Starting partial match{_relaxed(strict)} ({tolerance} minute tolerance)")
        with self.ctx.session() as session:
            views = self.ctx.load_views(session)
            index = _index(views, lambda v: (v.sent.call_id, v.sent.multiplier_id, v.recvd.call_id))
            candidates = []
            for q1 in views:
                key = (q1.recvd.call_id, q1.recvd.multiplier_id, q1.sent.call_id)
                for q2 in index.get(key, ()):
                    if (
                        q1.log_id != q2.log_id
                        and band_mode_match(q1, q2, strict)
                        and exchange_tolerance_match(q2.sent.serial, q1.recvd.serial, serial)
                        and time_match(q1, q2, tolerance)
                    ):
                        candidates.append(MatchCandidate(q1, q2))
            ranked = rank_candidates(candidates, CandidateOrder.by_serial_then_time)
            counts = self._link(session, ranked, full_type, partial_type)
        logger.info(f"Partial match linked {counts.first} + {counts.second} QSOs ({counts.dupes} dupes)")
        return counts

    def basic_match(self, tolerance: Optional[int] = None, strict: bool = True) -> LinkCounts:
        """Link pairs that logged each other's callsign, ignoring the rest of the exchange."""
        tolerance = self.settings.time_tolerance if tolerance is None else tolerance
        logger.info(f"Starting basic match{_relaxed(strict)} ({tolerance} minute tolerance)")
        with self.ctx.session() as session:
            views = self.ctx.load_views(session)
            index = _index(views, lambda v: (v.sent.call_id, v.recvd.call_id))
            candidates = []
            for q1 in views:
                for q2 in index.get((q1.recvd.call_id, q1.sent.call_id), ()):
                    if (
                        q1.log_id < q2.log_id
                        and band_mode_match(q1, q2, strict)
                        and time_match(q1, q2, tolerance)
                    ):
                        candidates.append(MatchCandidate(q1, q2))
            ranked = rank_candidates(candidates, CandidateOrder.by_time_then_serial)
            counts = self._link(session, ranked, MatchType.PARTIAL, MatchType.PARTIAL)
        logger.info(f"Basic match linked {counts.links} QSOs ({counts.dupes} dupes)")
        return counts

    def resolve_shifted(self) -> LinkCounts:
        """Settle pairs flagged TimeShiftFull/TimeShiftPartial.

        A mutually linked pair that lands within the normal tolerance once clock
        adjustments apply resolves each side on its own flag: TimeShiftFull to
        Full, TimeShiftPartial to Partial. Whatever is still time-shifted after
        that becomes Partial.
        """
        tolerance = self.settings.time_tolerance
        full = partial = 0
        with self.ctx.session() as session:
            views = self.ctx.load_views(session, tuple(TIME_SHIFT_TYPES))
            by_id = {v.id: v for v in views}
            for q1 in views:
                q2 = by_id.get(q1.match_id)
                if q2 is None or q2.match_id != q1.id or q1.id > q2.id:
                    continue
                if not time_match(q1, q2, tolerance):
                    continue
                for q in (q1, q2):
                    if q.match_type == MatchType.TIME_SHIFT_FULL:
                        full += set_match_type(session, [q.id], MatchType.FULL, expected=(q.match_type,))
                    else:
                        partial += set_match_type(session, [q.id], MatchType.PARTIAL, expected=(q.match_type,))
            session.commit()
            leftover = [v.id for v in self.ctx.load_views(session, tuple(TIME_SHIFT_TYPES))]
            partial += set_match_type(
                session, leftover, MatchType.PARTIAL, expected=tuple(TIME_SHIFT_TYPES)
            )
            session.commit()
        logger.info(f"Resolved time-shifted QSOs: {full} full, {partial} partial")
        return LinkCounts(full, partial)

    def ignore_dupes(self) -> int:
        """Mark repeats of already-linked contacts as Dupe.

        For a linked pair (q1, q2), any unmatched QSO in q1's log on the same
        band that received q2's callsign is a repeat of that contact.
        """
        with self.ctx.session() as session:
            linked = [
                v
                for v in self.ctx.load_views(session, (MatchType.FULL, MatchType.PARTIAL))
                if v.match_id is not None
            ]
            by_id = {v.id: v for v in linked}
            unmatched = _index(self.ctx.load_views(session), lambda v: (v.log_id, v.band, v.recvd.call_id))
            dupes = set()
            for q1 in linked:
                q2 = by_id.get(q1.match_id)
                if q2 is None or q2.band != q1.band:
                    continue
                dupes.update(q.id for q in unmatched.get((q1.log_id, q1.band, q2.sent.call_id), ()))
            count = set_match_type(session, sorted(dupes), MatchType.DUPE)
            session.commit()
        logger.info(f"{count} repeat QSOs marked Dupe")
        return count

    def mark_nil(self) -> int:
        """Mark unmatched QSOs with a station that sent in a log as NIL."""
        with self.ctx.session() as session:
            logged = set(
                session.exec(
                    select(Callsign.id).where(
                        Callsign.contest_id == self.ctx.contest_id,
                        Callsign.log_received == True,  # noqa: E712
                    )
                )
            )
            ids = [v.id for v in self.ctx.load_views(session) if v.recvd.call_id in logged]
            count = set_match_type(session, ids, MatchType.NIL)
            session.commit()
        logger.info(f"{count} QSOs marked NIL")
        return count

    def prob_match(self, force_parallel: Optional[bool] = None) -> int:
        """Link remaining QSOs by similarity score, best candidates first.

        Candidates in the review band are put to the adjudicator when one is
        configured; everything else above the floor is claimed as ranked.
        Returns the number of pairs linked.
        """
        tolerance = self.settings.time_tolerance
        serial = self.settings.serial_tolerance
        low, high = self.settings.review_low, self.settings.review_high
        links = 0
        with self.ctx.session() as session:
            views = self.ctx.load_views(session)
            logger.info(f"Starting probability-based cross match over {len(views)} unmatched QSOs")
            candidates = score_candidates(views, self.settings, force_parallel=force_parallel)
            logger.info(f"{len(candidates)} potential matches to evaluate")
            linked = set()
            for c in candidates:
                if c.q1.id in linked or c.q2.id in linked:
                    continue
                if self.adjudicator and low <= c.metric <= high:
                    if not self.adjudicator.adjudicate(session, c):
                        continue
                type1 = MatchType.FULL if full_match(c.q1, c.q2, tolerance, serial) else MatchType.PARTIAL
                type2 = MatchType.FULL if full_match(c.q2, c.q1, tolerance, serial) else MatchType.PARTIAL
                if claim_pair(session, c.q1.id, c.q2.id, type1, type2):
                    linked.update((c.q1.id, c.q2.id))
                    links += 1
                    logger.debug(
                        f"Linked QSO {c.q1.id} ({type1.value}) with {c.q2.id} ({type2.value}) "
                        f"metric {c.metric:.3f}/{c.metric2:.3f}"
                    )
        logger.info(f"Probability match linked {links} pairs")
        return links

    def run_phase(self, name: Phase, tolerance: Optional[int] = None, strict: bool = True) -> int:
        """Run one phase by name and return how many QSOs it changed."""
        name = Phase(name)
        if name is Phase.OUTSIDE:
            return self.mark_outside_contest()
        if name is Phase.PERFECT:
            return self.perfect_match(tolerance, strict=strict).links
        if name is Phase.PARTIAL:
            return self.partial_match(tolerance, strict=strict).links
        if name is Phase.BASIC:
            return self.basic_match(tolerance, strict=strict).links
        if name is Phase.TIME_SHIFT:
            return self.resolve_shifted().links
        if name is Phase.DUPES:
            return self.ignore_dupes()
        if name is Phase.NIL:
            return self.mark_nil()
        return self.prob_match()


@dataclass
class CrossMatchReport:
    phases: Dict[str, int] = field(default_factory=dict)
    singletons: Dict[MatchType, int] = field(default_factory=dict)
    final_dupes: int = 0
    distribution: Dict[MatchType, int] = field(default_factory=dict)


def run_crossmatch(
    ctx: MatchContext,
    probabilistic: bool = False,
    decider: Optional[PairDecider] = None,
    force_parallel: Optional[bool] = None,
) -> CrossMatchReport:
    """Run every phase over the contest in order and report the outcome."""
    engine = CrossMatch(ctx, decider)
    settings = ctx.settings
    report = CrossMatchReport()
    phases = report.phases
    phases["outside"] = engine.mark_outside_contest()
    phases["perfect"] = engine.perfect_match().links
    phases["partial"] = engine.partial_match().links
    phases["perfect-relaxed"] = engine.perfect_match(strict=False).links
    phases["partial-relaxed"] = engine.partial_match(strict=False).links
    phases["basic"] = engine.basic_match().links
    phases["basic-relaxed"] = engine.basic_match(strict=False).links
    phases["time-shift-flagged"] = engine.perfect_match(
        settings.max_time_tolerance, MatchType.TIME_SHIFT_FULL
    ).links + engine.partial_match(
        settings.max_time_tolerance, MatchType.TIME_SHIFT_FULL, MatchType.TIME_SHIFT_PARTIAL
    ).links
    phases["time-shift"] = engine.resolve_shifted().links
    phases["dupes"] = engine.ignore_dupes()
    phases["nil"] = engine.mark_nil()
    if probabilistic:
        phases["probability"] = engine.prob_match(force_parallel=force_parallel)

    resolver = SingletonResolver(ctx)
    report.singletons = resolver.resolve()
    report.final_dupes = resolver.final_dupe_check()
    with ctx.session() as session:
        report.distribution = match_type_counts(session, ctx.log_ids)
    return report
