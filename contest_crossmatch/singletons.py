"""Dispose of QSOs nobody else's log accounts for.

After the engine phases, an unmatched QSO either names a station that did not
send in a log (a ``Bye``: legitimate but unverifiable) or a callsign that was
miscopied (``Removed``). Which one is decided from contest-wide statistics:
how often each callsign was worked, whether it is well formed, and whether a
far more common participant with a close callsign exists.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import func
from sqlmodel import Session, select

from .comparator import ExchangeView, QSOView
from .context import MatchContext
from .errors import IdentityError, StructuralError
from .models import QSO, Callsign, MatchType
from .similarity import similarity
from .storage import set_match_type


@dataclass(frozen=True)
class CallStats:
    id: int
    callsign: str
    valid: bool
    have_log: bool
    num_qsos: int

    def __str__(self) -> str:
        return self.callsign


def _missing(exch: ExchangeView, field_name: str) -> bool:
    if field_name == "multiplier":
        return exch.multiplier_id is None
    value = getattr(exch, field_name)
    return value is None or (isinstance(value, str) and not value.strip())


class SingletonResolver:
    def __init__(self, ctx: MatchContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.callsigns: List[CallStats] = []
        self.by_id: Dict[int, CallStats] = {}
        self._references: Dict[int, Optional[QSOView]] = {}

    def load_stats(self, session: Session) -> List[CallStats]:
        """Count, per callsign of the contest, the QSOs that received it."""
        counts = dict(
            session.exec(
                select(QSO.recvd_call_id, func.count(QSO.id))
                .where(QSO.log_id.in_(self.ctx.log_ids))
                .group_by(QSO.recvd_call_id)
            ).all()
        )
        calls = session.exec(
            select(Callsign)
            .where(Callsign.contest_id == self.ctx.contest_id)
            .order_by(Callsign.basecall)
        )
        # Callsigns nobody received are not statistics of anything.
        self.callsigns = [
            CallStats(c.id, c.basecall, c.valid, c.log_received, counts[c.id])
            for c in calls
            if c.id in counts
        ]
        self.by_id = {c.id: c for c in self.callsigns}
        self._references = {}
        return self.callsigns

    def possible_matches(self, call: CallStats) -> List[CallStats]:
        """Valid, active callsigns close enough to ``call`` to be what was meant."""
        s = self.settings
        return [
            c
            for c in self.callsigns
            if c.id != call.id
            and c.valid
            and (c.num_qsos >= s.active_qsos or c.have_log)
            and similarity(c.callsign, call.callsign) >= s.close_call_similarity
        ]

    def far_more_common(self, candidates: List[CallStats], count: int) -> Optional[CallStats]:
        """The most active candidate, if it sent a log and dwarfs ``count``.

        Only the top candidate is considered; a less active one never stands in.
        """
        if not candidates:
            return None
        s = self.settings
        top = max(candidates, key=lambda c: (c.num_qsos, c.callsign))
        if (
            top.have_log
            and top.num_qsos >= s.active_qsos
            and top.num_qsos >= s.far_more_common_factor * count
        ):
            return top
        return None

    def reference(self, session: Session, call_id: int) -> Optional[QSOView]:
        """First QSO of the contest addressed to ``call_id``."""
        if call_id not in self._references:
            qso = session.exec(
                select(QSO)
                .where(QSO.log_id.in_(self.ctx.log_ids), QSO.recvd_call_id == call_id)
                .order_by(QSO.id)
            ).first()
            self._references[call_id] = self.ctx.view(qso) if qso is not None else None
        return self._references[call_id]

    def exchange_close(self, session: Session, view: QSOView, candidate: CallStats) -> bool:
        ref = self.reference(session, candidate.id)
        if ref is None:
            return False
        threshold = self.settings.exchange_similarity
        return (
            similarity(view.recvd.name, ref.recvd.name) >= threshold
            and similarity(view.recvd.multiplier, ref.recvd.multiplier) >= threshold
        )

    def classify(self, session: Session, view: QSOView) -> Tuple[MatchType, Optional[str]]:
        """Return the disposition and comment for one unmatched QSO.

        Raises StructuralError for an incomplete exchange and IdentityError for a
        callsign that cannot be resolved to anybody.
        """
        s = self.settings
        if any(_missing(view.recvd, f) for f in s.required_exchange):
            raise StructuralError("Incomplete exchange received.")
        call = self.by_id.get(view.recvd.call_id)
        if call is None:
            raise IdentityError("Unknown callsign ID in record.")

        if not call.valid and call.num_qsos <= s.invalid_call_max_qsos:
            candidates = self.possible_matches(call)
            if not candidates:
                raise IdentityError("Illegal callsign not close to known participants.")
            names = " ".join(str(c) for c in candidates)
            return MatchType.REMOVED, f"Busted callsign - potential matches: {names}."

        if call.num_qsos >= s.active_qsos or (call.valid and call.num_qsos >= s.valid_active_qsos):
            return MatchType.BYE, None

        likely = self.far_more_common(self.possible_matches(call), call.num_qsos)
        if likely is not None and self.exchange_close(session, view, likely):
            return MatchType.REMOVED, f"Busted call - likely match: {likely}."
        return MatchType.BYE, None

    def resolve(self) -> Counter:
        """Classify every QSO still unmatched; return counts per new state."""
        counts: Counter = Counter()
        with self.ctx.session() as session:
            self.load_stats(session)
            views = self.ctx.load_views(session)
            logger.info(f"Resolving {len(views)} unmatched QSOs")
            for view in views:
                try:
                    new, comment = self.classify(session, view)
                except (StructuralError, IdentityError) as e:
                    new, comment = MatchType.REMOVED, str(e)
                changed = set_match_type(session, [view.id], new, comment=comment)
                if changed:
                    counts[new] += changed
                    logger.debug(f"QSO {view.id} -> {new.value}{': ' + comment if comment else ''}")
            session.commit()
        logger.info(
            f"Singletons: {counts[MatchType.BYE]} bye, {counts[MatchType.REMOVED]} removed"
        )
        return counts

    def final_dupe_check(self) -> int:
        """Demote later repeats of a Full/Bye contact within one log and band.

        Returns the number of QSOs marked Dupe.
        """
        with self.ctx.session() as session:
            views = self.ctx.load_views(session, (MatchType.FULL, MatchType.BYE))
            groups: Dict[Tuple, List[QSOView]] = defaultdict(list)
            for v in views:
                groups[(v.log_id, v.band, v.recvd.call_id)].append(v)
            dupes = [v.id for group in groups.values() for v in group[1:]]
            count = set_match_type(
                session, dupes, MatchType.DUPE, expected=(MatchType.FULL, MatchType.BYE)
            )
            session.commit()
        logger.info(f"Final dupe check marked {count} QSOs")
        return count
