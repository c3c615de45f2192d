"""Per-run state for cross matching one contest.

A `MatchContext` is built once per run and passed to every phase. It holds
the contest's log ids, the clock adjustments, and lookup tables from
callsign/multiplier ids to text, so that phases never reach for module-level
caches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .comparator import ExchangeView, QSOView
from .config import MatchSettings, load_settings
from .errors import ConfigurationError
from .models import QSO, Callsign, Contest, MatchType, Multiplier
from .storage import clock_adjustments, logs_for_contest, session_scope


@dataclass
class MatchContext:
    engine: Engine
    contest: Contest
    log_ids: List[int]
    settings: MatchSettings
    clock_adj: Dict[int, int] = field(default_factory=dict)
    basecalls: Dict[int, str] = field(default_factory=dict)
    multipliers: Dict[int, str] = field(default_factory=dict)

    @classmethod
    def for_contest(
        cls,
        engine: Engine,
        contest_id: int,
        settings: Optional[MatchSettings] = None,
    ) -> "MatchContext":
        """Load everything a run needs about ``contest_id``.

        Raises ConfigurationError for invalid settings, an unknown contest, or a
        contest without logs. Nothing is written.
        """
        settings = (settings or load_settings()).validate()
        with session_scope(engine) as session:
            contest = session.get(Contest, contest_id)
            if contest is None:
                raise ConfigurationError(f"no contest with id {contest_id}")
            log_ids = logs_for_contest(session, contest_id)
            if not log_ids:
                raise ConfigurationError(f"contest {contest.name} {contest.year} has no logs")
            session.expunge(contest)
            ctx = cls(engine=engine, contest=contest, log_ids=log_ids, settings=settings)
            ctx.reload(session)
        return ctx

    @property
    def contest_id(self) -> int:
        return self.contest.id

    def session(self):
        return session_scope(self.engine)

    def reload(self, session: Session) -> None:
        """Refresh clock adjustments and the id-to-text lookup tables."""
        self.clock_adj = clock_adjustments(session, self.log_ids)
        self.basecalls = dict(
            session.exec(
                select(Callsign.id, Callsign.basecall).where(
                    Callsign.contest_id == self.contest_id
                )
            ).all()
        )
        self.multipliers = dict(session.exec(select(Multiplier.id, Multiplier.abbrev)).all())

    def _exchange(self, qso: QSO, prefix: str) -> ExchangeView:
        call_id = getattr(qso, f"{prefix}_call_id")
        mult_id = getattr(qso, f"{prefix}_multiplier_id")
        return ExchangeView(
            call_id=call_id,
            basecall=self.basecalls.get(call_id),
            callsign=getattr(qso, f"{prefix}_callsign"),
            entity_id=getattr(qso, f"{prefix}_entity_id"),
            multiplier_id=mult_id,
            multiplier=self.multipliers.get(mult_id) if mult_id is not None else None,
            serial=getattr(qso, f"{prefix}_serial"),
            location=getattr(qso, f"{prefix}_location"),
            name=getattr(qso, f"{prefix}_name"),
        )

    def view(self, qso: QSO) -> QSOView:
        time = qso.time
        if time is not None:
            time = time + timedelta(seconds=self.clock_adj.get(qso.log_id, 0))
        return QSOView(
            id=qso.id,
            log_id=qso.log_id,
            band=qso.band,
            mode=qso.mode,
            time=time,
            sent=self._exchange(qso, "sent"),
            recvd=self._exchange(qso, "recvd"),
            frequency=qso.frequency,
            match_id=qso.match_id,
            match_type=qso.match_type,
        )

    def load_views(
        self,
        session: Session,
        states: Sequence[MatchType] = (MatchType.NONE,),
    ) -> List[QSOView]:
        """Return views of the contest's QSOs currently in ``states``, by id."""
        stmt = (
            select(QSO)
            .where(QSO.log_id.in_(self.log_ids), QSO.match_type.in_(list(states)))
            .order_by(QSO.id)
            .execution_options(populate_existing=True)
        )
        return [self.view(q) for q in session.exec(stmt)]
