"""Persistence layer: SQLite engine setup, sessions, and the QSO store.

The database lives in the user's data directory by default, and can be
overridden via the CROSSMATCH_DB_PATH environment variable. SQLModel/SQLAlchemy
2.x are used for ORM-style access.

Everything that changes a QSO's match state goes through a conditional update
("only if the row is still in one of these states"), and linking two QSOs goes
through `claim_pair`, which holds both conditional updates in one transaction.
"""

from __future__ import annotations

import os
import threading
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from platformdirs import user_data_dir
from sqlalchemy import delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from .callsign import base_call, is_valid_format
from .config import APP_NAME
from .errors import ConcurrencyConflict, InvalidTransition
from .models import (
    QSO,
    Band,
    Callsign,
    Contest,
    Log,
    MatchType,
    Mode,
    Multiplier,
    Pair,
)

DB_ENV_VAR = "CROSSMATCH_DB_PATH"


def utc_naive(when: Optional[datetime]) -> Optional[datetime]:
    """Times are stored as naive UTC; aware values are converted first."""
    if when is None or when.tzinfo is None:
        return when
    return when.astimezone(timezone.utc).replace(tzinfo=None)


def _default_db_path() -> Path:
    """Return the default location of the SQLite database file."""
    data_dir = Path(user_data_dir(appname=APP_NAME, appauthor=False))
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir / "crossmatch.sqlite3"


def get_db_path() -> Path:
    """Resolve the active database path, honoring CROSSMATCH_DB_PATH if set."""
    env = os.getenv(DB_ENV_VAR)
    if env:
        p = Path(env).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
    return _default_db_path()


_engines: Dict[str, Engine] = {}
_engine_lock = threading.Lock()


def get_engine(db_path: Optional[Path] = None) -> Engine:
    """Create (once per database file) and return the engine bound to it.

    Raises RuntimeError if database creation fails.
    """
    url = f"sqlite:///{db_path or get_db_path()}"
    engine = _engines.get(url)
    if engine is None:
        with _engine_lock:
            engine = _engines.get(url)
            if engine is None:
                try:
                    engine = create_engine(
                        url,
                        echo=False,
                        pool_size=20,
                        max_overflow=30,
                        pool_timeout=30,
                        pool_recycle=3600,
                        connect_args={
                            "check_same_thread": False,  # claims may race across threads
                            "timeout": 30,  # SQLite busy timeout
                        },
                    )
                except Exception as e:
                    raise RuntimeError(f"Failed to create database engine: {e}") from e
                _engines[url] = engine
    return engine


def create_db_and_tables(engine: Optional[Engine] = None) -> Engine:
    """Create all tables for the current metadata if they don't exist yet.

    Raises RuntimeError if table creation fails.
    """
    try:
        engine = engine or get_engine()
        SQLModel.metadata.create_all(engine)
        return engine
    except Exception as e:
        raise RuntimeError(f"Failed to create database tables: {e}") from e


@contextmanager
def session_scope(engine: Optional[Engine] = None):
    """Context manager yielding a SQLModel Session bound to our engine.

    Automatically handles session cleanup and rollback on errors.
    """
    session = None
    try:
        session = Session(engine or get_engine())
        yield session
    except Exception:
        if session:
            session.rollback()
        raise
    finally:
        if session:
            session.close()


@dataclass
class Exchange:
    """One side of a contact as logged, before resolution."""

    callsign: str
    serial: Optional[int] = None
    location: Optional[str] = None
    name: Optional[str] = None


# Contests, callsigns, multipliers, logs

def add_or_lookup_contest(
    session: Session,
    name: str,
    year: int,
    create: bool = False,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Optional[int]:
    """Return the id of the contest (name, year), creating it if asked to."""
    found = session.exec(
        select(Contest.id).where(Contest.name == name, Contest.year == year)
    ).first()
    if found is not None:
        return found
    if not create:
        return None
    contest = Contest(name=name, year=year, start=utc_naive(start), end=utc_naive(end))
    session.add(contest)
    session.commit()
    session.refresh(contest)
    return contest.id


def add_or_lookup_call(session: Session, contest_id: int, callsign: str) -> int:
    """Return the Callsign id for the base form of ``callsign`` in a contest."""
    basecall = base_call(callsign)
    found = session.exec(
        select(Callsign.id).where(
            Callsign.contest_id == contest_id, Callsign.basecall == basecall
        )
    ).first()
    if found is not None:
        return found
    call = Callsign(contest_id=contest_id, basecall=basecall, valid=is_valid_format(basecall))
    session.add(call)
    session.flush()
    return call.id


def add_multiplier(
    session: Session,
    abbrev: str,
    entity_id: Optional[int] = None,
    wasstate: Optional[str] = None,
) -> int:
    mult = Multiplier(
        abbrev=abbrev.strip().upper(),
        entity_id=entity_id,
        wasstate=wasstate,
        is_multiplier=entity_id is not None,
    )
    session.add(mult)
    session.flush()
    return mult.id


def lookup_multiplier(session: Session, text: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Resolve a location text to (multiplier id, entity id); (None, None) if unknown."""
    if not text or not text.strip():
        return None, None
    row = session.exec(
        select(Multiplier.id, Multiplier.entity_id).where(
            Multiplier.abbrev == text.strip().upper()
        )
    ).first()
    if row is None:
        return None, None
    return row[0], row[1]


def mark_log_received(session: Session, call_id: int) -> None:
    session.exec(
        update(Callsign).where(Callsign.id == call_id).values(log_received=True)
    )


def add_log(
    session: Session,
    contest_id: int,
    callsign: str,
    location: Optional[str] = None,
    email: Optional[str] = None,
    opclass: Optional[str] = None,
    name: Optional[str] = None,
    club: Optional[str] = None,
    clock_adj: int = 0,
) -> int:
    """Insert a log for ``callsign`` and flag that station as having submitted one."""
    call_id = add_or_lookup_call(session, contest_id, callsign)
    mult_id, entity_id = lookup_multiplier(session, location)
    log = Log(
        contest_id=contest_id,
        callsign=callsign.strip().upper(),
        call_id=call_id,
        email=email,
        multiplier_id=mult_id,
        entity_id=entity_id,
        opclass=opclass,
        name=name,
        club=club,
        clock_adj=clock_adj,
    )
    session.add(log)
    mark_log_received(session, call_id)
    session.flush()
    return log.id


def insert_qso(
    session: Session,
    contest_id: int,
    log_id: int,
    time: Optional[datetime],
    sent: Exchange,
    recvd: Exchange,
    band: Band = Band.UNKNOWN,
    mode: Optional[Mode] = None,
    frequency: Optional[int] = None,
) -> int:
    """Resolve both exchanges and store the QSO, returning its id."""
    values = {}
    for prefix, exch in (("sent", sent), ("recvd", recvd)):
        mult_id, entity_id = lookup_multiplier(session, exch.location)
        values.update(
            {
                f"{prefix}_call_id": add_or_lookup_call(session, contest_id, exch.callsign),
                f"{prefix}_multiplier_id": mult_id,
                f"{prefix}_entity_id": entity_id,
                f"{prefix}_serial": exch.serial,
                f"{prefix}_callsign": exch.callsign.strip().upper(),
                f"{prefix}_location": exch.location.strip().upper() if exch.location else None,
                f"{prefix}_name": exch.name.strip().upper() if exch.name else None,
            }
        )
    qso = QSO(log_id=log_id, time=utc_naive(time), band=band, mode=mode, frequency=frequency, **values)
    session.add(qso)
    session.flush()
    return qso.id


def logs_for_contest(session: Session, contest_id: int) -> List[int]:
    return list(session.exec(select(Log.id).where(Log.contest_id == contest_id).order_by(Log.id)))


def set_clock_adjustment(session: Session, log_id: int, seconds: int) -> None:
    session.exec(update(Log).where(Log.id == log_id).values(clock_adj=int(seconds)))
    session.commit()


def clock_adjustments(session: Session, log_ids: Sequence[int]) -> Dict[int, int]:
    rows = session.exec(select(Log.id, Log.clock_adj).where(Log.id.in_(log_ids)))
    return {log_id: adj or 0 for log_id, adj in rows}


# Match state

def _check_transitions(expected: Iterable[MatchType], new: MatchType) -> None:
    for old in expected:
        if not old.can_become(new):
            raise InvalidTransition(f"{old.value} -> {new.value}")


def set_match_type(
    session: Session,
    qso_ids: Sequence[int],
    new: MatchType,
    expected: Sequence[MatchType] = (MatchType.NONE,),
    comment: Optional[str] = None,
) -> int:
    """Move QSOs still in one of ``expected`` states to ``new``; return rows changed.

    States without a partner never keep a match reference, so moving into one
    clears ``match_id``. The caller commits.
    """
    if not qso_ids:
        return 0
    _check_transitions(expected, new)
    values = {"match_type": new}
    if not new.has_partner:
        values["match_id"] = None
    if comment is not None:
        values["comment"] = comment
    stmt = (
        update(QSO)
        .where(QSO.id.in_(list(qso_ids)), QSO.match_type.in_(list(expected)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if MatchType.NONE in expected:
        stmt = stmt.where(or_(QSO.match_type != MatchType.NONE, QSO.match_id.is_(None)))
    return session.exec(stmt).rowcount


def _claim_one(session: Session, qso_id: int, partner_id: int, match_type: MatchType) -> None:
    result = session.exec(
        update(QSO)
        .where(
            QSO.id == qso_id,
            QSO.match_type == MatchType.NONE,
            QSO.match_id.is_(None),
        )
        .values(match_id=partner_id, match_type=match_type)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflict(f"QSO {qso_id} is already claimed")


def claim_pair(
    session: Session,
    a_id: int,
    b_id: int,
    type_a: MatchType,
    type_b: MatchType,
) -> Optional[Tuple[MatchType, MatchType]]:
    """Link two unmatched QSOs to each other, or neither.

    Both conditional updates run in one transaction; if either finds its row
    no longer unmatched, the whole transaction is rolled back and None is
    returned. On success the transaction is committed.
    """
    _check_transitions((MatchType.NONE,), type_a)
    _check_transitions((MatchType.NONE,), type_b)
    if not (type_a.has_partner and type_b.has_partner):
        raise InvalidTransition(f"{type_a.value}/{type_b.value} cannot carry a partner")
    try:
        _claim_one(session, a_id, b_id, type_a)
        _claim_one(session, b_id, a_id, type_b)
    except ConcurrencyConflict:
        session.rollback()
        return None
    session.commit()
    return type_a, type_b


def restart_match(session: Session, log_ids: Sequence[int]) -> int:
    """Rewind every QSO of the given logs to unmatched and clear derived log fields.

    Returns the number of QSOs reset. Safe to run repeatedly.
    """
    if not log_ids:
        return 0
    result = session.exec(
        update(QSO)
        .where(QSO.log_id.in_(list(log_ids)))
        .values(match_id=None, match_type=MatchType.NONE, comment=None)
        .execution_options(synchronize_session=False)
    )
    session.exec(
        update(Log)
        .where(Log.id.in_(list(log_ids)))
        .values(clock_adj=0, verified_score=None, verified_qsos=None, verified_multipliers=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount


def match_type_counts(session: Session, log_ids: Sequence[int]) -> Dict[MatchType, int]:
    """Return how many QSOs of the given logs are in each match state."""
    rows = session.exec(
        select(QSO.match_type, func.count(QSO.id))
        .where(QSO.log_id.in_(list(log_ids)))
        .group_by(QSO.match_type)
    )
    counts: Dict[MatchType, int] = Counter()
    for match_type, count in rows:
        counts[MatchType(match_type)] = count
    return dict(counts)


def clean_dirty_logs(session: Session, log_ids: Sequence[int]) -> Tuple[int, int]:
    """Count logs whose QSOs all ended Full or Bye (clean) against the rest."""
    if not log_ids:
        return 0, 0
    dirty = set(
        session.exec(
            select(QSO.log_id)
            .where(
                QSO.log_id.in_(list(log_ids)),
                QSO.match_type.not_in([MatchType.FULL, MatchType.BYE]),
            )
            .distinct()
        )
    )
    return len(log_ids) - len(dirty), len(dirty)


# Pair decisions

def lookup_pair(session: Session, line1: str, line2: str) -> Optional[bool]:
    """Return a recorded decision for two lines in either order, or None."""
    row = session.exec(
        select(Pair.is_match).where(
            or_(
                (Pair.line1 == line1) & (Pair.line2 == line2),
                (Pair.line1 == line2) & (Pair.line2 == line1),
            )
        )
    ).first()
    return None if row is None else bool(row)


def record_pair(session: Session, contest_id: int, line1: str, line2: str, is_match: bool) -> None:
    session.add(Pair(contest_id=contest_id, line1=line1, line2=line2, is_match=is_match))
    session.commit()


# Removal

def remove_contest_qsos(session: Session, contest_id: int) -> int:
    """Delete the logs, QSOs and callsigns of a contest; return QSOs removed."""
    logs = logs_for_contest(session, contest_id)
    removed = 0
    if logs:
        removed = session.exec(delete(QSO).where(QSO.log_id.in_(logs))).rowcount
    session.exec(delete(Log).where(Log.contest_id == contest_id))
    session.exec(delete(Callsign).where(Callsign.contest_id == contest_id))
    session.commit()
    return removed


def remove_whole_contest(session: Session, contest_id: int) -> int:
    removed = remove_contest_qsos(session, contest_id)
    session.exec(delete(Pair).where(Pair.contest_id == contest_id))
    session.exec(delete(Contest).where(Contest.id == contest_id))
    session.commit()
    return removed
