"""Data models used by the contest cross matcher.

The schema mirrors a classic contest log checker: contests own logs, logs own
QSOs, and every exchanged callsign is resolved to a per-contest ``Callsign``
row holding its canonical base form. Each QSO carries both the resolved
references (used for exact matching) and the raw text as logged (used for
fuzzy matching and for human review).
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class MatchType(str, Enum):
    """Disposition of a QSO after cross matching."""

    NONE = "None"
    FULL = "Full"
    PARTIAL = "Partial"
    DUPE = "Dupe"
    NIL = "NIL"
    OUTSIDE_CONTEST = "OutsideContest"
    REMOVED = "Removed"
    TIME_SHIFT_FULL = "TimeShiftFull"
    TIME_SHIFT_PARTIAL = "TimeShiftPartial"
    BYE = "Bye"

    @property
    def has_partner(self) -> bool:
        """True for states that always carry a match-partner reference."""
        return self in LINKED_TYPES

    def can_become(self, new: "MatchType") -> bool:
        return new in TRANSITIONS[self]


LINKED_TYPES: FrozenSet[MatchType] = frozenset(
    {
        MatchType.FULL,
        MatchType.PARTIAL,
        MatchType.TIME_SHIFT_FULL,
        MatchType.TIME_SHIFT_PARTIAL,
    }
)

TIME_SHIFT_TYPES: FrozenSet[MatchType] = frozenset(
    {MatchType.TIME_SHIFT_FULL, MatchType.TIME_SHIFT_PARTIAL}
)

# Restarting a contest bypasses this table; it rewinds every row to NONE.
TRANSITIONS: Dict[MatchType, FrozenSet[MatchType]] = {
    MatchType.NONE: frozenset(t for t in MatchType if t is not MatchType.NONE),
    MatchType.TIME_SHIFT_FULL: frozenset({MatchType.FULL, MatchType.PARTIAL}),
    MatchType.TIME_SHIFT_PARTIAL: frozenset({MatchType.FULL, MatchType.PARTIAL}),
    MatchType.FULL: frozenset({MatchType.DUPE}),
    MatchType.BYE: frozenset({MatchType.DUPE}),
    MatchType.PARTIAL: frozenset(),
    MatchType.DUPE: frozenset(),
    MatchType.NIL: frozenset(),
    MatchType.OUTSIDE_CONTEST: frozenset(),
    MatchType.REMOVED: frozenset(),
}


class Band(str, Enum):
    B241G = "241G"
    B142G = "142G"
    B119G = "119G"
    B75G = "75G"
    B47G = "47G"
    B24G = "24G"
    B10G = "10G"
    B5_7G = "5.7G"
    B3_4G = "3.4G"
    B2_3G = "2.3G"
    B1_2G = "1.2G"
    B902 = "902"
    B432 = "432"
    B222 = "222"
    B2M = "2m"
    B6M = "6m"
    B10M = "10m"
    B15M = "15m"
    B20M = "20m"
    B40M = "40m"
    B80M = "80m"
    B160M = "160m"
    UNKNOWN = "unknown"


class Mode(str, Enum):
    PH = "PH"
    CW = "CW"
    FM = "FM"
    RY = "RY"


class Contest(SQLModel, table=True):
    """One running of a contest; logs are matched within a single contest."""

    __table_args__ = (UniqueConstraint("name", "year"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    year: int
    start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))
    end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=False))


class Entity(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    prefix: Optional[str] = None
    continent: Optional[str] = None


class Multiplier(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    abbrev: str = Field(index=True, unique=True)
    wasstate: Optional[str] = None
    entity_id: Optional[int] = Field(default=None, foreign_key="entity.id")
    is_multiplier: bool = False


class Callsign(SQLModel, table=True):
    """Canonical base callsign within one contest.

    Attributes
    - basecall: callsign with portable prefixes/suffixes removed.
    - valid: syntactically legal (or a one-by-one special event call).
    - log_received: this station submitted its own log.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    contest_id: int = Field(foreign_key="contest.id", index=True)
    basecall: str = Field(index=True)
    log_received: bool = False
    valid: bool = False


class Log(SQLModel, table=True):
    """A participant's submitted log.

    ``clock_adj`` is a per-log offset in seconds added to every QSO time of
    the log before it is compared against other logs.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    contest_id: int = Field(foreign_key="contest.id", index=True)
    callsign: str = Field(index=True)
    call_id: int = Field(foreign_key="callsign.id")
    email: Optional[str] = None
    multiplier_id: Optional[int] = Field(default=None, foreign_key="multiplier.id")
    entity_id: Optional[int] = Field(default=None, foreign_key="entity.id")
    opclass: Optional[str] = None
    verified_score: Optional[int] = None
    verified_qsos: Optional[int] = None
    verified_multipliers: Optional[int] = None
    clock_adj: int = 0
    name: Optional[str] = None
    club: Optional[str] = None


class QSO(SQLModel, table=True):
    """A single claimed contact as it appears in one log.

    Both exchanges are stored twice: as resolved references (``*_call_id``,
    ``*_multiplier_id``, ``*_entity_id``) and as the raw text logged
    (``*_callsign``, ``*_location``, ``*_name``), since resolution can be wrong.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    log_id: int = Field(foreign_key="log.id", index=True)
    frequency: Optional[int] = None
    band: Band = Field(default=Band.UNKNOWN, index=True)
    mode: Optional[Mode] = Field(default=None, index=True)
    time: Optional[datetime] = Field(default=None, index=True, sa_type=DateTime(timezone=False))

    sent_call_id: int = Field(foreign_key="callsign.id", index=True)
    sent_entity_id: Optional[int] = None
    sent_multiplier_id: Optional[int] = Field(default=None, index=True)
    sent_serial: Optional[int] = None
    sent_callsign: Optional[str] = None
    sent_location: Optional[str] = None
    sent_name: Optional[str] = None

    recvd_call_id: int = Field(foreign_key="callsign.id", index=True)
    recvd_entity_id: Optional[int] = None
    recvd_multiplier_id: Optional[int] = Field(default=None, index=True)
    recvd_serial: Optional[int] = None
    recvd_callsign: Optional[str] = None
    recvd_location: Optional[str] = None
    recvd_name: Optional[str] = None

    match_id: Optional[int] = Field(default=None, index=True)
    match_type: MatchType = Field(default=MatchType.NONE, index=True)
    comment: Optional[str] = None


class Pair(SQLModel, table=True):
    """A recorded yes/no decision on whether two QSO lines are the same contact."""

    id: Optional[int] = Field(default=None, primary_key=True)
    contest_id: int = Field(index=True)
    line1: str = Field(index=True)
    line2: str
    is_match: bool
