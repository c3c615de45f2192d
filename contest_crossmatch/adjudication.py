"""Yes/no decisions on ambiguous candidate pairs.

A `PairDecider` answers "are these two lines the same contact?". Answers are
cached in the Pair table keyed on both lines, so an operator is asked about a
given pair once, across reruns. A decider may decline to answer by returning
None: that counts as "no match" and is not recorded.
"""

from __future__ import annotations

from typing import NamedTuple, Optional, Protocol

import typer
from loguru import logger
from rich.console import Console
from sqlmodel import Session

from .comparator import MatchCandidate
from .storage import lookup_pair, record_pair


class PairFingerprint(NamedTuple):
    line1: str
    line2: str
    metric: float
    metric2: float

    @classmethod
    def of(cls, candidate: MatchCandidate) -> "PairFingerprint":
        line1, line2 = candidate.lines()
        return cls(line1, line2, candidate.metric, candidate.metric2)


class PairDecider(Protocol):
    def decide(self, fingerprint: PairFingerprint) -> Optional[bool]:
        ...


class RejectingDecider:
    """Non-interactive decider: never answers, so ambiguous pairs stay unlinked."""

    def decide(self, fingerprint: PairFingerprint) -> Optional[bool]:
        return None


class ConsoleDecider:
    """Show both lines on the terminal and ask the operator."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def decide(self, fingerprint: PairFingerprint) -> Optional[bool]:
        self.console.print(
            f"[bold]Metric:[/bold] {fingerprint.metric:.3f} {fingerprint.metric2:.3f}"
        )
        self.console.print(fingerprint.line1)
        self.console.print(fingerprint.line2)
        return typer.confirm("Is this a match?", default=False)


class Adjudicator:
    """Answer for a candidate pair from the cache, or ask and remember."""

    def __init__(self, contest_id: int, decider: PairDecider):
        self.contest_id = contest_id
        self.decider = decider

    def adjudicate(self, session: Session, candidate: MatchCandidate) -> bool:
        fp = PairFingerprint.of(candidate)
        cached = lookup_pair(session, fp.line1, fp.line2)
        if cached is not None:
            logger.debug(f"Cached decision {cached} for QSOs {candidate.q1.id}/{candidate.q2.id}")
            return cached
        answer = self.decider.decide(fp)
        if answer is None:
            return False
        record_pair(session, self.contest_id, fp.line1, fp.line2, answer)
        logger.debug(f"Recorded decision {answer} for QSOs {candidate.q1.id}/{candidate.q2.id}")
        return answer
