import io

from rich.console import Console

from contest_crossmatch import adjudication
from contest_crossmatch.adjudication import (
    Adjudicator,
    ConsoleDecider,
    PairFingerprint,
    RejectingDecider,
)
from contest_crossmatch.comparator import MatchCandidate
from contest_crossmatch.storage import lookup_pair


class CountingDecider:
    def __init__(self, answer):
        self.answer = answer
        self.calls = 0

    def decide(self, fingerprint):
        self.calls += 1
        return self.answer


def _candidate(builder):
    builder.log("W1AW", "MA", "ALICE")
    builder.log("K6XX", "CA", "BOB")
    builder.contact("W1AW", "K6XX", minute=0, minute_b=30)
    ctx = builder.ctx()
    with ctx.session() as session:
        q1, q2 = ctx.load_views(session)
    return ctx, MatchCandidate(q1, q2, 0.45, 0.9)


def test_fingerprint_uses_both_lines(builder):
    _, candidate = _candidate(builder)
    fp = PairFingerprint.of(candidate)
    assert (fp.line1, fp.line2) == candidate.lines()
    assert fp.metric == 0.45
    assert "W1AW" in fp.line1 and "K6XX" in fp.line1


def test_decision_is_cached(builder):
    ctx, candidate = _candidate(builder)
    decider = CountingDecider(True)
    adjudicator = Adjudicator(ctx.contest_id, decider)
    with ctx.session() as session:
        assert adjudicator.adjudicate(session, candidate) is True
        assert adjudicator.adjudicate(session, candidate) is True
    assert decider.calls == 1

    # The cache outlives the adjudicator and ignores pair order
    flipped = MatchCandidate(candidate.q2, candidate.q1, 0.45, 0.9)
    with ctx.session() as session:
        assert Adjudicator(ctx.contest_id, CountingDecider(False)).adjudicate(session, flipped)


def test_no_answer_is_not_recorded(builder):
    ctx, candidate = _candidate(builder)
    with ctx.session() as session:
        assert Adjudicator(ctx.contest_id, RejectingDecider()).adjudicate(session, candidate) is False
        line1, line2 = candidate.lines()
        assert lookup_pair(session, line1, line2) is None


def test_console_decider_shows_lines_and_asks(monkeypatch):
    out = io.StringIO()
    asked = []

    def fake_confirm(text, default=False):
        asked.append(text)
        return True

    monkeypatch.setattr(adjudication.typer, "confirm", fake_confirm)
    decider = ConsoleDecider(Console(file=out, width=200))
    assert decider.decide(PairFingerprint("LINE ONE", "LINE TWO", 0.42, 0.8)) is True
    assert asked == ["Is this a match?"]
    shown = out.getvalue()
    assert "LINE ONE" in shown and "LINE TWO" in shown
    assert "0.420" in shown
