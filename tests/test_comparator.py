import math
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from contest_crossmatch.comparator import (
    CandidateOrder,
    ExchangeView,
    MatchCandidate,
    QSOView,
    band_mode_match,
    exchange_exact_match,
    exchange_tolerance_match,
    full_match,
    impossible_match,
    probability_score,
    rank_candidates,
    serial_deviation,
    time_match,
)
from contest_crossmatch.models import Band, Mode

T0 = datetime(2024, 10, 5, 16, 0)
CALLS = {"W1AW": 1, "K6XX": 2}
MULTS = {"MA": 10, "CA": 11}


def ex(call, serial, mult):
    return ExchangeView(
        call_id=CALLS.get(call),
        basecall=call,
        callsign=call,
        multiplier_id=MULTS.get(mult),
        multiplier=mult,
        serial=serial,
        location=mult,
    )


def view(qso_id, log_id, minute, sent, recvd, band=Band.B20M, mode=Mode.CW):
    return QSOView(
        id=qso_id,
        log_id=log_id,
        band=band,
        mode=mode,
        time=T0 + timedelta(minutes=minute),
        sent=sent,
        recvd=recvd,
    )


def mirrored(minute_b=3, serial_b_recvd=5, **kwargs):
    a = view(1, 1, 0, ex("W1AW", 5, "MA"), ex("K6XX", 7, "CA"))
    b = view(2, 2, minute_b, ex("K6XX", 7, "CA"), ex("W1AW", serial_b_recvd, "MA"), **kwargs)
    return a, b


def test_band_mode_match_strict_and_relaxed():
    a, b = mirrored(band=Band.B40M)
    assert not band_mode_match(a, b, strict=True)
    assert band_mode_match(a, b, strict=False)
    a, c = mirrored(band=Band.B40M, mode=Mode.PH)
    assert not band_mode_match(a, c, strict=False)


def test_exchange_matches():
    assert exchange_exact_match(ex("W1AW", 1, "MA"), ex("W1AW", 9, "MA"))
    assert not exchange_exact_match(ex("W1AW", 1, "MA"), ex("W1AW", 1, "CA"))
    # Unresolved multipliers never match, even when both are missing
    assert not exchange_exact_match(ex("W1AW", 1, "ZZ"), ex("W1AW", 1, "ZZ"))
    assert exchange_tolerance_match(5, 6)
    assert not exchange_tolerance_match(5, 7)
    assert exchange_tolerance_match(5, 7, serial_range=2)
    assert not exchange_tolerance_match(None, 5)


def test_time_match():
    a, b = mirrored(minute_b=15)
    assert time_match(a, b, 15)
    assert not time_match(a, b, 14)


def test_full_match_is_directional():
    a, b = mirrored(serial_b_recvd=9)
    # a copied b's exchange correctly; b got a's serial wrong
    assert full_match(a, b, 15)
    assert not full_match(b, a, 15)


def test_serial_deviation():
    a, b = mirrored(serial_b_recvd=6)
    assert serial_deviation(a, b) == 1
    a2 = view(3, 1, 0, ex("W1AW", None, "MA"), ex("K6XX", 7, "CA"))
    assert serial_deviation(a2, b) == math.inf


def test_impossible_match():
    a, b = mirrored()
    assert not impossible_match(a, b)
    assert impossible_match(a, a)
    same_log = view(3, 1, 1, ex("K6XX", 7, "CA"), ex("W1AW", 5, "MA"))
    assert impossible_match(a, same_log)
    _, late = mirrored(minute_b=60)
    assert impossible_match(a, late)
    _, busted_serial = mirrored(serial_b_recvd=15)
    assert impossible_match(a, busted_serial)


def test_probability_score():
    a, b = mirrored()
    metric, metric2 = probability_score(a, b)
    assert metric == pytest.approx(1.0)
    assert metric2 == pytest.approx(1.0)

    a, b = mirrored(minute_b=30, serial_b_recvd=9)
    metric, _ = probability_score(a, b)
    assert metric == pytest.approx(4 / 9)


def test_rank_candidates():
    a, b = mirrored()
    _, worse = mirrored(minute_b=10, serial_b_recvd=6)
    worse = QSOView(**{**worse.__dict__, "id": 3})
    best = MatchCandidate(a, b, 0.9, 0.5)
    tied = MatchCandidate(a, worse, 0.9, 0.8)
    low = MatchCandidate(a, worse, 0.2, 1.0)
    assert rank_candidates([low, best, tied]) == [tied, best, low]
    assert rank_candidates([tied, best], CandidateOrder.by_serial_then_time) == [best, tied]
    assert rank_candidates([tied, best], CandidateOrder.by_time_then_serial) == [best, tied]


def test_basic_line_is_normalized():
    a, _ = mirrored()
    assert a.basic_line() == "20M CW 2024-10-05 1600 W1AW 5 MA K6XX 7 CA"


def test_time_match_counts_whole_minutes():
    a, b = mirrored(minute_b=15)
    late = replace(b, time=b.time + timedelta(seconds=59))
    assert time_match(a, late, 15)
    assert not time_match(a, replace(b, time=b.time + timedelta(minutes=1)), 15)
