from contest_crossmatch.crossmatch import CrossMatch
from contest_crossmatch.models import Band, MatchType
from contest_crossmatch.singletons import CallStats, SingletonResolver
from contest_crossmatch.storage import session_scope


def _comment(builder, qso_id):
    return builder.row(qso_id).comment


def test_active_callsign_without_log_is_bye(builder):
    """A station worked twelve times contest-wide is assumed legitimate."""
    builder.log("W1AW", "MA", "ALICE")
    builder.station("K6XX", "CA", "BOB")
    qsos = [builder.worked("W1AW", "K6XX", minute * 5) for minute in range(12)]

    counts = SingletonResolver(builder.ctx()).resolve()
    assert counts[MatchType.BYE] == 12
    assert builder.state(qsos[0]) == (MatchType.BYE, None)


def test_incomplete_exchange_is_removed(builder):
    builder.log("W1AW", "MA", "ALICE")
    builder.station("K6XX", "CA", "BOB")
    no_name = builder.worked("W1AW", "K6XX", 0, name=None)
    no_mult = builder.worked("W1AW", "K6XX", 5, location="ZZ")

    counts = SingletonResolver(builder.ctx()).resolve()
    assert counts[MatchType.REMOVED] == 2
    assert builder.state(no_name) == (MatchType.REMOVED, None)
    assert _comment(builder, no_name) == "Incomplete exchange received."
    assert _comment(builder, no_mult) == "Incomplete exchange received."


def test_invalid_callsign_close_to_participant(builder):
    builder.log("KA1ABCD", "MA", "ALICE")
    builder.log("W1AW", "CA", "BOB")
    builder.worked("W1AW", "KA1ABCD", 10, band=Band.B40M)
    busted = builder.worked("W1AW", "KA1ABCDE", 0, location="MA", name="ALICE")

    SingletonResolver(builder.ctx()).resolve()
    assert builder.state(busted) == (MatchType.REMOVED, None)
    assert _comment(builder, busted) == "Busted callsign - potential matches: KA1ABCD."


def test_logged_but_never_worked_call_is_not_a_candidate(builder):
    """A log whose callsign nobody copied does not explain a busted call."""
    builder.log("KA1ABCD", "MA", "ALICE")
    builder.log("W1AW", "CA", "BOB")
    bogus = builder.worked("W1AW", "KA1ABCDE", 0, location="MA", name="ALICE")

    resolver = SingletonResolver(builder.ctx())
    resolver.resolve()
    assert "KA1ABCD" not in [c.callsign for c in resolver.callsigns]
    assert _comment(builder, bogus) == "Illegal callsign not close to known participants."


def test_invalid_callsign_not_close_to_anyone(builder):
    builder.log("W1AW", "CA", "BOB")
    bogus = builder.worked("W1AW", "QQQQQQ", 0, location="MA", name="ALICE")

    SingletonResolver(builder.ctx()).resolve()
    assert builder.state(bogus) == (MatchType.REMOVED, None)
    assert _comment(builder, bogus) == "Illegal callsign not close to known participants."


def _popular_station(builder):
    """KA1ABCD sent in a log and was worked ten times, always as ALICE in MA."""
    builder.log("KA1ABCD", "MA", "ALICE")
    builder.log("W1AW", "CA", "BOB")
    for minute in range(10):
        builder.worked("W1AW", "KA1ABCD", minute * 10, band=Band.B40M)


def test_rare_call_near_far_more_common_one_is_busted(builder):
    _popular_station(builder)
    rare = builder.worked("W1AW", "KA1ABCE", 200, location="MA", name="ALICE")

    SingletonResolver(builder.ctx()).resolve()
    assert builder.state(rare) == (MatchType.REMOVED, None)
    assert _comment(builder, rare) == "Busted call - likely match: KA1ABCD."


def test_rare_call_with_different_exchange_is_bye(builder):
    _popular_station(builder)
    rare = builder.worked("W1AW", "KA1ABCE", 200, location="TX", name="ZELDA")

    SingletonResolver(builder.ctx()).resolve()
    assert builder.state(rare) == (MatchType.BYE, None)


def test_possible_matches_require_activity(builder):
    builder.log("W1AW", "CA", "BOB")
    builder.station("KA1ABCD", "MA", "ALICE")
    builder.worked("W1AW", "KA1ABCD", 0)
    builder.worked("W1AW", "KA1ABCDE", 5)
    resolver = SingletonResolver(builder.ctx())
    with session_scope(builder.engine) as session:
        resolver.load_stats(session)
    busted = next(c for c in resolver.callsigns if c.callsign == "KA1ABCDE")
    assert not busted.valid
    # KA1ABCD is close, but one QSO and no log make it an unlikely intended call
    assert resolver.possible_matches(busted) == []


def test_resolve_is_idempotent(builder):
    builder.log("W1AW", "MA", "ALICE")
    builder.worked("W1AW", "K6XX", 0)
    resolver = SingletonResolver(builder.ctx())
    assert sum(resolver.resolve().values()) == 1
    assert sum(resolver.resolve().values()) == 0


def test_final_dupe_check_demotes_later_repeat(builder):
    builder.log("W1AW", "MA", "ALICE")
    builder.log("K6XX", "CA", "BOB")
    first = builder.contact("W1AW", "K6XX", minute=0)
    second = builder.contact("W1AW", "K6XX", minute=30)
    ctx = builder.ctx()
    assert CrossMatch(ctx).perfect_match().links == 4

    resolver = SingletonResolver(ctx)
    assert resolver.final_dupe_check() == 2
    assert builder.state(first[0]) == (MatchType.FULL, first[1])
    assert builder.state(second[0]) == (MatchType.DUPE, None)
    assert builder.state(second[1]) == (MatchType.DUPE, None)
    assert resolver.final_dupe_check() == 0


def test_far_more_common_only_considers_the_most_active_candidate(builder):
    resolver = SingletonResolver(builder.ctx())
    busiest = CallStats(1, "KA1ABCD", True, False, 100)
    runner_up = CallStats(2, "KA1ABCF", True, True, 50)
    assert resolver.far_more_common([runner_up, busiest], 1) is None
    assert resolver.far_more_common([runner_up], 1) == runner_up
    assert resolver.far_more_common([runner_up], 6) is None
    assert resolver.far_more_common([], 1) is None
