from datetime import datetime, timedelta

import pytest

from contest_crossmatch.config import DEFAULT_SETTINGS
from contest_crossmatch.context import MatchContext
from contest_crossmatch.models import QSO, Band, Log, Mode
from contest_crossmatch.storage import (
    Exchange,
    add_log,
    add_multiplier,
    add_or_lookup_contest,
    create_db_and_tables,
    get_engine,
    insert_qso,
    lookup_multiplier,
    session_scope,
)

START = datetime(2024, 10, 5, 16, 0, 0)
MULTIPLIERS = ("CA", "MA", "TX", "NY", "OH", "WA")


class ContestBuilder:
    """Small helper for laying out logs and QSOs of one test contest."""

    def __init__(self, engine, name="TEST", year=2024, start=None, end=None):
        self.engine = engine
        self.stations = {}
        self.logs = {}
        self.serials = {}
        with session_scope(engine) as session:
            for abbrev in MULTIPLIERS:
                if lookup_multiplier(session, abbrev)[0] is None:
                    add_multiplier(session, abbrev)
            session.commit()
            self.contest_id = add_or_lookup_contest(
                session, name, year, create=True, start=start, end=end
            )

    def station(self, call, location="CA", name="ALPHA"):
        self.stations[call] = (location, name)
        return call

    def log(self, call, location="CA", name="ALPHA", clock_adj=0):
        self.station(call, location, name)
        with session_scope(self.engine) as session:
            log_id = add_log(
                session, self.contest_id, call, location=location, name=name, clock_adj=clock_adj
            )
            session.commit()
        self.logs[call] = log_id
        return log_id

    def exchange(self, call, serial, **overrides):
        location, name = self.stations.get(call, ("CA", "ALPHA"))
        values = {"callsign": call, "serial": serial, "location": location, "name": name}
        values.update(overrides)
        return Exchange(**values)

    def next_serial(self, call):
        self.serials[call] = self.serials.get(call, 0) + 1
        return self.serials[call]

    def qso(self, owner, minute, sent, recvd, band=Band.B20M, mode=Mode.CW):
        with session_scope(self.engine) as session:
            qso_id = insert_qso(
                session,
                self.contest_id,
                self.logs[owner],
                START + timedelta(minutes=minute),
                sent,
                recvd,
                band=band,
                mode=mode,
            )
            session.commit()
        return qso_id

    def worked(self, owner, other, minute, recvd_serial=None, band=Band.B20M, mode=Mode.CW, **recvd):
        """``owner`` logs a contact with ``other``, sending its next serial."""
        sent = self.exchange(owner, self.next_serial(owner))
        got = self.exchange(other, recvd_serial if recvd_serial is not None else 1, **recvd)
        return self.qso(owner, minute, sent, got, band=band, mode=mode)

    def contact(self, a, b, minute=0, minute_b=None, band=Band.B20M, band_b=None, mode=Mode.CW):
        """Both stations log the same contact cleanly; returns (a's QSO, b's QSO)."""
        serial_a = self.next_serial(a)
        serial_b = self.next_serial(b)
        qa = self.qso(
            a, minute, self.exchange(a, serial_a), self.exchange(b, serial_b), band=band, mode=mode
        )
        qb = self.qso(
            b,
            minute if minute_b is None else minute_b,
            self.exchange(b, serial_b),
            self.exchange(a, serial_a),
            band=band if band_b is None else band_b,
            mode=mode,
        )
        return qa, qb

    def ctx(self, settings=DEFAULT_SETTINGS):
        return MatchContext.for_contest(self.engine, self.contest_id, settings=settings)

    def state(self, qso_id):
        with session_scope(self.engine) as session:
            qso = session.get(QSO, qso_id)
            return qso.match_type, qso.match_id

    def row(self, qso_id):
        with session_scope(self.engine) as session:
            qso = session.get(QSO, qso_id)
            session.expunge(qso)
            return qso

    def log_row(self, call):
        with session_scope(self.engine) as session:
            log = session.get(Log, self.logs[call])
            session.expunge(log)
            return log


@pytest.fixture
def temp_db(tmp_path, monkeypatch):
    """Create a temporary database for testing."""
    db_path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("CROSSMATCH_DB_PATH", str(db_path))
    monkeypatch.setenv("CROSSMATCH_CONFIG", str(tmp_path / "crossmatch.json"))
    create_db_and_tables()
    yield db_path


@pytest.fixture
def engine(temp_db):
    return get_engine(temp_db)


@pytest.fixture
def builder(engine):
    """An empty contest with the usual multipliers defined."""
    return ContestBuilder(engine)
