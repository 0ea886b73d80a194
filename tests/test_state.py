import sqlite3
from datetime import datetime, timezone

import pytest

from imgsync.state import State, StateRepo


@pytest.fixture
def conn():
    c = sqlite3.connect(":memory:")
    c.execute(
        """
        CREATE TABLE sniffer_state (
          source_id   TEXT PRIMARY KEY,
          last_run_ts TIMESTAMPTZ NOT NULL,
          last_run_pk TEXT,
          updated_at  TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
        )"""
    )
    yield c
    c.close()


def test_load_missing_returns_zero_value(conn):
    st = StateRepo(conn).load("main-source-db.images")
    assert st.last_run_ts is None
    assert st.last_run_pk == ""
    assert st.source_id == "main-source-db.images"


def test_upsert_then_load(conn):
    repo = StateRepo(conn)
    want = State(
        source_id="main-source-db.images",
        last_run_ts=datetime(2026, 4, 27, 12, 0, 0, tzinfo=timezone.utc),
        last_run_pk="100",
    )
    repo.upsert(want)
    got = repo.load(want.source_id)
    assert got.last_run_ts == want.last_run_ts
    assert got.last_run_pk == "100"


def test_upsert_overwrites_existing(conn):
    repo = StateRepo(conn)
    repo.upsert(State("src", datetime.fromtimestamp(1000, timezone.utc), "1"))
    repo.upsert(State("src", datetime.fromtimestamp(2000, timezone.utc), "2"))
    got = repo.load("src")
    assert got.last_run_pk == "2"
    assert got.last_run_ts == datetime.fromtimestamp(2000, timezone.utc)
    assert conn.execute("SELECT COUNT(*) FROM sniffer_state").fetchone()[0] == 1


def test_empty_pk_stored_as_null(conn):
    repo = StateRepo(conn)
    repo.upsert(State("src", datetime(2026, 1, 1, tzinfo=timezone.utc), ""))
    assert conn.execute("SELECT last_run_pk FROM sniffer_state").fetchone()[0] is None
    assert repo.load("src").last_run_pk == ""


def test_zero_timestamp_round_trips_as_none(conn):
    repo = StateRepo(conn)
    repo.upsert(State("src", None, "5"))
    got = repo.load("src")
    assert got.last_run_ts is None
    assert got.last_run_pk == "5"


def test_unknown_paramstyle_rejected(conn):
    with pytest.raises(ValueError):
        StateRepo(conn, paramstyle="bogus").load("src")