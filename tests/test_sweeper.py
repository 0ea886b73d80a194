import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from imgsync.sweeper import SweeperConfig, run, sweep


def make_db(lock_result=1):
    conn = sqlite3.connect(":memory:")
    conn.executescript(
        """
        CREATE TABLE transfer_jobs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          trace_id TEXT NOT NULL,
          src TEXT NOT NULL,
          dst TEXT NOT NULL,
          status TEXT NOT NULL DEFAULT 'pending',
          attempts INTEGER NOT NULL DEFAULT 0,
          locked_at TEXT,
          locked_by TEXT,
          updated_at TEXT
        );
        CREATE TABLE transfer_events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          trace_id TEXT NOT NULL,
          job_id INTEGER NOT NULL,
          status TEXT NOT NULL,
          detail TEXT
        );
        """
    )
    conn.create_function("hashtext", 1, lambda text: len(text))
    conn.create_function("pg_try_advisory_xact_lock", 1, lambda key: lock_result)
    conn.commit()
    return conn


@pytest.fixture
def db():
    conn = make_db()
    yield conn
    conn.close()


def stamp_stale(conn, trace, age_minutes):
    locked_at = (datetime.now(timezone.utc) - timedelta(minutes=age_minutes)).isoformat()
    cur = conn.execute(
        "INSERT INTO transfer_jobs (trace_id, src, dst, status, locked_by, locked_at) "
        "VALUES (?, 'x', ?, 'leased', 'dead-pod', ?)",
        (trace, trace + "-dst", locked_at),
    )
    conn.commit()
    return cur.lastrowid


def test_stale_lease_recovers_to_pending(db):
    job_id = stamp_stale(db, "stale-1", 6)
    assert sweep(db, SweeperConfig(threshold=300)) == 1

    status, locked_by = db.execute(
        "SELECT status, locked_by FROM transfer_jobs WHERE id=?", (job_id,)
    ).fetchone()
    assert status == "pending"
    assert locked_by is None

    events = db.execute(
        "SELECT detail FROM transfer_events WHERE job_id=? AND status='expire'", (job_id,)
    ).fetchall()
    assert len(events) == 1
    assert json.loads(events[0][0]) == {"reason": "lease_expired"}


def test_fresh_lease_not_recovered(db):
    job_id = stamp_stale(db, "fresh-1", 1)
    assert sweep(db, SweeperConfig(threshold=300)) == 0
    status = db.execute("SELECT status FROM transfer_jobs WHERE id=?", (job_id,)).fetchone()[0]
    assert status == "leased"


def test_lock_held_elsewhere_recovers_nothing():
    conn = make_db(lock_result=0)
    job_id = stamp_stale(conn, "locked-1", 6)
    assert sweep(conn, SweeperConfig(threshold=300)) == 0
    status = conn.execute("SELECT status FROM transfer_jobs WHERE id=?", (job_id,)).fetchone()[0]
    assert status == "leased"
    assert conn.execute("SELECT COUNT(*) FROM transfer_events").fetchone()[0] == 0
    conn.close()


def test_repeated_sweeps_do_not_duplicate_events(db):
    for i in range(5):
        stamp_stale(db, "concur-" + chr(ord("a") + i), 6)
    total = sweep(db, SweeperConfig(threshold=300)) + sweep(db, SweeperConfig(threshold=300))
    assert total == 5
    events = db.execute("SELECT COUNT(*) FROM transfer_events WHERE status='expire'").fetchone()[0]
    assert events == 5


def test_does_not_bump_attempts(db):
    job_id = stamp_stale(db, "attempts-0", 6)
    sweep(db, SweeperConfig(threshold=300))
    attempts = db.execute("SELECT attempts FROM transfer_jobs WHERE id=?", (job_id,)).fetchone()[0]
    assert attempts == 0


def test_non_positive_threshold_defaults_to_five_minutes(db):
    stale = stamp_stale(db, "old", 6)
    fresh = stamp_stale(db, "new", 4)
    assert sweep(db, SweeperConfig(threshold=0)) == 1
    statuses = dict(db.execute("SELECT id, status FROM transfer_jobs").fetchall())
    assert statuses == {stale: "pending", fresh: "leased"}


def test_run_loops_until_stopped(db):
    stamp_stale(db, "looping-1", 6)
    stop = threading.Event()
    cycles = []
    timer = threading.Timer(0.5, stop.set)
    timer.start()
    try:
        run(db, SweeperConfig(threshold=300, interval=0.05, on_cycle=lambda: cycles.append(1)), stop)
    finally:
        timer.cancel()
    status = db.execute(
        "SELECT status FROM transfer_jobs WHERE trace_id='looping-1'"
    ).fetchone()[0]
    assert status == "pending"
    assert len(cycles) >= 1


def test_run_continues_after_cycle_errors():
    conn = sqlite3.connect(":memory:")
    stop = threading.Event()
    cycles = []
    timer = threading.Timer(0.3, stop.set)
    timer.start()
    try:
        run(conn, SweeperConfig(interval=0.05, on_cycle=lambda: cycles.append(1)), stop)
    finally:
        timer.cancel()
        conn.close()
    assert stop.is_set()
    assert cycles == []