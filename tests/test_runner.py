import json
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from imgsync.localfs import LocalSource, LocalTransport
from imgsync.runner import Runner, UnknownProtocolError

SCHEMA = """
CREATE TABLE transfer_jobs (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  trace_id TEXT NOT NULL,
  src TEXT NOT NULL,
  dst TEXT NOT NULL,
  src_protocol TEXT NOT NULL,
  dst_protocol TEXT NOT NULL,
  payload BLOB,
  status TEXT NOT NULL DEFAULT 'pending',
  attempts INTEGER NOT NULL DEFAULT 0,
  max_attempts INTEGER NOT NULL DEFAULT 5,
  locked_at TEXT,
  locked_by TEXT,
  next_run_at TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  UNIQUE (trace_id, dst)
);
CREATE TABLE transfer_events (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  trace_id TEXT NOT NULL,
  job_id INTEGER NOT NULL,
  status TEXT NOT NULL,
  detail TEXT
);
"""


def _iso(ts):
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "queue.db")
    conn = sqlite3.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.executescript(SCHEMA)
    conn.commit()
    conn.close()
    return path


def _connector(path):
    return lambda: sqlite3.connect(path, timeout=10, check_same_thread=False)


def _enqueue(path, trace_id, src, dst, src_protocol, max_attempts):
    now = datetime.now(timezone.utc)
    conn = sqlite3.connect(path, timeout=10)
    conn.execute(
        "INSERT INTO transfer_jobs (trace_id, src, dst, src_protocol, dst_protocol, "
        "max_attempts, next_run_at, created_at, updated_at) "
        "VALUES (?, ?, ?, ?, 'localfs', ?, ?, ?, ?)",
        (trace_id, src, dst, src_protocol, max_attempts,
         _iso(now - timedelta(seconds=1)), _iso(now), _iso(now)),
    )
    conn.commit()
    conn.close()


def _query(path, sql, params=()):
    conn = sqlite3.connect(path, timeout=10)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


def _run_until(runner, predicate, timeout=10.0):
    stop = threading.Event()
    thread = threading.Thread(target=runner.run, args=(stop,))
    thread.start()
    deadline = time.monotonic() + timeout
    reached = False
    try:
        while time.monotonic() < deadline:
            if predicate():
                reached = True
                break
            time.sleep(0.1)
    finally:
        stop.set()
        thread.join(timeout=10)
    return reached, thread.is_alive()


def test_runner_start_stop_callbacks_wrap_each_worker():
    started, stopped = [], []
    stop = threading.Event()
    stop.set()
    runner = Runner(
        connect=lambda: sqlite3.connect(":memory:"),
        source_for=lambda _: LocalSource(),
        transport_for=lambda _: LocalTransport(),
        workers=1,
        pod_name="test-pod",
        on_worker_start=started.append,
        on_worker_stop=stopped.append,
    )

    runner.run(stop)

    assert started == ["test-pod"]
    assert stopped == ["test-pod"]


def test_runner_defaults_workers_and_pod_name():
    started = []
    stop = threading.Event()
    stop.set()
    runner = Runner(
        connect=lambda: sqlite3.connect(":memory:"),
        source_for=lambda _: LocalSource(),
        transport_for=lambda _: LocalTransport(),
        workers=0,
        pod_name="",
        on_worker_start=started.append,
    )

    runner.run(stop)

    assert started == ["imgsync-worker"] * 4


def test_runner_reports_empty_lease_attempts(db_path):
    attempts = []
    runner = Runner(
        connect=_connector(db_path),
        source_for=lambda _: LocalSource(),
        transport_for=lambda _: LocalTransport(),
        workers=1,
        idle_base_delay=0.01,
        idle_max_delay=0.02,
        on_lease_attempt=attempts.append,
    )

    reached, _ = _run_until(runner, lambda: len(attempts) >= 3, timeout=5)
    assert reached
    assert set(attempts) == {False}
    assert UnknownProtocolError().args == ("unknown protocol",)