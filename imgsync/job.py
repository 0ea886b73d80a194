"""Leasing rows from the ``transfer_jobs`` queue."""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Sequence

_COLUMNS = (
    "id, trace_id, src, dst, src_protocol, dst_protocol, payload, status, "
    "attempts, max_attempts, locked_at, locked_by, next_run_at, created_at, updated_at"
)


def _adapt_sql(sql: str, paramstyle: str) -> str:
    """Rewrite ``?`` placeholders for the given DB-API paramstyle."""
    if paramstyle == "qmark":
        return sql
    if paramstyle in ("format", "pyformat"):
        return sql.replace("?", "%s")
    if paramstyle == "numeric":
        counter = itertools.count(1)
        return re.sub(r"\?", lambda _: f":{next(counter)}", sql)
    raise ValueError(f"unsupported paramstyle {paramstyle!r}")


def _paramstyle_of(pool: Any) -> str:
    """The placeholder style a connection expects; ``qmark`` unless it says otherwise."""
    return getattr(pool, "paramstyle", "qmark")


def _iso(ts: datetime) -> str:
    """Format a timestamp the way the queue stores it: ISO-8601 UTC, microseconds."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class Job:
    """A snapshot of a transfer_jobs row taken at lease time."""

    id: int = 0
    trace_id: str = ""
    src: str = ""
    dst: str = ""
    src_protocol: str = ""
    dst_protocol: str = ""
    payload: Optional[bytes] = None
    status: str = ""
    attempts: int = 0
    max_attempts: int = 0
    locked_at: Optional[datetime] = None
    locked_by: str = ""
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def duration(self) -> timedelta:
        """Time elapsed since the job was leased; zero when it has no lease time."""
        if self.locked_at is None:
            return timedelta(0)
        locked_at = self.locked_at
        if locked_at.tzinfo is None:
            locked_at = locked_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) - locked_at


def _job_from_row(row: Sequence[Any]) -> Job:
    payload = row[6]
    return Job(
        id=row[0],
        trace_id=row[1],
        src=row[2],
        dst=row[3],
        src_protocol=row[4],
        dst_protocol=row[5],
        payload=None if payload is None else bytes(payload),
        status=row[7],
        attempts=int(row[8]),
        max_attempts=int(row[9]),
        locked_at=_parse_ts(row[10]),
        locked_by=row[11] or "",
        next_run_at=_parse_ts(row[12]),
        created_at=_parse_ts(row[13]),
        updated_at=_parse_ts(row[14]),
    )


def lease_job(pool: Any, locked_by: str) -> Optional[Job]:
    """Lease the oldest due pending job for ``locked_by`` and return it.

    Picks the row with the earliest ``next_run_at`` (then lowest id) whose
    ``next_run_at`` has come due, marks it 'leased' and returns the full row.
    The claim is conditional on the row still being pending, so concurrent
    workers never lease the same job. Returns None when the queue is empty.
    """
    paramstyle = _paramstyle_of(pool)
    pick = _adapt_sql(
        "SELECT id FROM transfer_jobs "
        "WHERE status='pending' AND next_run_at <= ? "
        "ORDER BY next_run_at, id LIMIT 1",
        paramstyle,
    )
    claim = _adapt_sql(
        "UPDATE transfer_jobs "
        "SET status='leased', locked_at=?, locked_by=?, updated_at=? "
        "WHERE id=? AND status='pending'",
        paramstyle,
    )
    fetch = _adapt_sql(f"SELECT {_COLUMNS} FROM transfer_jobs WHERE id=?", paramstyle)

    cur = pool.cursor()
    try:
        while True:
            now = _now_iso()
            cur.execute(pick, (now,))
            found = cur.fetchone()
            if found is None:
                pool.commit()
                return None
            cur.execute(claim, (now, locked_by, now, found[0]))
            if cur.rowcount != 1:
                # Another worker claimed it first; look for the next one.
                pool.commit()
                continue
            cur.execute(fetch, (found[0],))
            record = cur.fetchone()
            pool.commit()
            return _job_from_row(record)
    except BaseException:
        pool.rollback()
        raise
    finally:
        cur.close()