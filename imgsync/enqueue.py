"""Deduplicated inserts into the ``transfer_jobs`` queue."""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from typing import Any


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


@dataclass(frozen=True)
class JobSpec:
    """One enqueue request; the protocols must match identifiers the worker knows."""

    trace_id: str
    src: str
    dst: str
    src_protocol: str
    dst_protocol: str


class Enqueuer:
    """Inserts transfer_jobs rows, ignoring duplicates of (trace_id, dst)."""

    def __init__(self, conn: Any, paramstyle: str = "qmark") -> None:
        self._conn = conn
        self._paramstyle = paramstyle

    def enqueue(self, job: JobSpec) -> bool:
        """Insert ``job``; return True if a new row was created, False on conflict."""
        sql = _adapt_sql(
            "INSERT INTO transfer_jobs (trace_id, src, dst, src_protocol, dst_protocol) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT (trace_id, dst) DO NOTHING",
            self._paramstyle,
        )
        cur = self._conn.cursor()
        try:
            cur.execute(
                sql,
                (job.trace_id, job.src, job.dst, job.src_protocol, job.dst_protocol),
            )
            inserted = cur.rowcount == 1
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            cur.close()
        return inserted