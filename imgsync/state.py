"""Per-source sniffer watermark persisted in the ``sniffer_state`` table."""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

_ZERO_TS = datetime(1, 1, 1, tzinfo=timezone.utc)


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


def _to_db_ts(ts: Optional[datetime]) -> str:
    if ts is None:
        ts = _ZERO_TS
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _from_db_ts(value: Any) -> Optional[datetime]:
    ts = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return None if ts == _ZERO_TS else ts


@dataclass
class State:
    """A source's watermark: the (timestamp, pk) of the last row handled.

    ``last_run_ts`` is None before the first run; ``last_run_pk`` is "" when
    no pk has been carried over. Stored timestamps have microsecond precision.
    """

    source_id: str
    last_run_ts: Optional[datetime] = None
    last_run_pk: str = ""


class StateRepo:
    """Reads and writes watermarks through a DB-API 2.0 connection."""

    def __init__(self, conn: Any, paramstyle: str = "qmark") -> None:
        self._conn = conn
        self._paramstyle = paramstyle

    def load(self, source_id: str) -> State:
        """Return the watermark for ``source_id``, or an empty State if none exists."""
        sql = _adapt_sql(
            "SELECT last_run_ts, COALESCE(last_run_pk, '') FROM sniffer_state WHERE source_id = ?",
            self._paramstyle,
        )
        cur = self._conn.cursor()
        try:
            cur.execute(sql, (source_id,))
            row = cur.fetchone()
        finally:
            cur.close()
        if row is None:
            return State(source_id=source_id)
        return State(
            source_id=source_id,
            last_run_ts=_from_db_ts(row[0]),
            last_run_pk=row[1] or "",
        )

    def upsert(self, state: State) -> None:
        """Write ``state``, replacing any previous watermark; "" pk stores as NULL."""
        sql = _adapt_sql(
            "INSERT INTO sniffer_state (source_id, last_run_ts, last_run_pk, updated_at) "
            "VALUES (?, ?, ?, CURRENT_TIMESTAMP) "
            "ON CONFLICT (source_id) DO UPDATE "
            "SET last_run_ts = EXCLUDED.last_run_ts, "
            "last_run_pk = EXCLUDED.last_run_pk, "
            "updated_at = CURRENT_TIMESTAMP",
            self._paramstyle,
        )
        pk = state.last_run_pk or None
        cur = self._conn.cursor()
        try:
            cur.execute(sql, (state.source_id, _to_db_ts(state.last_run_ts), pk))
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise
        finally:
            cur.close()