"""Windowed watermark queries against a source table."""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Sequence

from imgsync.state import State

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


def _ts_param(ts: Any) -> str:
    """Format a watermark timestamp the way timestamps are stored: ISO-8601 UTC."""
    if ts is None:
        ts = _ZERO_TS
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            ts = datetime.fromisoformat(text)
        except ValueError as exc:
            raise TypeError(f"unexpected ts value {value!r}") from exc
    else:
        raise TypeError(f"unexpected ts type {type(value).__name__}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _rfc3339(ts: datetime) -> str:
    """UTC RFC 3339 with trailing zeros of the fraction trimmed."""
    utc = ts.astimezone(timezone.utc)
    text = utc.strftime("%Y-%m-%dT%H:%M:%S")
    if utc.microsecond:
        text += "." + f"{utc.microsecond:06d}".rstrip("0")
    return text + "Z"


def _field_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return _rfc3339(value)
    return str(value)


@dataclass(frozen=True)
class Row:
    """A source row: its pk as text, its watermark timestamp and all selected columns."""

    pk: str
    ts: datetime
    fields: Dict[str, str]


@dataclass
class Query:
    """A batched query over ``table`` ordered by (ts_column, pk_column).

    ``bias`` (seconds, truncated to whole seconds) excludes rows newer than
    now minus bias. Timestamps are passed to the database as ISO-8601 UTC text.
    """

    table: str
    pk_column: str
    ts_column: str
    batch_size: int = 0
    extra_columns: Sequence[str] = field(default_factory=tuple)
    bias: float = 0.0
    paramstyle: str = "qmark"

    def fetch(self, pool: Any, start: State) -> List[Row]:
        """Return the next batch of rows after the watermark in ``start``.

        With no carried-over pk the window is ``ts > last_ts``; otherwise it is
        ``ts > last_ts OR (ts = last_ts AND pk > last_pk)`` so the pk column is
        compared in its native type.
        """
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        cols = [self.pk_column, self.ts_column, *self.extra_columns]
        ts_col, pk_col = self.ts_column, self.pk_column
        bias_sec = int(self.bias)
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=bias_sec)).isoformat()
        last_ts = _ts_param(start.last_run_ts)

        if not start.last_run_pk:
            window = f"{ts_col} > ?"
            args: List[Any] = [last_ts, cutoff]
        else:
            window = f"({ts_col} > ? OR ({ts_col} = ? AND {pk_col} > ?))"
            args = [last_ts, last_ts, start.last_run_pk, cutoff]

        sql = _adapt_sql(
            f"SELECT {', '.join(cols)} FROM {self.table} "
            f"WHERE {window} AND {ts_col} <= ? "
            f"ORDER BY {ts_col}, {pk_col} "
            f"LIMIT {self.batch_size}",
            self.paramstyle,
        )

        cur = pool.cursor()
        try:
            cur.execute(sql, tuple(args))
            records = cur.fetchall()
        finally:
            cur.close()

        rows: List[Row] = []
        for values in records:
            ts = _parse_ts(values[1])
            fields = {col: _field_text(value) for col, value in zip(cols, values)}
            fields[ts_col] = _rfc3339(ts)
            rows.append(Row(pk=fields[pk_col], ts=ts, fields=fields))
        return rows