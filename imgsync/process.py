"""Driving one leased job to a terminal or retry state."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Dict, Optional

from imgsync.errors import PermanentError, SkippableError, Source, Transport
from imgsync.job import Job, _adapt_sql, _iso, _now_iso


@dataclass
class Deps:
    """What process_job needs: a DB-API connection and the I/O endpoints."""

    pool: Any
    locked_by: str
    source: Source
    transport: Transport
    paramstyle: str = "qmark"


class _CountingReader:
    """Counts the bytes read through it."""

    def __init__(self, body: BinaryIO) -> None:
        self._body = body
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        data = self._body.read(size)
        self.count += len(data)
        return data


def _caused_by(exc: Optional[BaseException], cls: type) -> bool:
    seen = set()
    while exc is not None and id(exc) not in seen:
        if isinstance(exc, cls):
            return True
        seen.add(id(exc))
        exc = exc.__cause__ or exc.__context__
    return False


def _detail_json(detail: Dict[str, Any]) -> str:
    return json.dumps(detail, sort_keys=True, separators=(",", ":"))


def _write(conn: Any, paramstyle: str, statements) -> None:
    cur = conn.cursor()
    try:
        for sql, params in statements:
            cur.execute(_adapt_sql(sql, paramstyle), params)
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        cur.close()


def _write_terminal(
    conn: Any,
    job: Job,
    job_status: str,
    event_status: str,
    detail: Dict[str, Any],
    attempts: int,
    paramstyle: str = "qmark",
) -> None:
    """Set a terminal status and record the matching event in one transaction."""
    now = _now_iso()
    _write(
        conn,
        paramstyle,
        [
            (
                "UPDATE transfer_jobs SET status=?, attempts=?, locked_at=NULL, "
                "locked_by=NULL, updated_at=? WHERE id=?",
                (job_status, attempts, now, job.id),
            ),
            (
                "INSERT INTO transfer_events (trace_id, job_id, status, detail) "
                "VALUES (?, ?, ?, ?)",
                (job.trace_id, job.id, event_status, _detail_json(detail)),
            ),
        ],
    )


def _write_success(deps: Deps, job: Job, written: int, sha_hex: str, start: float) -> None:
    detail = {
        "size": written,
        "sha256": sha_hex,
        "duration_ms": int((time.monotonic() - start) * 1000),
    }
    now = _now_iso()
    _write(
        deps.pool,
        deps.paramstyle,
        [
            (
                "UPDATE transfer_jobs SET status='succeeded', locked_at=NULL, "
                "locked_by=NULL, updated_at=? WHERE id=?",
                (now, job.id),
            ),
            (
                "INSERT INTO transfer_events (trace_id, job_id, status, detail) "
                "VALUES (?, ?, 'success', ?)",
                (job.trace_id, job.id, _detail_json(detail)),
            ),
        ],
    )


def _write_retry_or_dead(deps: Deps, job: Job, detail: Dict[str, Any]) -> None:
    next_attempts = job.attempts + 1
    if next_attempts >= job.max_attempts:
        _write_terminal(deps.pool, job, "dead", "dead", detail, next_attempts, deps.paramstyle)
        return
    backoff = timedelta(seconds=2 ** next_attempts)  # 2, 4, 8, 16, 32 ...
    now = datetime.now(timezone.utc)
    _write(
        deps.pool,
        deps.paramstyle,
        [
            (
                "UPDATE transfer_jobs SET status='pending', attempts=?, next_run_at=?, "
                "locked_at=NULL, locked_by=NULL, updated_at=? WHERE id=?",
                (next_attempts, _iso(now + backoff), _iso(now), job.id),
            ),
            (
                "INSERT INTO transfer_events (trace_id, job_id, status, detail) "
                "VALUES (?, ?, 'fail', ?)",
                (job.trace_id, job.id, _detail_json(detail)),
            ),
        ],
    )


def _classify_and_write(deps: Deps, job: Job, error: BaseException, detail: Dict[str, Any]) -> None:
    if _caused_by(error, SkippableError):
        _write_terminal(deps.pool, job, "skipped", "skip", detail, job.attempts, deps.paramstyle)
    elif _caused_by(error, PermanentError):
        _write_terminal(deps.pool, job, "dead", "dead", detail, job.attempts + 1, deps.paramstyle)
    else:
        _write_retry_or_dead(deps, job, detail)


def _open_details(error: BaseException) -> Dict[str, Any]:
    detail: Dict[str, Any] = {"error": str(error), "stage": "open"}
    if _caused_by(error, SkippableError):
        detail["reason"] = "source_not_found"
    return detail


def process_job(deps: Deps, job: Job) -> None:
    """Transfer ``job`` and record its outcome.

    Skippable errors mark the job 'skipped', permanent errors and size
    mismatches mark it 'dead', and anything else schedules a retry with
    exponential backoff until ``max_attempts`` is reached. Only database
    failures propagate.
    """
    start = time.monotonic()
    try:
        body, src_size = deps.source.open(job.src)
    except Exception as exc:
        _classify_and_write(deps, job, exc, _open_details(exc))
        return

    closed = False
    try:
        counted = _CountingReader(body)
        try:
            written, sha_hex = deps.transport.send(job.dst, counted, src_size)
        except Exception as exc:
            _classify_and_write(deps, job, exc, {"error": str(exc), "stage": "transport"})
            return

        if src_size >= 0 and written != src_size:
            _classify_and_write(
                deps,
                job,
                PermanentError(f"size mismatch: src={src_size} written={written}"),
                {"reason": "size_mismatch", "stage": "verify", "src_size": src_size, "written": written},
            )
            return
        if src_size < 0 and counted.count != written:
            _classify_and_write(
                deps,
                job,
                PermanentError(f"size mismatch: read={counted.count} written={written}"),
                {
                    "reason": "size_mismatch_unknown_src",
                    "stage": "verify",
                    "read": counted.count,
                    "written": written,
                },
            )
            return

        # A close failure after a completed send (e.g. a missing final FTP
        # reply) is a retryable transport-class failure.
        closed = True
        try:
            body.close()
        except Exception as exc:
            _classify_and_write(deps, job, exc, {"error": str(exc), "stage": "source_close"})
            return
    finally:
        if not closed:
            try:
                body.close()
            except Exception:
                pass

    _write_success(deps, job, written, sha_hex, start)