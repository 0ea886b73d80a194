"""Recovery of expired job leases.

Each cycle runs in one transaction guarded by a transaction-scoped advisory
lock, so several processes can sweep without duplicating expire events.
"""

from __future__ import annotations

import itertools
import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

LOCK_KEY = "imgsync_sweeper"
_EXPIRE_DETAIL = json.dumps({"reason": "lease_expired"})


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


@dataclass
class SweeperConfig:
    """Sweeper timing, in seconds.

    ``threshold`` is the lease age beyond which a job is recovered (default
    300); ``interval`` is the loop period (default 30). ``on_cycle`` is called
    after every successful cycle.
    """

    threshold: float = 300.0
    interval: float = 30.0
    on_cycle: Optional[Callable[[], None]] = None
    paramstyle: str = "qmark"


def sweep(pool: Any, config: SweeperConfig) -> int:
    """Run one cycle and return the number of leases recovered.

    Returns 0 without changes when another sweeper holds the lock. Recovered
    jobs go back to 'pending' without their attempts being bumped, and each
    gets an 'expire' event.
    """
    threshold = config.threshold if config.threshold > 0 else 300.0
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=int(threshold))).isoformat()
    ps = config.paramstyle

    cur = pool.cursor()
    try:
        cur.execute(_adapt_sql("SELECT pg_try_advisory_xact_lock(hashtext(?))", ps), (LOCK_KEY,))
        locked = cur.fetchone()
        if not locked or not locked[0]:
            pool.rollback()
            return 0

        cur.execute(
            _adapt_sql(
                "SELECT id, trace_id FROM transfer_jobs "
                "WHERE status='leased' AND locked_at < ? ORDER BY id",
                ps,
            ),
            (cutoff,),
        )
        candidates: List[Tuple[Any, str]] = [(r[0], r[1]) for r in cur.fetchall()]

        recovered: List[Tuple[Any, str]] = []
        for job_id, trace in candidates:
            cur.execute(
                _adapt_sql(
                    "UPDATE transfer_jobs "
                    "SET status='pending', locked_at=NULL, locked_by=NULL, "
                    "updated_at=CURRENT_TIMESTAMP "
                    "WHERE id=? AND status='leased' AND locked_at < ?",
                    ps,
                ),
                (job_id, cutoff),
            )
            if cur.rowcount == 1:
                recovered.append((job_id, trace))

        for job_id, trace in recovered:
            cur.execute(
                _adapt_sql(
                    "INSERT INTO transfer_events (trace_id, job_id, status, detail) "
                    "VALUES (?, ?, 'expire', ?)",
                    ps,
                ),
                (trace, job_id, _EXPIRE_DETAIL),
            )
        pool.commit()
    except BaseException:
        pool.rollback()
        raise
    finally:
        cur.close()
    return len(recovered)


def run(pool: Any, config: SweeperConfig, stop: threading.Event) -> None:
    """Sweep every ``config.interval`` seconds until ``stop`` is set.

    Cycle errors are logged and the loop carries on with the next tick.
    """
    interval = config.interval if config.interval > 0 else 30.0
    while not stop.wait(interval):
        try:
            sweep(pool, config)
        except Exception:
            logger.exception("sweeper: cycle error")
            continue
        if config.on_cycle is not None:
            config.on_cycle()