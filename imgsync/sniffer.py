"""Poll loop step: load watermark, fetch a batch, enqueue jobs, advance watermark."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from imgsync.enqueue import Enqueuer, JobSpec
from imgsync.query import Query
from imgsync.state import State, StateRepo
from imgsync.traceid import DstTemplate, trace_id


@dataclass
class SnifferConfig:
    """Settings for one Sniffer.

    ``src_pattern`` is rendered like a DstTemplate and stored verbatim as the
    job's src; the protocols are passed verbatim to transfer_jobs. Connection
    lifecycles belong to the caller.
    """

    source_id: str
    query: Query
    dst: DstTemplate
    src_pattern: str
    src_protocol: str
    dst_protocol: str
    imgsync_conn: Any
    source_conn: Any
    imgsync_paramstyle: str = "qmark"
    on_enqueue: Optional[Callable[[str, int], None]] = None
    on_error: Optional[Callable[[str], None]] = None


class Sniffer:
    """Turns new source rows into deduplicated transfer jobs."""

    def __init__(self, config: SnifferConfig) -> None:
        self.config = config
        self._state = StateRepo(config.imgsync_conn, config.imgsync_paramstyle)
        self._enqueuer = Enqueuer(config.imgsync_conn, config.imgsync_paramstyle)
        self._src = DstTemplate(pattern=config.src_pattern)

    def run_once(self) -> int:
        """Run one poll iteration and return the number of rows inserted.

        The watermark only advances after every row of the batch enqueued, so a
        failure mid-batch retries the whole batch. ``on_enqueue`` fires once on
        success (also with 0); ``on_error`` fires once before an error is raised.
        """
        cfg = self.config
        try:
            inserted = self._run()
        except Exception:
            if cfg.on_error is not None:
                cfg.on_error(cfg.source_id)
            raise
        if cfg.on_enqueue is not None:
            cfg.on_enqueue(cfg.source_id, inserted)
        return inserted

    def _run(self) -> int:
        cfg = self.config
        state = self._state.load(cfg.source_id)
        rows = cfg.query.fetch(cfg.source_conn, state)
        if not rows:
            return 0

        inserted = 0
        for row in rows:
            try:
                dst = cfg.dst.render(row.fields)
            except ValueError as exc:
                raise ValueError(f"render dst pk={row.pk}: {exc}") from exc
            try:
                src = self._src.render(row.fields)
            except ValueError as exc:
                raise ValueError(f"render src pk={row.pk}: {exc}") from exc
            job = JobSpec(
                trace_id=trace_id(cfg.query.table, row.pk),
                src=src,
                dst=dst,
                src_protocol=cfg.src_protocol,
                dst_protocol=cfg.dst_protocol,
            )
            if self._enqueuer.enqueue(job):
                inserted += 1

        last = rows[-1]
        self._state.upsert(State(source_id=cfg.source_id, last_run_ts=last.ts, last_run_pk=last.pk))
        return inserted