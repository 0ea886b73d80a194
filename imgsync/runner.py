"""Worker pool that drains the transfer queue."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from imgsync.errors import Source, Transport
from imgsync.job import Job, lease_job
from imgsync.process import Deps, _write_terminal, process_job

logger = logging.getLogger(__name__)

_STOP_POLL = 0.05


class UnknownProtocolError(Exception):
    """Raised by source/transport factories for an unregistered protocol."""

    def __init__(self, message: str = "unknown protocol") -> None:
        super().__init__(message)


class _IdleWaiter:
    """Shared idle wait that any worker can cut short for everybody."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._generation = 0

    def wait(self, delay: float, stop: threading.Event) -> None:
        deadline = time.monotonic() + delay
        with self._cond:
            generation = self._generation
            while not stop.is_set() and self._generation == generation:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return
                self._cond.wait(min(remaining, _STOP_POLL))

    def wake_all(self) -> None:
        with self._cond:
            self._generation += 1
            self._cond.notify_all()


@dataclass
class Runner:
    """Drains the queue with ``workers`` threads, each on its own connection.

    ``connect`` opens a DB-API connection; ``source_for`` and ``transport_for``
    map protocol names to endpoints and raise (e.g. UnknownProtocolError) for
    unknown ones, which marks the job dead. Idle workers back off from
    ``idle_base_delay`` doubling up to ``idle_max_delay`` seconds.
    """

    connect: Callable[[], Any]
    source_for: Callable[[str], Source]
    transport_for: Callable[[str], Transport]
    workers: int = 4
    pod_name: str = "imgsync-worker"
    idle_base_delay: float = 0.1
    idle_max_delay: float = 5.0
    paramstyle: str = "qmark"
    on_finish: Optional[Callable[[Job], None]] = None
    on_lease_attempt: Optional[Callable[[bool], None]] = None
    on_worker_start: Optional[Callable[[str], None]] = None
    on_worker_stop: Optional[Callable[[str], None]] = None

    def run(self, stop: threading.Event) -> None:
        """Run the workers until ``stop`` is set, then wait for them to finish."""
        workers = self.workers if self.workers > 0 else 4
        pod = self.pod_name or "imgsync-worker"
        waiter = _IdleWaiter()
        threads = [
            threading.Thread(
                target=self._worker,
                args=(idx, pod, stop, waiter),
                name=f"{pod}-w{idx}",
                daemon=True,
            )
            for idx in range(workers)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

    def _worker(self, idx: int, pod: str, stop: threading.Event, waiter: _IdleWaiter) -> None:
        if self.on_worker_start is not None:
            self.on_worker_start(pod)
        locked_by = f"{pod}-w{idx}"
        try:
            if stop.is_set():
                return
            conn = self.connect()
            try:
                self._loop(conn, locked_by, stop, waiter)
            finally:
                conn.close()
        except Exception:
            logger.exception("imgsync worker: crash in worker %d (%s)", idx, locked_by)
        finally:
            if self.on_worker_stop is not None:
                self.on_worker_stop(pod)

    def _idle_delay(self, idle_rounds: int) -> float:
        base = max(self.idle_base_delay, 0.0)
        return min(base * (2 ** min(idle_rounds, 32)), max(self.idle_max_delay, base))

    def _loop(self, conn: Any, locked_by: str, stop: threading.Event, waiter: _IdleWaiter) -> None:
        idle_rounds = 0
        while not stop.is_set():
            try:
                job = lease_job(conn, locked_by, paramstyle=self.paramstyle)
            except Exception:
                logger.exception("imgsync worker: lease error (%s)", locked_by)
                job = None
            if job is None:
                # Empty queue and DB errors share the same backoff schedule.
                if self.on_lease_attempt is not None:
                    self.on_lease_attempt(False)
                waiter.wait(self._idle_delay(idle_rounds), stop)
                idle_rounds += 1
                continue

            idle_rounds = 0
            if self.on_lease_attempt is not None:
                self.on_lease_attempt(True)
            waiter.wake_all()
            self._handle(conn, locked_by, job)
            if self.on_finish is not None:
                self.on_finish(job)

    def _handle(self, conn: Any, locked_by: str, job: Job) -> None:
        try:
            source = self.source_for(job.src_protocol)
        except Exception as exc:
            self._mark_dead(conn, job, exc, "source-factory")
            return
        try:
            transport = self.transport_for(job.dst_protocol)
        except Exception as exc:
            self._mark_dead(conn, job, exc, "transport-factory")
            return
        deps = Deps(
            pool=conn,
            locked_by=locked_by,
            source=source,
            transport=transport,
            paramstyle=self.paramstyle,
        )
        try:
            process_job(deps, job)
        except Exception:
            logger.exception("imgsync worker: recording outcome of job %d failed", job.id)

    def _mark_dead(self, conn: Any, job: Job, error: BaseException, stage: str) -> None:
        try:
            _write_terminal(
                conn,
                job,
                "dead",
                "dead",
                {"error": str(error), "stage": stage},
                job.attempts + 1,
                self.paramstyle,
            )
        except Exception:
            logger.exception("imgsync worker: marking job %d dead failed", job.id)