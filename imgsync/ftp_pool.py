"""Per-host FTP connection pool.

Connections follow the ``ftplib.FTP`` interface; the pool itself only needs
``voidcmd("NOOP")``, ``quit()`` and ``close()``.
"""

from __future__ import annotations

import contextlib
import dataclasses
import ftplib
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple


@dataclass
class PoolConfig:
    """Settings for an FtpPool. Durations are in seconds."""

    max_per_host: int = 4
    idle_ttl: float = 300.0
    noop_after: float = 60.0
    auth_user: str = ""
    auth_password: str = field(default="", repr=False)
    dial_timeout: float = 10.0
    on_pool_change: Optional[Callable[[str, int, int], None]] = None


class PoolClosedError(Exception):
    """Raised by FtpPool.acquire once the pool has been closed."""

    def __init__(self, message: str = "ftp pool: closed") -> None:
        super().__init__(message)


def _discard(conn: Any) -> None:
    try:
        conn.quit()
    except Exception:
        with contextlib.suppress(Exception):
            conn.close()


def _split_host(host: str) -> Tuple[str, int]:
    name, sep, port = host.rpartition(":")
    if not sep or "]" in port or not port.isdigit():
        return host.strip("[]"), 21
    return name.strip("[]"), int(port)


def _dial_ftp(host: str, config: PoolConfig) -> ftplib.FTP:
    name, port = _split_host(host)
    conn = ftplib.FTP(timeout=config.dial_timeout)
    try:
        conn.connect(name, port)
    except Exception as exc:
        raise ConnectionError(f"ftp dial {host}: {exc}") from exc
    try:
        conn.login(config.auth_user, config.auth_password)
    except Exception as exc:
        _discard(conn)
        raise ConnectionError(f"ftp login {host}: {exc}") from exc
    return conn


@dataclass
class _IdleEntry:
    conn: Any
    enqueued: float
    last_use: float


class _HostPool:
    def __init__(self, lock: threading.Lock) -> None:
        self.idle: List[_IdleEntry] = []
        self.in_use = 0
        self.cond = threading.Condition(lock)


class PooledConn:
    """A live connection checked out of an FtpPool.

    Use as a context manager to release it automatically; an exception inside
    the block releases it as broken.
    """

    def __init__(self, conn: Any, host: str, pool: "FtpPool") -> None:
        self.conn = conn
        self.host = host
        self.last_used = time.monotonic()
        self._pool = pool

    def release(self, broken: bool = False) -> None:
        """Return the connection to the pool, or close it if ``broken``."""
        if self.conn is None:
            return
        conn, self.conn = self.conn, None
        self._pool._release(self.host, conn, broken)

    def __enter__(self) -> "PooledConn":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release(broken=exc_type is not None)


class FtpPool:
    """Thread-safe pool of FTP connections, capped per host."""

    def __init__(
        self,
        config: Optional[PoolConfig] = None,
        dialer: Optional[Callable[[str, PoolConfig], Any]] = None,
    ) -> None:
        cfg = config or PoolConfig()
        self.config = dataclasses.replace(
            cfg,
            max_per_host=cfg.max_per_host if cfg.max_per_host > 0 else 4,
            idle_ttl=cfg.idle_ttl if cfg.idle_ttl > 0 else 300.0,
            noop_after=cfg.noop_after if cfg.noop_after > 0 else 60.0,
            dial_timeout=cfg.dial_timeout if cfg.dial_timeout > 0 else 10.0,
        )
        self._dialer = dialer or _dial_ftp
        self._lock = threading.Lock()
        self._hosts: Dict[str, _HostPool] = {}
        self._closed = False

    def __enter__(self) -> "FtpPool":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def acquire(self, host: str, timeout: Optional[float] = None) -> PooledConn:
        """Return a usable connection to ``host``.

        Blocks while ``max_per_host`` connections are in use. Raises
        TimeoutError when ``timeout`` seconds pass first, and PoolClosedError
        once the pool is closed. Dial failures propagate.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            stale: List[Any] = []
            reused: Any = None
            needs_ping = False
            try:
                with self._lock:
                    if self._closed:
                        raise PoolClosedError()
                    hp = self._host(host)
                    now = time.monotonic()
                    while hp.idle:
                        entry = hp.idle.pop()
                        if now - entry.enqueued > self.config.idle_ttl:
                            stale.append(entry.conn)
                            continue
                        needs_ping = now - entry.last_use > self.config.noop_after
                        reused = entry.conn
                        hp.in_use += 1
                        break
                    if reused is None:
                        if hp.in_use >= self.config.max_per_host:
                            remaining = None if deadline is None else deadline - time.monotonic()
                            if remaining is not None and remaining <= 0:
                                raise TimeoutError(
                                    f"ftp pool: timed out waiting for a connection to {host}"
                                )
                            hp.cond.wait(remaining)
                            continue
                        hp.in_use += 1
                    snapshot = (hp.in_use, len(hp.idle))
            finally:
                for conn in stale:
                    _discard(conn)

            self._notify(host, *snapshot)

            if reused is not None:
                if needs_ping:
                    try:
                        reused.voidcmd("NOOP")
                    except Exception:
                        _discard(reused)
                        self._give_back_slot(host)
                        continue
                return PooledConn(reused, host, self)

            try:
                conn = self._dialer(host, self.config)
            except BaseException:
                self._give_back_slot(host)
                raise
            return PooledConn(conn, host, self)

    def close(self) -> None:
        """Drop all idle connections; in-use ones are closed when released."""
        to_close: List[Any] = []
        with self._lock:
            self._closed = True
            for hp in self._hosts.values():
                to_close.extend(entry.conn for entry in hp.idle)
                hp.idle.clear()
                hp.cond.notify_all()
        for conn in to_close:
            _discard(conn)

    def idle_count(self, host: str) -> int:
        """Number of idle connections held for ``host``."""
        with self._lock:
            hp = self._hosts.get(host)
            return len(hp.idle) if hp else 0

    def _host(self, host: str) -> _HostPool:
        hp = self._hosts.get(host)
        if hp is None:
            hp = _HostPool(self._lock)
            self._hosts[host] = hp
        return hp

    def _notify(self, host: str, in_use: int, idle: int) -> None:
        if self.config.on_pool_change is not None:
            self.config.on_pool_change(host, in_use, idle)

    def _give_back_slot(self, host: str) -> None:
        with self._lock:
            hp = self._hosts[host]
            hp.in_use -= 1
            hp.cond.notify()
            snapshot = (hp.in_use, len(hp.idle))
        self._notify(host, *snapshot)

    def _release(self, host: str, conn: Any, broken: bool) -> None:
        discard = False
        snapshot = None
        with self._lock:
            hp = self._hosts.get(host)
            if hp is None:
                discard = True
            else:
                hp.in_use -= 1
                if broken or self._closed:
                    discard = True
                else:
                    now = time.monotonic()
                    hp.idle.append(_IdleEntry(conn, now, now))
                hp.cond.notify()
                snapshot = (hp.in_use, len(hp.idle))
        if discard:
            _discard(conn)
        if snapshot is not None:
            self._notify(host, *snapshot)