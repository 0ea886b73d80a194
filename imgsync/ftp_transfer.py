"""FTP source and transport built on the pooled FTP connections.

Connections follow the ``ftplib.FTP`` interface (``size``, ``voidcmd``,
``transfercmd``, ``voidresp``, ``storbinary``, ``rename``, ``delete``, ``mkd``).
"""

from __future__ import annotations

import contextlib
import hashlib
import io
import posixpath
from typing import Any, BinaryIO, Optional, Tuple
from urllib.parse import unquote, urlsplit

from imgsync.errors import PermanentError, SkippableError
from imgsync.ftp_pool import FtpPool, PooledConn

TMP_SUFFIX = ".imgsync.tmp"


def _split_url(url: str) -> Tuple[str, str, str]:
    """Return ``(scheme, host[:port], decoded path)``; raises ValueError if unparsable."""
    parts = urlsplit(url)
    host = parts.netloc.rpartition("@")[2]
    return parts.scheme, host, unquote(parts.path)


def is_not_found(err: Optional[BaseException]) -> bool:
    """Tell whether an FTP error means the requested file does not exist.

    Explicit missing-file phrases always count. A bare 550 counts too, unless
    the message mentions a permission problem, which is a misconfiguration.
    """
    if err is None:
        return False
    msg = str(err).lower()
    missing = any(
        phrase in msg
        for phrase in ("no such file", "not found", "file unavailable", "does not exist")
    )
    has_550 = "550" in msg
    perm = "permission" in msg or "access denied" in msg
    return missing or (has_550 and not perm)


class _RetrReader(io.RawIOBase):
    """Streams a RETR data connection and hands the control connection back on close."""

    def __init__(self, sock: Any, pooled: PooledConn) -> None:
        super().__init__()
        self._sock = sock
        self._file = sock.makefile("rb")
        self._pooled = pooled
        self._io_error: Optional[BaseException] = None

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        try:
            return self._file.readinto(buffer)
        except Exception as exc:
            self._io_error = exc
            raise

    def close(self) -> None:
        if self.closed:
            return
        close_error: Optional[BaseException] = None
        try:
            self._file.close()
            self._sock.close()
            self._pooled.conn.voidresp()
        except Exception as exc:
            close_error = exc
        finally:
            super().close()
            self._pooled.release(broken=self._io_error is not None or close_error is not None)
        if close_error is not None:
            raise close_error


class FtpSource:
    """Streams files from FTP servers through a shared connection pool."""

    def __init__(self, pool: FtpPool) -> None:
        self._pool = pool

    def open(self, src: str) -> Tuple[BinaryIO, int]:
        """Open ``ftp://host[:port]/path`` and return ``(stream, size)``.

        The size is -1 when the server does not report it. Closing the stream
        returns the connection to the pool. A malformed URI raises
        PermanentError; a missing file raises SkippableError.
        """
        try:
            scheme, host, path = _split_url(src)
        except ValueError as exc:
            raise PermanentError(f"ftp source: parse {src!r}") from exc
        if scheme != "ftp":
            raise PermanentError(f"ftp source: scheme {scheme!r} not supported")
        if not host:
            raise PermanentError(f"ftp source: empty host in {src!r}")
        if not path:
            raise PermanentError(f"ftp source: empty path in {src!r}")

        pooled = self._pool.acquire(host)
        conn = pooled.conn

        size = -1
        try:
            reported = conn.size(path)
            if reported is not None:
                size = int(reported)
        except Exception:
            size = -1

        try:
            conn.voidcmd("TYPE I")
            sock = conn.transfercmd("RETR " + path)
        except BaseException as exc:
            pooled.release(broken=True)
            if isinstance(exc, Exception) and is_not_found(exc):
                raise SkippableError(f"ftp source: retr {path}: {exc}") from exc
            raise

        return _RetrReader(sock, pooled), size


class _HashingReader:
    """Counts and hashes every byte read from the wrapped stream."""

    def __init__(self, body: BinaryIO) -> None:
        self._body = body
        self.hasher = hashlib.sha256()
        self.count = 0

    def read(self, size: int = -1) -> bytes:
        data = self._body.read(size)
        if data:
            self.hasher.update(data)
            self.count += len(data)
        return data


class FtpTransport:
    """Stores bodies on FTP servers via a temp file and a rename."""

    def __init__(self, pool: FtpPool) -> None:
        self._pool = pool

    def send(self, dst: str, body: BinaryIO, expected_size: int = -1) -> Tuple[int, str]:
        """Stream ``body`` to ``ftp://host/path`` and return ``(bytes, sha256_hex)``.

        The upload goes to ``path + ".imgsync.tmp"`` and is renamed to the
        final path once the server acknowledges it. On failure the temp file
        is removed where possible and the connection is discarded.
        """
        try:
            scheme, host, final_path = _split_url(dst)
        except ValueError:
            scheme, host, final_path = "", "", ""
        if scheme != "ftp" or not host or not final_path:
            raise ValueError(f"ftp transport: invalid dst {dst!r}")

        tmp_path = final_path + TMP_SUFFIX
        tmp_rel = tmp_path.removeprefix("/")
        final_rel = final_path.removeprefix("/")

        pooled = self._pool.acquire(host)
        conn = pooled.conn

        directory = posixpath.dirname(final_path)
        if directory not in ("/", ".", ""):
            # Single level only; existing directories report an error we ignore.
            with contextlib.suppress(Exception):
                conn.mkd(directory)

        reader = _HashingReader(body)
        try:
            conn.storbinary("STOR " + tmp_rel, reader)
        except BaseException:
            with contextlib.suppress(Exception):
                conn.delete(tmp_rel)
            pooled.release(broken=True)
            raise

        try:
            conn.rename(tmp_rel, final_rel)
        except BaseException:
            with contextlib.suppress(Exception):
                conn.delete(tmp_rel)
            pooled.release(broken=True)
            raise

        pooled.release(broken=False)
        return reader.count, reader.hasher.hexdigest()