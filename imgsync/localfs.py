"""Local filesystem source and transport."""

from __future__ import annotations

import contextlib
import hashlib
import os
import stat
import tempfile
from typing import BinaryIO, Tuple

from imgsync.errors import PermanentError, SkippableError

_CHUNK_SIZE = 64 * 1024


class LocalSource:
    """Reads files from the local filesystem."""

    def open(self, src: str) -> Tuple[BinaryIO, int]:
        """Open ``src`` for binary reading and return ``(file, size)``.

        A missing file raises SkippableError; a directory raises PermanentError.
        Any other failure propagates as the underlying OSError.
        """
        try:
            info = os.stat(src)
        except FileNotFoundError as exc:
            raise SkippableError(f"localfs: stat {src}: no such file") from exc
        if stat.S_ISDIR(info.st_mode):
            raise PermanentError(f"localfs: {src} is a directory")
        body = open(src, "rb")
        return body, info.st_size


class LocalTransport:
    """Writes streamed bodies to the local filesystem with an atomic rename."""

    def send(self, dst: str, body: BinaryIO, expected_size: int = -1) -> Tuple[int, str]:
        """Stream ``body`` into a temp file beside ``dst``, fsync, and rename it.

        Returns the number of bytes written and the lowercase hex sha256 of
        the streamed bytes. On any failure the temp file is removed and
        ``dst`` is left untouched.
        """
        directory = os.path.dirname(dst) or "."
        fd, tmp_path = tempfile.mkstemp(prefix=".imgsync-", suffix=".tmp", dir=directory)
        hasher = hashlib.sha256()
        written = 0
        try:
            with os.fdopen(fd, "wb") as tmp:
                for chunk in iter(lambda: body.read(_CHUNK_SIZE), b""):
                    tmp.write(chunk)
                    hasher.update(chunk)
                    written += len(chunk)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_path, dst)
        except BaseException:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise
        return written, hasher.hexdigest()