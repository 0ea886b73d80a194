"""Transfer outcome errors and the streaming Source/Transport interfaces."""

from __future__ import annotations

from typing import BinaryIO, Optional, Protocol, Tuple, runtime_checkable


class SkippableError(Exception):
    """The job is intentionally not transferred; mark it 'skipped' (audit only).

    Raised for a missing source file, a destination already holding identical
    content, and similar cases.
    """

    default_message = "skippable: job intentionally not transferred, audit only"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(self.default_message if message is None else message)


class PermanentError(Exception):
    """Retrying will not help; mark the job 'dead' and bypass the retry budget.

    Raised for a malformed source URI, authentication failures, size
    mismatches and anything else that will not change with another attempt.
    """

    default_message = "permanent: do not retry, mark dead"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(self.default_message if message is None else message)


@runtime_checkable
class Source(Protocol):
    """Opens a streaming reader for a source location.

    The caller must close the returned stream. Implementations must not buffer
    the whole body in memory. The returned size is the source's reported byte
    count, or -1 when unknown.
    """

    def open(self, src: str) -> Tuple[BinaryIO, int]:
        """Return ``(body, size)`` for ``src``."""


@runtime_checkable
class Transport(Protocol):
    """Streams a body to a destination.

    Implementations must count the bytes actually written and compute the
    sha256 of the streamed bytes, without buffering the whole body in memory.
    ``expected_size`` is the source's reported byte count, or -1 when unknown.
    """

    def send(self, dst: str, body: BinaryIO, expected_size: int) -> Tuple[int, str]:
        """Return ``(written_bytes, sha256_hex)`` after storing ``body`` at ``dst``."""