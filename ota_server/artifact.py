"""Firmware artifact access: presence/size probe and incremental streaming."""

import logging
import os
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

logger = logging.getLogger(__name__)

# Called once per stream with the error that ended it (None on success)
# and the number of bytes handed out.
FinishCallback = Callable[[Optional[BaseException], int], None]


class ArtifactTruncatedError(OSError):
    """The artifact shrank while it was being streamed."""


class DownloadAbortedError(ConnectionError):
    """The response was closed before every byte was sent."""


class OpenArtifact:
    """An artifact handle opened for one request, with its size at open time."""

    def __init__(self, path: Path, handle: BinaryIO, size: int):
        self.path = path
        self.handle = handle
        self.size = size

    def close(self) -> None:
        self.handle.close()


class Artifact:
    """The binary file served to devices. The server only ever reads it."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def size(self) -> Optional[int]:
        """Get the current size in bytes, or None if the file is missing."""
        try:
            return self.path.stat().st_size
        except OSError:
            return None

    def open(self) -> OpenArtifact:
        """
        Open the artifact read-only and stat the open handle.

        Statting the handle rather than the path keeps the size consistent
        with the bytes that will be read, even if the file is replaced on
        disk right after this call.

        Raises:
            OSError: If the file is missing or cannot be read
        """
        handle = open(self.path, "rb")
        try:
            st = os.fstat(handle.fileno())
        except OSError:
            handle.close()
            raise
        return OpenArtifact(self.path, handle, st.st_size)


class ArtifactStream:
    """
    WSGI body iterable that reads an open artifact in chunks.

    Never yields more than the size declared at open time. The finish
    callback runs exactly once: on exhaustion, on a read error, or when the
    server closes the iterable early because the client went away.

    With defer_abort set, an early close() only releases the file and the
    report waits for abort() or settle(), so a request handler that sees the
    socket error after closing the body can still attach it to the outcome.
    """

    def __init__(self, opened: OpenArtifact, chunk_size: int, on_finish: FinishCallback,
                 defer_abort: bool = False):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._opened = opened
        self._chunk_size = chunk_size
        self._on_finish = on_finish
        self._remaining = opened.size
        self._sent = 0
        self._finished = False
        self._defer_abort = defer_abort
        self._pending: Optional[BaseException] = None

    @property
    def bytes_sent(self) -> int:
        return self._sent

    @property
    def finished(self) -> bool:
        return self._finished

    def __iter__(self):
        return self

    def __next__(self) -> bytes:
        if self._finished:
            raise StopIteration
        if self._remaining <= 0:
            self._finish(None)
            raise StopIteration

        try:
            chunk = self._opened.handle.read(min(self._chunk_size, self._remaining))
        except OSError as e:
            self._finish(e)
            raise StopIteration

        if not chunk:
            self._finish(ArtifactTruncatedError(
                f"{self._opened.path} ended after {self._sent} of {self._opened.size} bytes"
            ))
            raise StopIteration

        self._remaining -= len(chunk)
        self._sent += len(chunk)
        return chunk

    def close(self) -> None:
        if self._finished or self._pending is not None:
            return
        error = DownloadAbortedError(
            f"client disconnected after {self._sent} of {self._opened.size} bytes"
        )
        if self._defer_abort:
            self._pending = error
            self._release()
            return
        self._finish(error)

    def abort(self, error: BaseException) -> None:
        """End the stream with a socket error seen by the server."""
        if not self._finished:
            self._finish(error)

    def settle(self) -> None:
        """Report a deferred early close, or a stream the server never finished."""
        if not self._finished:
            self._finish(self._pending or DownloadAbortedError(
                f"response ended after {self._sent} of {self._opened.size} bytes"
            ))

    def _release(self) -> None:
        try:
            self._opened.close()
        except OSError as e:
            logger.debug(f"Error closing {self._opened.path}: {e}")

    def _finish(self, error: Optional[BaseException]) -> None:
        self._finished = True
        self._release()
        self._on_finish(error, self._sent)
