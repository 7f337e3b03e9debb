"""Bookkeeping for in-flight and lifetime firmware downloads."""

import threading
import time
from dataclasses import dataclass
from typing import NamedTuple, Optional, Set, Tuple


class ConnectionId(NamedTuple):
    """Identity of one download: the client's address and ephemeral port."""
    address: str
    port: int

    def __str__(self) -> str:
        return f"{self.address}:{self.port}"


@dataclass(frozen=True)
class DownloadStats:
    """Point-in-time copy of the tracker counters."""
    active: int
    total_served: int
    completed: int
    failed: int
    peak_active: int


class DownloadTracker:
    """
    Thread-safe set of active downloads plus the lifetime download counter.

    Every mutation happens under a single lock so the active count shown in
    the logs never drifts from the number of streams actually running.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._active: Set[ConnectionId] = set()
        self._total_served = 0
        self._completed = 0
        self._failed = 0
        self._peak_active = 0

    def begin(self, conn_id: ConnectionId) -> Tuple[int, int]:
        """
        Register a download that is about to stream.

        Args:
            conn_id: Client address and port of the download

        Returns:
            The download's serial number (the lifetime counter after increment)
            and the number of active downloads including this one

        Raises:
            ValueError: If the same connection is already streaming
        """
        with self._lock:
            if conn_id in self._active:
                raise ValueError(f"Download already active for {conn_id}")
            self._active.add(conn_id)
            self._total_served += 1
            self._peak_active = max(self._peak_active, len(self._active))
            return self._total_served, len(self._active)

    def end(self, conn_id: ConnectionId, success: bool) -> Optional[int]:
        """
        Remove a finished download.

        Args:
            conn_id: Client address and port of the download
            success: Whether every byte was handed to the client

        Returns:
            Number of downloads still active, or None if conn_id was not active
        """
        with self._lock:
            if conn_id not in self._active:
                return None
            self._active.remove(conn_id)
            if success:
                self._completed += 1
            else:
                self._failed += 1
            remaining = len(self._active)
            if remaining == 0:
                self._idle.notify_all()
            return remaining

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no download is active. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while self._active:
                if deadline is None:
                    self._idle.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def total_served(self) -> int:
        with self._lock:
            return self._total_served

    def is_active(self, conn_id: ConnectionId) -> bool:
        with self._lock:
            return conn_id in self._active

    def snapshot(self) -> DownloadStats:
        with self._lock:
            return DownloadStats(
                active=len(self._active),
                total_served=self._total_served,
                completed=self._completed,
                failed=self._failed,
                peak_active=self._peak_active,
            )
