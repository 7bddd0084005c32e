"""
Port Allocator - Track host ports handed out to preview sessions.

A port is owned by at most one session at a time. The pool is the only
state shared between sessions, so every read and write goes through one lock.
"""

import threading
from typing import Set

from preview_runtime.errors import PortExhaustion


# Default port range for preview containers (inclusive)
PORT_RANGE_START = 10000
PORT_RANGE_END = 20000


class PortAllocator:
    """Thread-safe pool of host ports in a fixed inclusive range."""

    def __init__(self, start: int = PORT_RANGE_START, end: int = PORT_RANGE_END):
        if start > end:
            raise ValueError(f"Invalid port range {start}-{end}")
        self.start = start
        self.end = end
        self._allocated: Set[int] = set()
        self._lock = threading.Lock()

    @property
    def total(self) -> int:
        return self.end - self.start + 1

    def allocate(self) -> int:
        """
        Allocate the lowest free port in the range.

        Returns:
            The allocated port number

        Raises:
            PortExhaustion: If every port in the range is held
        """
        with self._lock:
            for port in range(self.start, self.end + 1):
                if port not in self._allocated:
                    self._allocated.add(port)
                    return port
        raise PortExhaustion(self.start, self.end)

    def release(self, port: int) -> None:
        """Release a port. Releasing a port that is not held is a no-op."""
        with self._lock:
            self._allocated.discard(port)

    def is_allocated(self, port: int) -> bool:
        with self._lock:
            return port in self._allocated

    def allocated_count(self) -> int:
        with self._lock:
            return len(self._allocated)

    def available_count(self) -> int:
        with self._lock:
            return self.total - len(self._allocated)
