from __future__ import annotations

import errno
import logging
import socket
import threading
from typing import Callable, Iterable

from .errors import PortsExhausted

LOGGER = logging.getLogger("runner_fleet.ports")

PortProbe = Callable[[int], bool]


def is_port_free(port: int, host: str = "") -> bool:
    """Return True when nothing on this host is bound to ``port``.

    Binding without SO_REUSEADDR is refused for a listening socket as well as for
    a port still held by another process, which is what a freshly started runner
    would run into.
    """
    for family in (socket.AF_INET, socket.AF_INET6):
        try:
            sock = socket.socket(family, socket.SOCK_STREAM)
        except OSError:
            continue
        with sock:
            try:
                sock.bind((host, port))
            except OSError as exc:
                if exc.errno in (errno.EADDRINUSE, errno.EACCES):
                    return False
                if family == socket.AF_INET6 and exc.errno == errno.EADDRNOTAVAIL:
                    continue
                raise
    return True


class PortAllocator:
    """Hands out ports from a fixed range after probing actual socket state."""

    def __init__(self, range_start: int, range_end: int, probe: PortProbe = is_port_free) -> None:
        if range_end < range_start:
            raise ValueError("range_end must not be smaller than range_start")
        self.range_start = range_start
        self.range_end = range_end
        self._probe = probe
        self._lock = threading.Lock()

    def next_free_port(self, offset: int = 0, skip: Iterable[int] = ()) -> int:
        """Return the first free port at or after ``range_start + offset``."""
        skipped = set(skip)
        port = self.range_start + max(offset, 0)
        while port <= self.range_end:
            if port not in skipped:
                if self._probe(port):
                    return port
                LOGGER.warning("Port %d is busy. Checking the next one...", port)
            port += 1
        raise PortsExhausted(self.range_start, self.range_end, offset)

    def batch(self, offset: int = 0, reserved: Iterable[int] = ()) -> "PortBatch":
        return PortBatch(self, offset=offset, reserved=reserved)


class PortBatch:
    """Port cursor for one scale-up; never issues the same port twice."""

    def __init__(self, allocator: PortAllocator, offset: int = 0, reserved: Iterable[int] = ()) -> None:
        self._allocator = allocator
        self._offset = max(offset, 0)
        self._reserved = set(reserved)
        self.issued: list[int] = []

    def next_port(self) -> int:
        with self._allocator._lock:
            port = self._allocator.next_free_port(
                self._offset, skip=self._reserved.union(self.issued)
            )
            self.issued.append(port)
            self._offset = port - self._allocator.range_start + 1
            return port

    @property
    def offset(self) -> int:
        return self._offset


__all__ = ["PortAllocator", "PortBatch", "is_port_free"]
