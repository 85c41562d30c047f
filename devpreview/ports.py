"""TCP port allocation for dev servers.

Ports are probed sequentially from a base value: the first port that can be
bound on the configured host and on both loopback addresses (and is released
straight away) wins.  Ports handed out by an allocator stay reserved
in-process until :meth:`PortAllocator.release` is called, so repeated
allocations never return the same port twice.

Binding and releasing narrows the race against other processes on the host
but cannot close it; a dev server that then fails to bind its port surfaces
as a spawn failure.
"""

from __future__ import annotations

import asyncio
import errno
import socket
from typing import Iterable


class PortExhausted(Exception):
    """Raised when no free port exists in the scan window."""

    def __init__(self, base_port: int, max_attempts: int) -> None:
        self.base_port = base_port
        self.max_attempts = max_attempts
        super().__init__(
            f"No free port in {base_port}-{base_port + max_attempts - 1}"
        )


LOOPBACK_HOSTS = ("127.0.0.1", "::1")


def _family(host: str) -> socket.AddressFamily:
    return socket.AF_INET6 if ":" in host else socket.AF_INET


def can_bind(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` if a listening socket can be bound on *host:port*.

    Raises:
        OSError: If *host* is not a usable local address.
    """
    with socket.socket(_family(host), socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
            sock.listen(1)
        except OSError as exc:
            if exc.errno in (errno.EADDRINUSE, errno.EACCES):
                return False
            raise
    return True


def port_is_free(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` if *port* is unbound on *host* and on both loopbacks.

    Dev servers often bind ``localhost`` as ``::1`` only, which an IPv4 bind
    does not see.  A loopback address this machine lacks is skipped.
    """
    if not can_bind(port, host):
        return False
    for loopback in LOOPBACK_HOSTS:
        if loopback == host:
            continue
        try:
            if not can_bind(port, loopback):
                return False
        except OSError as exc:
            if exc.errno not in (errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT):
                raise
    return True


def has_listener(port: int, host: str = "127.0.0.1", timeout: float = 0.5) -> bool:
    """Return ``True`` if something accepts TCP connections on *host:port*."""
    try:
        sock = socket.socket(_family(host), socket.SOCK_STREAM)
    except OSError:
        return False
    with sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


def port_in_use(port: int, host: str = "127.0.0.1") -> bool:
    """Return ``True`` if *port* accepts connections on *host* or a loopback."""
    hosts = dict.fromkeys((host, *LOOPBACK_HOSTS))
    return any(has_listener(port, candidate) for candidate in hosts)


class PortAllocator:
    """Hands out distinct, currently-unbound ports.

    Parameters
    ----------
    host:
        Interface the bind probe uses.
    """

    def __init__(self, host: str = "127.0.0.1") -> None:
        self.host = host
        self._reserved: set[int] = set()
        self._lock = asyncio.Lock()

    @property
    def reserved(self) -> frozenset[int]:
        return frozenset(self._reserved)

    async def allocate(self, base_port: int, max_attempts: int) -> int:
        """Reserve and return the lowest free port in the window.

        Args:
            base_port: First port to try.
            max_attempts: Number of consecutive ports to probe.

        Raises:
            PortExhausted: If every port in the window is bound or reserved.
        """
        async with self._lock:
            for port in range(base_port, min(base_port + max_attempts, 65536)):
                if port in self._reserved:
                    continue
                if port_is_free(port, self.host):
                    self._reserved.add(port)
                    return port
        raise PortExhausted(base_port, max_attempts)

    def release(self, port: int | None) -> None:
        """Return *port* to the pool.  Unknown ports are ignored."""
        if port is not None:
            self._reserved.discard(port)

    def claim(self, port: int) -> None:
        """Mark *port* as reserved without probing (adopted servers)."""
        self._reserved.add(port)

    async def find_listeners(self, ports: Iterable[int]) -> list[int]:
        """Return the ports in *ports* that currently accept connections."""
        candidates = list(ports)
        results = await asyncio.gather(
            *(asyncio.to_thread(port_in_use, port, self.host) for port in candidates)
        )
        return [port for port, busy in zip(candidates, results) if busy]
