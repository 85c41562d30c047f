"""Tests for port allocation (devpreview.ports).

Tests cover:
- can_bind / has_listener / port_is_free against real IPv4 and IPv6 sockets
- PortAllocator: lowest free port, skipping bound ports, distinct results,
  exhaustion, release and claim
- find_listeners
"""

from __future__ import annotations

import asyncio
import socket
from unittest.mock import patch

import pytest

from devpreview.ports import (
    PortAllocator,
    PortExhausted,
    can_bind,
    has_listener,
    port_in_use,
    port_is_free,
)


def _listen() -> socket.socket:
    """Bind a listening socket on an ephemeral localhost port."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    return sock


def _listen_v6_loopback() -> socket.socket:
    """Bind a listening socket on an ephemeral ``::1`` port, IPv6 only."""
    if not socket.has_ipv6:
        pytest.skip("IPv6 not supported")
    sock = socket.socket(socket.AF_INET6, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind(("::1", 0))
    except OSError:
        sock.close()
        pytest.skip("IPv6 loopback unavailable")
    sock.listen(1)
    return sock


class TestProbes:
    @pytest.mark.integration
    def test_can_bind_detects_bound_port(self):
        sock = _listen()
        try:
            port = sock.getsockname()[1]
            assert can_bind(port) is False
            assert has_listener(port) is True
        finally:
            sock.close()

    @pytest.mark.integration
    def test_free_port(self):
        sock = _listen()
        port = sock.getsockname()[1]
        sock.close()
        assert has_listener(port) is False

    @pytest.mark.integration
    def test_ipv6_loopback_listener_makes_port_busy(self):
        sock = _listen_v6_loopback()
        try:
            port = sock.getsockname()[1]
            assert port_is_free(port) is False
            assert port_in_use(port) is True
        finally:
            sock.close()


class TestPortAllocator:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_lowest_free_port(self):
        allocator = PortAllocator()
        with patch("devpreview.ports.port_is_free", side_effect=lambda port, host: port >= 5002):
            port = await allocator.allocate(5000, 10)
        assert port == 5002
        assert allocator.reserved == frozenset({5002})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_calls_return_distinct_ports(self):
        allocator = PortAllocator()
        with patch("devpreview.ports.port_is_free", return_value=True):
            ports = [await allocator.allocate(5000, 3) for _ in range(3)]
            with pytest.raises(PortExhausted) as exc_info:
                await allocator.allocate(5000, 3)
        assert ports == [5000, 5001, 5002]
        assert exc_info.value.base_port == 5000
        assert exc_info.value.max_attempts == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_distinct(self):
        allocator = PortAllocator()
        with patch("devpreview.ports.port_is_free", return_value=True):
            ports = await asyncio.gather(*(allocator.allocate(6000, 20) for _ in range(10)))
        assert sorted(ports) == list(range(6000, 6010))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_exhausted_when_everything_bound(self):
        allocator = PortAllocator()
        with patch("devpreview.ports.port_is_free", return_value=False):
            with pytest.raises(PortExhausted):
                await allocator.allocate(5000, 5)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_release_returns_port_to_pool(self):
        allocator = PortAllocator()
        with patch("devpreview.ports.port_is_free", return_value=True):
            first = await allocator.allocate(5000, 1)
            allocator.release(first)
            again = await allocator.allocate(5000, 1)
        assert first == again == 5000

    @pytest.mark.unit
    def test_release_ignores_unknown(self):
        allocator = PortAllocator()
        allocator.release(1234)
        allocator.release(None)
        assert allocator.reserved == frozenset()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_claim_reserves_without_probe(self):
        allocator = PortAllocator()
        allocator.claim(5000)
        with patch("devpreview.ports.port_is_free", return_value=True):
            assert await allocator.allocate(5000, 2) == 5001

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_never_returns_a_bound_port(self):
        sock = _listen()
        try:
            busy = sock.getsockname()[1]
            port = await PortAllocator().allocate(busy, 20)
            assert port != busy
            assert can_bind(port)
        finally:
            sock.close()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_skips_port_with_ipv6_listener(self):
        sock = _listen_v6_loopback()
        try:
            busy = sock.getsockname()[1]
            with pytest.raises(PortExhausted):
                await PortAllocator().allocate(busy, 1)
            assert await PortAllocator().find_listeners([busy]) == [busy]
        finally:
            sock.close()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_find_listeners(self):
        sock = _listen()
        try:
            busy = sock.getsockname()[1]
            free_sock = _listen()
            free = free_sock.getsockname()[1]
            free_sock.close()
            assert await PortAllocator().find_listeners([busy, free]) == [busy]
        finally:
            sock.close()
