"""
Tests for TCP port allocation.
"""
import socket
from concurrent.futures import ThreadPoolExecutor

import pytest

from forgetest_mcp.errors import PortExhaustedError
from forgetest_mcp.ports import (
    PortAllocator,
    PortRange,
    find_available_port,
    is_port_available,
)


@pytest.fixture
def busy_port():
    """A port held by a listening socket for the duration of the test."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    yield sock.getsockname()[1]
    sock.close()


def test_busy_port_is_not_available(busy_port):
    assert is_port_available(busy_port) is False


def test_find_available_port_skips_busy_port(busy_port):
    """Scan is ascending and skips the bound port."""
    port = find_available_port(busy_port, busy_port + 20)
    assert busy_port < port <= busy_port + 20


def test_find_available_port_exhausted(busy_port):
    with pytest.raises(PortExhaustedError) as exc_info:
        find_available_port(busy_port, busy_port)

    assert exc_info.value.low == busy_port
    assert str(busy_port) in str(exc_info.value)


def test_find_available_port_empty_range():
    with pytest.raises(PortExhaustedError):
        find_available_port(5000, 4999)


def test_port_range_validation():
    with pytest.raises(ValueError):
        PortRange(0, 100)
    with pytest.raises(ValueError):
        PortRange(1000, 70000)
    assert str(PortRange(2222, 2300)) == "2222-2300"


class TestPortAllocator:
    """Test claim/release behaviour of PortAllocator."""

    def test_allocations_are_distinct_until_released(self, busy_port):
        allocator = PortAllocator()
        port_range = PortRange(busy_port + 1, busy_port + 30)

        first = allocator.allocate(port_range)
        second = allocator.allocate(port_range)

        assert first != second
        assert allocator.claimed == {first, second}

        allocator.release(first)
        assert allocator.allocate(port_range) == first

    def test_allocate_exhausted_by_claims(self, busy_port):
        allocator = PortAllocator()
        free_port = find_available_port(busy_port + 1, busy_port + 30)
        port_range = PortRange(free_port, free_port)

        allocator.allocate(port_range)
        with pytest.raises(PortExhaustedError):
            allocator.allocate(port_range)

    def test_release_unknown_port_is_noop(self):
        allocator = PortAllocator()
        allocator.release(None)
        allocator.release(12345)
        assert allocator.claimed == set()

    def test_concurrent_allocations_never_collide(self, busy_port):
        allocator = PortAllocator()
        port_range = PortRange(busy_port + 1, busy_port + 60)

        with ThreadPoolExecutor(max_workers=8) as pool:
            ports = list(pool.map(lambda _: allocator.allocate(port_range), range(16)))

        assert len(set(ports)) == 16
