"""Tests for port allocation."""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import psutil
import pytest

from rpsctl.errors import ConflictError, ValidationError
from rpsctl.ports import (
    PortAllocator,
    PortConflictError,
    PortRangeExhaustedError,
    PortValidationError,
    PortsError,
    SocketTable,
    parse_port,
)
from rpsctl.state import InstanceRegistry


def _allocator(
    registry: InstanceRegistry,
    bound: set[int] | None = None,
    *,
    start: int = 6380,
    end: int = 6400,
) -> PortAllocator:
    live = set(bound or set())
    return PortAllocator(
        registry,
        range_start=start,
        range_end=end,
        sockets=SocketTable(lister=lambda: set(live), prober=lambda port: False),
    )


def test_suggest_skips_bound_and_declared_ports(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """A live listener on 6380 and an override declaring 6381 yield 6382."""
    make_override("acme", port=6381, memory="256M")
    allocator = _allocator(registry, bound={6380})

    assert allocator.suggest_port() == 6382


def test_suggest_honours_exclusions(registry: InstanceRegistry) -> None:
    """Explicitly excluded ports are skipped."""
    allocator = _allocator(registry)

    assert allocator.suggest_port(exclude=[6380, 6381]) == 6382


def test_suggest_raises_when_range_exhausted(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """Every port taken raises a typed exhaustion error naming the range."""
    make_override("acme", port=6382, memory="256M")
    allocator = _allocator(registry, bound={6380, 6381}, start=6380, end=6382)

    with pytest.raises(PortRangeExhaustedError, match="between 6380-6382"):
        allocator.suggest_port()


def test_is_port_in_use_matches_exact_port_only(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """An override declaring 63800 does not mark 6380 as used."""
    make_override("acme", port=63800, memory="256M")
    allocator = _allocator(registry)

    assert allocator.is_port_in_use(63800) is True
    assert allocator.is_port_in_use(6380) is False


@pytest.mark.parametrize("value", ["80", 1023, 65536, "abc", "", "12.5", True])
def test_parse_port_rejects_out_of_range_and_garbage(value: object) -> None:
    """Ports must be integers between 1024 and 65535."""
    with pytest.raises(PortValidationError):
        parse_port(value)  # type: ignore[arg-type]


def test_validate_port_accepts_free_port(registry: InstanceRegistry) -> None:
    """A free port parses from text and is returned as an int."""
    assert _allocator(registry).validate_port(" 7000 ") == 7000


def test_validate_port_reports_conflict(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """Ports bound on the host or declared by another site conflict."""
    make_override("blog", port=7001, memory="256M")
    allocator = _allocator(registry, bound={7000})

    with pytest.raises(PortConflictError, match="live socket"):
        allocator.validate_port(7000)
    with pytest.raises(PortConflictError, match="site 'blog'"):
        allocator.validate_port(7001)


def test_validate_port_allows_owner_to_keep_its_port(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """A reinstalling site may keep the port its running instance holds."""
    make_override("acme", port=7000, memory="128M")
    allocator = _allocator(registry, bound={7000})

    assert allocator.validate_port(7000, owner="acme") == 7000
    with pytest.raises(PortConflictError):
        allocator.validate_port(7000, owner="blog")


def test_reserve_detects_late_conflict(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """A port claimed by another site after suggestion fails the reserve step."""
    allocator = _allocator(registry)
    port = allocator.suggest_port()
    make_override("blog", port=port, memory="256M")

    with pytest.raises(PortConflictError) as excinfo:
        allocator.reserve(port, "acme")
    assert excinfo.value.retryable is True
    assert excinfo.value.port == port


def test_reserve_ignores_the_sites_own_override(
    registry: InstanceRegistry,
    make_override: Callable[..., Path],
) -> None:
    """Re-applying a run never collides with its own override."""
    make_override("acme", port=6380, memory="256M")
    allocator = _allocator(registry, bound={6380})

    assert allocator.reserve(6380, "acme") == 6380


def test_error_categories() -> None:
    """Port errors slot into the shared taxonomy."""
    assert issubclass(PortValidationError, ValidationError)
    assert issubclass(PortConflictError, ConflictError)
    assert issubclass(PortRangeExhaustedError, ValidationError)


def test_socket_table_falls_back_to_bind_probe() -> None:
    """When psutil is denied the bind probe decides."""

    def denied() -> set[int]:
        raise psutil.AccessDenied()

    probed: list[int] = []

    def prober(port: int) -> bool:
        probed.append(port)
        return port == 6390

    table = SocketTable(lister=denied, prober=prober)

    assert table.is_bound(6390) is True
    assert table.is_bound(6391) is False
    assert probed == [6390, 6391]


def test_invalid_allocator_range(registry: InstanceRegistry) -> None:
    """An inverted range is rejected at construction."""
    with pytest.raises(PortsError, match="exceeds"):
        _allocator(registry, start=6400, end=6380)
