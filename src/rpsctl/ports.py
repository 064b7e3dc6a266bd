"""Port allocation helpers for rpsctl.

A port is *in use* when either a live socket on the host is bound to it or an
existing override artifact declares it. Suggestions come from a deliberately
narrow range so that exhaustion is visible to the operator instead of drifting
into arbitrary ports.
"""
from __future__ import annotations

import errno
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

import psutil

from .config import PORT_MAX, PORT_MIN
from .errors import ConflictError, ValidationError
from .state import InstanceRegistry


class PortsError(RuntimeError):
    """Base class for port allocation failures."""


class PortValidationError(PortsError, ValidationError):
    """Raised when a requested port is malformed or out of range."""


class PortConflictError(PortsError, ConflictError):
    """Raised when a requested port is already bound or declared."""

    def __init__(self, port: int, reason: str) -> None:
        """Record the conflicting port and the reason it is taken."""
        super().__init__(f"Port {port} is already in use ({reason}).")
        self.port = port
        self.reason = reason


class PortRangeExhaustedError(PortsError, ValidationError):
    """Raised when every port in the suggestion range is taken."""


def listening_ports() -> set[int]:
    """Return every locally bound TCP/UDP port from the host socket table."""
    ports: set[int] = set()
    for conn in psutil.net_connections(kind="inet"):
        if not conn.laddr:
            continue
        if conn.type == socket.SOCK_STREAM and conn.status != psutil.CONN_LISTEN:
            continue
        if conn.type == socket.SOCK_DGRAM and conn.raddr:
            continue
        ports.add(conn.laddr.port)
    return ports


def _check_bind(family: int, addr: str, port: int) -> bool | None:
    sock = None
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            try:
                sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            except OSError:
                pass
        sock.bind((addr, port))
        return True
    except OSError as exc:
        if exc.errno in (errno.EAFNOSUPPORT, errno.EADDRNOTAVAIL, errno.EINVAL):
            return None
        return False
    finally:
        if sock is not None:
            sock.close()


def port_bound_by_probe(port: int) -> bool:
    """Return ``True`` when binding *port* locally fails."""
    for family, addr in ((socket.AF_INET, "0.0.0.0"), (socket.AF_INET6, "::")):
        if _check_bind(family, addr, port) is False:
            return True
    return False


@dataclass(slots=True)
class SocketTable:
    """Live socket view; falls back to bind probes when psutil is denied."""

    lister: Callable[[], set[int]] = listening_ports
    prober: Callable[[int], bool] = port_bound_by_probe

    def is_bound(self, port: int) -> bool:
        """Return ``True`` when something on the host is bound to *port*."""
        try:
            return port in self.lister()
        except psutil.AccessDenied:
            return self.prober(port)


@dataclass(slots=True)
class PortAllocator:
    """Decide whether ports are free and suggest the lowest free one."""

    registry: InstanceRegistry
    range_start: int = 6380
    range_end: int = 6400
    sockets: SocketTable = field(default_factory=SocketTable)

    def __post_init__(self) -> None:
        """Validate the suggestion range."""
        if self.range_start > self.range_end:
            raise PortsError(
                f"Port range start {self.range_start} exceeds end {self.range_end}."
            )

    def conflict_reason(self, port: int, *, ignore_site: str | None = None) -> str | None:
        """Return why *port* is taken, or ``None`` when it is free."""
        if self.sockets.is_bound(port):
            return "live socket bound"
        for summary in self.registry.list_instances():
            if summary.site == ignore_site:
                continue
            if summary.port == port:
                return f"declared by site '{summary.site}'"
        return None

    def is_port_in_use(self, port: int) -> bool:
        """Return ``True`` when *port* is bound or declared by any override."""
        return self.conflict_reason(port) is not None

    def suggest_port(self, *, exclude: Iterable[int] = ()) -> int:
        """Return the lowest free port in the configured range."""
        skipped = set(exclude) | self.registry.allocated_ports()
        for candidate in range(self.range_start, self.range_end + 1):
            if candidate in skipped:
                continue
            if not self.sockets.is_bound(candidate):
                return candidate
        raise PortRangeExhaustedError(
            f"Could not find an available port between {self.range_start}-{self.range_end}."
        )

    def validate_port(self, value: int | str, *, owner: str | None = None) -> int:
        """Parse and check an operator supplied port.

        When *owner* is given, the port its own override already declares is
        accepted even though its running instance is bound to it.
        """
        port = parse_port(value)
        if owner is not None and self._declared_by(owner) == port:
            return port
        reason = self.conflict_reason(port)
        if reason is not None:
            raise PortConflictError(port, reason)
        return port

    def reserve(self, port: int, site: str) -> int:
        """Re-check *port* immediately before *site* commits it.

        The site's own override is ignored so that re-applying a run which has
        already written it does not collide with itself, and a port the site
        already declares may still be bound by its running instance.
        """
        if self._declared_by(site) == port:
            return port
        reason = self.conflict_reason(port, ignore_site=site)
        if reason is not None:
            raise PortConflictError(port, reason)
        return port

    def _declared_by(self, site: str) -> int | None:
        summary = self.registry.lookup(site)
        return summary.port if summary is not None else None


def parse_port(value: int | str) -> int:
    """Return *value* as a port number within 1024-65535."""
    if isinstance(value, bool):
        raise PortValidationError(f"Invalid port {value!r}.")
    if isinstance(value, int):
        port = value
    else:
        text = str(value).strip()
        if not text.isdigit():
            raise PortValidationError(
                f"Invalid port '{text}'. Please enter a number between {PORT_MIN} and {PORT_MAX}."
            )
        port = int(text)
    if port < PORT_MIN or port > PORT_MAX:
        raise PortValidationError(
            f"Invalid port {port}. Please enter a number between {PORT_MIN} and {PORT_MAX}."
        )
    return port


__all__ = [
    "PortAllocator",
    "PortConflictError",
    "PortRangeExhaustedError",
    "PortValidationError",
    "PortsError",
    "SocketTable",
    "listening_ports",
    "parse_port",
]
