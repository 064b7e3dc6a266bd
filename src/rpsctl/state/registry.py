"""Discovery of existing per-site instances.

The override directory (``/etc/redis/sites`` by default) is the registry: each
``overrides.<site>.conf`` file describes one instance and is the authoritative
record of its port and memory ceiling. This module only reads; it never
creates, edits, or removes files.
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

from ..errors import RpsctlError
from ..paths import InstanceLayout, InstancePaths, SiteNameError

STATE_RUNNING = "running"
STATE_STOPPED = "stopped"
STATE_ABSENT = "absent"
UNKNOWN = "unknown"


class ServiceStateQuery(Protocol):
    """Minimal service-manager surface needed for status reporting."""

    def is_active(self, paths: InstancePaths) -> bool:
        """Return ``True`` when the unit for *paths* is active."""
        ...


@dataclass(frozen=True, slots=True)
class InstanceSummary:
    """What the registry knows about one instance."""

    site: str
    override_path: Path
    port: int | None = None
    max_memory: str | None = None
    state: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation with ``unknown`` placeholders."""
        return {
            "site": self.site,
            "port": self.port if self.port is not None else UNKNOWN,
            "max_memory": self.max_memory if self.max_memory is not None else UNKNOWN,
            "status": self.state if self.state is not None else UNKNOWN,
            "override_path": str(self.override_path),
        }


def read_directive(path: Path, keyword: str) -> str | None:
    """Return the value of the first ``<keyword> <value>`` line in *path*."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    for line in text.splitlines():
        parts = line.split(None, 1)
        if len(parts) == 2 and parts[0] == keyword and line.startswith(keyword):
            value = parts[1].strip()
            return value.split()[0] if value else None
    return None


@dataclass(slots=True)
class InstanceRegistry:
    """Enumerate and look up instances from their override artifacts."""

    layout: InstanceLayout

    def list_instances(self) -> list[InstanceSummary]:
        """Return every instance found in the override directory, sorted by site."""
        sites_dir = self.layout.sites_dir
        if not sites_dir.is_dir():
            return []
        summaries: list[InstanceSummary] = []
        for path in sorted(sites_dir.iterdir()):
            if not path.is_file():
                continue
            site = self.layout.site_from_override(path)
            if site is None:
                continue
            summaries.append(self._summarise(site, path))
        return summaries

    def lookup(self, site: str) -> InstanceSummary | None:
        """Return the summary for *site*, or ``None`` when it has no override."""
        path = self.layout.override_path(site)
        if not path.is_file():
            return None
        return self._summarise(site, path)

    def allocated_ports(self) -> set[int]:
        """Return every port declared by an override artifact."""
        return {summary.port for summary in self.list_instances() if summary.port is not None}

    def with_status(
        self,
        services: ServiceStateQuery,
        summaries: Iterable[InstanceSummary] | None = None,
    ) -> list[InstanceSummary]:
        """Annotate summaries with live service state.

        A missing unit file reports ``absent``. Any error while querying the
        service manager is reported as ``stopped`` rather than raised.
        """
        items = self.list_instances() if summaries is None else list(summaries)
        annotated: list[InstanceSummary] = []
        for summary in items:
            annotated.append(replace(summary, state=self._state_for(services, summary.site)))
        return annotated

    # ------------------------------------------------------------------
    def _state_for(self, services: ServiceStateQuery, site: str) -> str:
        try:
            paths = self.layout.for_site(site)
        except SiteNameError:
            return STATE_STOPPED
        if not paths.unit_file.exists():
            return STATE_ABSENT
        try:
            active = services.is_active(paths)
        except (RpsctlError, OSError):
            return STATE_STOPPED
        return STATE_RUNNING if active else STATE_STOPPED

    @staticmethod
    def _summarise(site: str, path: Path) -> InstanceSummary:
        port_raw = read_directive(path, "port")
        port: int | None = None
        if port_raw is not None:
            try:
                port = int(port_raw)
            except ValueError:
                port = None
        return InstanceSummary(
            site=site,
            override_path=path,
            port=port,
            max_memory=read_directive(path, "maxmemory"),
        )


def list_sites(sites_root: Path) -> list[str]:
    """Return the site directories available for provisioning, sorted."""
    if not sites_root.is_dir():
        return []
    return sorted(child.name for child in sites_root.iterdir() if child.is_dir())


__all__ = [
    "InstanceRegistry",
    "InstanceSummary",
    "STATE_ABSENT",
    "STATE_RUNNING",
    "STATE_STOPPED",
    "ServiceStateQuery",
    "list_sites",
    "read_directive",
]
