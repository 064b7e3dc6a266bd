"""Single source of truth for per-site filesystem naming.

Every artifact location is derived here from the site name and the host layout.
Other modules receive an :class:`InstancePaths` instead of building paths
themselves.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .errors import ValidationError

OVERRIDE_PREFIX = "overrides."
OVERRIDE_SUFFIX = ".conf"
_SITE_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


class SiteNameError(ValidationError):
    """Raised when a site name cannot be used to derive artifact paths."""


def validate_site_name(name: str) -> str:
    """Validate and normalise a site name."""
    normalised = name.strip()
    if not normalised:
        raise SiteNameError("Site name must be a non-empty string.")
    if not _SITE_PATTERN.fullmatch(normalised):
        raise SiteNameError(
            f"Site name '{normalised}' must match [A-Za-z0-9][A-Za-z0-9._-]*."
        )
    return normalised


@dataclass(frozen=True, slots=True)
class InstanceLayout:
    """Host-wide directories and prefixes that site paths are built from."""

    config_root: Path
    sites_dir: Path
    unit_dir: Path
    run_dir: Path
    unit_run_dir: Path
    log_dir: Path
    config_prefix: str = "redis"
    service_prefix: str = "redis-server"
    alias_prefix: str = "redis"

    @classmethod
    def from_config(cls, config: AppConfig) -> InstanceLayout:
        """Build the layout from the loaded configuration."""
        return cls(
            config_root=config.redis.config_root,
            sites_dir=config.redis.sites_dir,
            unit_dir=config.systemd.unit_dir,
            run_dir=config.redis.run_dir,
            unit_run_dir=config.redis.unit_run_dir,
            log_dir=config.redis.log_dir,
            config_prefix=config.redis.config_prefix,
            service_prefix=config.redis.service_prefix,
            alias_prefix=config.redis.alias_prefix,
        )

    def override_path(self, site: str) -> Path:
        """Return the override artifact path for *site*."""
        return self.sites_dir / f"{OVERRIDE_PREFIX}{site}{OVERRIDE_SUFFIX}"

    def site_from_override(self, path: Path) -> str | None:
        """Extract the site name from an override filename, if it matches."""
        name = path.name
        if not (name.startswith(OVERRIDE_PREFIX) and name.endswith(OVERRIDE_SUFFIX)):
            return None
        site = name[len(OVERRIDE_PREFIX) : -len(OVERRIDE_SUFFIX)]
        return site or None

    def for_site(self, site: str) -> InstancePaths:
        """Return every path belonging to *site*."""
        validated = validate_site_name(site)
        service = f"{self.service_prefix}-{validated}"
        return InstancePaths(
            site=validated,
            base_config=self.config_root / f"{self.config_prefix}.{validated}.conf",
            override_config=self.override_path(validated),
            unit_file=self.unit_dir / f"{service}.service",
            unit_name=f"{service}.service",
            alias=f"{self.alias_prefix}-{validated}.service",
            pid_file=self.run_dir / f"{service}.pid",
            unit_pid_file=self.unit_run_dir / f"{service}.pid",
            log_file=self.log_dir / f"{service}.log",
            data_file=f"dump-{validated}.rdb",
        )


@dataclass(frozen=True, slots=True)
class InstancePaths:
    """Filesystem locations and names belonging to one site's instance."""

    site: str
    base_config: Path
    override_config: Path
    unit_file: Path
    unit_name: str
    alias: str
    pid_file: Path
    unit_pid_file: Path
    log_file: Path
    data_file: str

    @property
    def include_directive(self) -> str:
        """Return the line that makes the base config load the overrides."""
        return f"include {self.override_config}"

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "base_config": str(self.base_config),
            "override_config": str(self.override_config),
            "unit_file": str(self.unit_file),
            "unit_name": self.unit_name,
            "alias": self.alias,
            "pid_file": str(self.pid_file),
            "log_file": str(self.log_file),
            "data_file": self.data_file,
        }


__all__ = [
    "InstanceLayout",
    "InstancePaths",
    "SiteNameError",
    "validate_site_name",
]
