"""Best-effort WordPress integration for freshly provisioned instances.

Once an instance is healthy, the site's WordPress install (if any) is pointed at
the new port and credential through ``wp-cli`` run as the site owner. The
cache-aware plugin is only installed or activated when the operator opts in.
Nothing here is fatal: every failure becomes a warning on the returned
:class:`IntegrationResult`.
"""
from __future__ import annotations

import pwd
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..models import InstanceParameters

_ROOT_LINE = re.compile(r"^\s*root\s+([^;\s]+)\s*;")
_NGINX_WINDOW = 20


@dataclass(slots=True)
class IntegrationResult:
    """What the application integration did, and what it could not do."""

    applied: bool = False
    app_root: Path | None = None
    app_version: str | None = None
    steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "applied": self.applied,
            "app_root": str(self.app_root) if self.app_root is not None else None,
            "app_version": self.app_version,
            "steps": list(self.steps),
            "warnings": list(self.warnings),
        }


class ApplicationConfigurer(Protocol):
    """Capability interface for wiring a site's application to its instance."""

    def configure(
        self,
        params: InstanceParameters,
        *,
        activate_plugin: bool | None = None,
    ) -> IntegrationResult:
        """Point the site's application at the instance described by *params*."""
        ...


class WordPressCommandError(RuntimeError):
    """Raised internally when a wp-cli invocation fails."""


def nginx_root_for(dump: str, site: str) -> Path | None:
    """Return the ``root`` of the first server block naming *site* in ``nginx -T`` output."""
    lines = dump.splitlines()
    for index, line in enumerate(lines):
        stripped = line.strip()
        if not stripped.startswith("server_name") or site not in stripped:
            continue
        for candidate in lines[index + 1 : index + 1 + _NGINX_WINDOW]:
            match = _ROOT_LINE.match(candidate)
            if match:
                return Path(match.group(1))
    return None


@dataclass(slots=True)
class WordPressConfigurer:
    """Configure WordPress through wp-cli executed as the site owner."""

    sites_root: Path = Path("/sites")
    wp_bin: str = "wp"
    nginx_bin: str = "nginx"
    sudo_bin: str = "sudo"
    plugin: str = "spinupwp"
    fallback_root: str = "~/files"
    activate_plugin: bool = False

    def configure(
        self,
        params: InstanceParameters,
        *,
        activate_plugin: bool | None = None,
    ) -> IntegrationResult:
        """Apply port and credential settings, then the plugin if asked; never raises.

        *activate_plugin* overrides the configured default for this run.
        """
        result = IntegrationResult()
        site = params.site
        owner = self.site_owner(site)
        if owner is None:
            result.warnings.append(
                f"Could not determine the owner of {self.sites_root / site}; "
                "skipping WordPress setup."
            )
            return result

        root = self.detect_root(site, owner)
        if root is None:
            result.warnings.append(
                "WordPress installation not found; configure the cache manually."
            )
            return result
        result.app_root = root

        try:
            result.app_version = self._wp(owner, root, ["core", "version"]).stdout.strip()
        except WordPressCommandError:
            result.warnings.append(f"wp-cli could not read a WordPress install at {root}.")
            return result
        result.steps.append(f"detected WordPress {result.app_version} at {root}")

        settings = (
            ("WP_REDIS_PORT", ["config", "set", "WP_REDIS_PORT", str(params.port), "--raw"]),
            ("WP_REDIS_PASSWORD", ["config", "set", "WP_REDIS_PASSWORD", params.credential]),
        )
        for name, args in settings:
            try:
                self._wp(owner, root, args)
            except WordPressCommandError:
                result.warnings.append(f"Failed to set {name} in wp-config.php.")
            else:
                result.steps.append(f"set {name}")

        if activate_plugin is None:
            activate_plugin = self.activate_plugin
        self._ensure_plugin(owner, root, result, activate=activate_plugin)
        result.applied = not result.warnings
        return result

    def site_owner(self, site: str) -> str | None:
        """Return the user owning the site directory."""
        try:
            uid = (self.sites_root / site).stat().st_uid
            return pwd.getpwuid(uid).pw_name
        except (OSError, KeyError):
            return None

    def detect_root(self, site: str, owner: str) -> Path | None:
        """Return the WordPress root from nginx, else the owner's fallback location."""
        try:
            dump = self._run([self.nginx_bin, "-T"])
        except WordPressCommandError:
            dump = None
        if dump is not None:
            root = nginx_root_for(dump.stdout, site)
            if root is not None and (root / "wp-config.php").is_file():
                return root
        try:
            home = Path(pwd.getpwnam(owner).pw_dir)
        except KeyError:
            return None
        fallback = self.fallback_root
        if fallback.startswith("~/"):
            candidate = home / fallback[2:]
        else:
            candidate = Path(fallback)
        if (candidate / "wp-config.php").is_file():
            return candidate
        return None

    # ------------------------------------------------------------------
    def _ensure_plugin(
        self,
        owner: str,
        root: Path,
        result: IntegrationResult,
        *,
        activate: bool,
    ) -> None:
        plugin = self.plugin
        if self._succeeds(owner, root, ["plugin", "is-installed", plugin]):
            if self._succeeds(owner, root, ["plugin", "is-active", plugin]):
                result.steps.append(f"plugin {plugin} already active")
            elif not activate:
                result.steps.append(f"plugin {plugin} left inactive")
            elif self._succeeds(owner, root, ["plugin", "activate", plugin]):
                result.steps.append(f"activated plugin {plugin}")
            else:
                result.warnings.append(f"Failed to activate plugin {plugin}.")
        elif not activate:
            result.steps.append(f"plugin {plugin} not installed")
        elif self._succeeds(owner, root, ["plugin", "install", plugin, "--activate"]):
            result.steps.append(f"installed and activated plugin {plugin}")
        else:
            result.warnings.append(f"Failed to install plugin {plugin}.")

    def _succeeds(self, owner: str, root: Path, args: Sequence[str]) -> bool:
        try:
            self._wp(owner, root, args)
        except WordPressCommandError:
            return False
        return True

    def _wp(self, owner: str, root: Path, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        command = [self.sudo_bin, "-u", owner, self.wp_bin, f"--path={root}", *args]
        return self._run(command)

    def _run(self, command: Sequence[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(command),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            raise WordPressCommandError(f"{command[0]} could not be executed: {exc}") from exc
        if result.returncode != 0:
            raise WordPressCommandError(f"exit {result.returncode}")
        return result


__all__ = [
    "ApplicationConfigurer",
    "IntegrationResult",
    "WordPressConfigurer",
    "nginx_root_for",
]
