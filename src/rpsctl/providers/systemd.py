"""Systemd provider for managing per-site Redis service units."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import LifecycleError, MutationError
from ..fsutils import atomic_write_text, read_text_or_none
from ..modes import Mode
from ..paths import InstancePaths

UNIT_MODE = 0o644
UNIT_KEYS = ("Description", "ExecStart", "PIDFile", "Alias")


class SystemdError(LifecycleError):
    """Raised when systemd operations fail."""


class UnitWriteError(MutationError):
    """Raised when a unit file cannot be written or its ownership applied."""


@dataclass(slots=True)
class UnitMaterializeResult:
    """Outcome of materialising a unit file."""

    path: Path
    changed: bool
    reused: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"path": str(self.path), "changed": self.changed, "reused": self.reused}


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd service units for per-site instances."""

    stock_unit: Path = Path("/lib/systemd/system/redis-server.service")
    primary_config: Path = Path("/etc/redis/redis.conf")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def render_unit(self, paths: InstancePaths) -> str:
        """Return the stock unit rewritten for *paths*.

        Always starts from the pristine stock unit; substituting an already
        rewritten unit would corrupt it.
        """
        try:
            stock = self.stock_unit.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise SystemdError(f"Stock unit {self.stock_unit} not found.") from exc
        except OSError as exc:
            raise SystemdError(f"Stock unit {self.stock_unit} could not be read: {exc}") from exc
        return rewrite_unit(stock, paths, primary_config=self.primary_config)

    def materialize_unit(self, paths: InstancePaths, mode: Mode) -> UnitMaterializeResult:
        """Write the unit file for *paths* unless a reconfigure can reuse it."""
        if mode is Mode.RECONFIGURE and paths.unit_file.is_file():
            return UnitMaterializeResult(path=paths.unit_file, changed=False, reused=True)
        try:
            content = self.render_unit(paths)
        except SystemdError as exc:
            raise UnitWriteError(f"Failed to render unit file {paths.unit_file}: {exc}") from exc
        try:
            if read_text_or_none(paths.unit_file) == content:
                return UnitMaterializeResult(path=paths.unit_file, changed=False)
            atomic_write_text(paths.unit_file, content, mode=UNIT_MODE)
            if os.geteuid() == 0:
                shutil.chown(paths.unit_file, user="root", group="root")
        except (OSError, LookupError) as exc:
            raise UnitWriteError(f"Failed to write unit file {paths.unit_file}: {exc}") from exc
        return UnitMaterializeResult(path=paths.unit_file, changed=True)

    def daemon_reload(self) -> subprocess.CompletedProcess[str]:
        """Ask systemd to re-read unit files."""
        return self._systemctl("daemon-reload")

    def enable(
        self, paths: InstancePaths, *, dry_run: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Enable the instance unit."""
        return self._systemctl("enable", paths.unit_name, dry_run=dry_run)

    def start(
        self, paths: InstancePaths, *, dry_run: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Start the instance unit."""
        return self._systemctl("start", paths.unit_name, dry_run=dry_run)

    def stop(
        self, paths: InstancePaths, *, dry_run: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Stop the instance unit."""
        return self._systemctl("stop", paths.unit_name, dry_run=dry_run)

    def restart(
        self, paths: InstancePaths, *, dry_run: bool = False
    ) -> subprocess.CompletedProcess[str]:
        """Restart the instance unit."""
        return self._systemctl("restart", paths.unit_name, dry_run=dry_run)

    def is_active(self, paths: InstancePaths) -> bool:
        """Return ``True`` when systemd reports the unit as active."""
        result = self._systemctl("is-active", paths.unit_name, check=False)
        return result.returncode == 0

    def status(self, paths: InstancePaths) -> subprocess.CompletedProcess[str]:
        """Return the status output for the unit."""
        return self._systemctl("status", paths.unit_name, check=False, dry_run=False)

    def logs(
        self,
        paths: InstancePaths,
        *,
        lines: int | None = None,
        since: str | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for the unit."""
        args: list[str] = ["--unit", paths.unit_name, "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        if follow:
            args.append("--follow")
        return self._journalctl(args, capture_output=not follow)

    def log_hint(self, paths: InstancePaths) -> str:
        """Return the command an operator should run to inspect failures."""
        return f"{self.journalctl_bin} -u {paths.unit_name}"

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        check: bool = True,
        dry_run: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit_or_path is not None:
            args.append(str(unit_or_path))
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
            dry_run=dry_run,
        )

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
            capture_output=capture_output,
            dry_run=False,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
        dry_run: bool,
    ) -> subprocess.CompletedProcess[str]:
        if dry_run:
            return subprocess.CompletedProcess(
                list(args),
                returncode=0,
                stdout="",
                stderr="",
            )
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def rewrite_unit(stock: str, paths: InstancePaths, *, primary_config: Path) -> str:
    """Rewrite the four site-scoped keys of a stock unit for *paths*."""
    seen: set[str] = set()
    lines: list[str] = []
    for line in stock.splitlines():
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or key not in UNIT_KEYS:
            lines.append(line)
            continue
        seen.add(key)
        if key == "Description":
            value = f"{value.rstrip()} for {paths.site}"
        elif key == "ExecStart":
            value = _redirect_config(value, paths.base_config, primary_config)
        elif key == "PIDFile":
            value = str(paths.unit_pid_file)
        else:
            value = paths.alias
        lines.append(f"{key}={value}")
    missing = [key for key in UNIT_KEYS if key not in seen]
    if missing:
        raise SystemdError(f"Stock unit is missing required keys: {', '.join(missing)}.")
    trailer = "\n" if stock.endswith("\n") else ""
    return "\n".join(lines) + trailer


def _redirect_config(exec_start: str, base_config: Path, primary_config: Path) -> str:
    tokens = exec_start.split()
    if not tokens:
        raise SystemdError("Stock unit has an empty ExecStart= line.")
    for index, token in enumerate(tokens[1:], start=1):
        if token == str(primary_config):
            tokens[index] = str(base_config)
            return " ".join(tokens)
    tokens.insert(1, str(base_config))
    return " ".join(tokens)


__all__ = [
    "SystemdError",
    "SystemdProvider",
    "UnitMaterializeResult",
    "UnitWriteError",
    "rewrite_unit",
]
