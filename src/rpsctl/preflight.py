"""Host preconditions checked before any artifact is written."""
from __future__ import annotations

import os
import pwd
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .config import AppConfig
from .errors import PreconditionError


@dataclass(frozen=True, slots=True)
class PreflightCheck:
    """One precondition and whether the host satisfies it."""

    id: str
    ok: bool
    message: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"id": self.id, "ok": self.ok, "message": self.message}


def _command_exists(command: str) -> bool:
    path = Path(command)
    if path.is_absolute() or (path.parent and str(path.parent) not in {"", "."}):
        return path.exists() and os.access(path, os.X_OK)
    resolved = shutil.which(command)
    return resolved is not None and os.access(resolved, os.X_OK)


def _user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def run_checks(
    config: AppConfig,
    *,
    euid: Callable[[], int] = os.geteuid,
    command_exists: Callable[[str], bool] = _command_exists,
    user_exists: Callable[[str], bool] = _user_exists,
) -> list[PreflightCheck]:
    """Evaluate every precondition without raising."""
    checks: list[PreflightCheck] = []

    if config.require_root:
        is_root = euid() == 0
        checks.append(
            PreflightCheck(
                "root",
                is_root,
                "Running as root."
                if is_root
                else "This command must be run as root. Please use sudo.",
            )
        )

    sites_ok = config.sites_root.is_dir()
    checks.append(
        PreflightCheck(
            "sites-root",
            sites_ok,
            f"Sites root {config.sites_root} present."
            if sites_ok
            else f"Sites root {config.sites_root} does not exist.",
        )
    )

    primary = config.redis.primary_config
    primary_ok = primary.is_file()
    checks.append(
        PreflightCheck(
            "redis-config",
            primary_ok,
            f"Stock Redis config {primary} present."
            if primary_ok
            else f"Stock Redis config {primary} not found; is redis-server installed?",
        )
    )

    stock_unit = config.systemd.stock_unit
    unit_ok = stock_unit.is_file()
    checks.append(
        PreflightCheck(
            "redis-unit",
            unit_ok,
            f"Stock unit {stock_unit} present."
            if unit_ok
            else f"Stock unit {stock_unit} not found; is redis-server installed?",
        )
    )

    server_ok = command_exists(config.redis.server_bin)
    checks.append(
        PreflightCheck(
            "redis-server",
            server_ok,
            f"Redis server binary '{config.redis.server_bin}' available."
            if server_ok
            else f"Redis server binary '{config.redis.server_bin}' not found.",
        )
    )

    systemctl_ok = command_exists(config.systemd.systemctl_bin)
    checks.append(
        PreflightCheck(
            "systemctl",
            systemctl_ok,
            f"systemctl binary '{config.systemd.systemctl_bin}' available."
            if systemctl_ok
            else f"systemctl binary '{config.systemd.systemctl_bin}' not found.",
        )
    )

    user_ok = user_exists(config.redis.user)
    checks.append(
        PreflightCheck(
            "redis-user",
            user_ok,
            f"Service account '{config.redis.user}' exists."
            if user_ok
            else f"Service account '{config.redis.user}' does not exist.",
        )
    )
    return checks


def ensure_preconditions(
    config: AppConfig, **kwargs: Callable[..., object]
) -> list[PreflightCheck]:
    """Raise :class:`PreconditionError` listing every failed check."""
    checks = run_checks(config, **kwargs)  # type: ignore[arg-type]
    failed = [check.message for check in checks if not check.ok]
    if failed:
        raise PreconditionError("Preconditions not met: " + " ".join(failed))
    return checks


__all__ = ["PreflightCheck", "ensure_preconditions", "run_checks"]
