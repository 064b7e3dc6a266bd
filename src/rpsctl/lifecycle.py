"""Drive a provisioned instance through systemd and verify it answers.

A unit that never becomes active and a unit that is active but does not answer
an authenticated ``PING`` are reported as different errors. The first points
at the journal, the second usually means a bad override.
"""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import LifecycleError
from .models import InstanceParameters
from .modes import Mode
from .providers.probe import LivenessProber, ProbeResult
from .providers.systemd import SystemdError, SystemdProvider


class ServiceStartError(LifecycleError):
    """Raised when the unit fails to start or is not active after the settle delay."""


class LivenessProbeError(LifecycleError):
    """Raised when the unit is active but the instance fails its probe."""


@dataclass(frozen=True, slots=True)
class HealthStatus:
    """Observed health of an instance after a lifecycle transition."""

    active: bool
    probe_ok: bool
    attempts: int
    detail: str = ""
    probe: ProbeResult | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "active": self.active,
            "probe_ok": self.probe_ok,
            "attempts": self.attempts,
            "detail": self.detail,
            "probe": self.probe.to_dict() if self.probe is not None else None,
        }


@dataclass(slots=True)
class LifecycleController:
    """Reload, (re)start, and health-check one instance."""

    systemd: SystemdProvider
    prober: LivenessProber
    settle_delay: float = 2.0
    sleep: Callable[[float], None] = time.sleep

    def apply(self, params: InstanceParameters, mode: Mode) -> HealthStatus:
        """Transition the unit for *params* according to *mode*."""
        if mode is Mode.CANCEL:
            raise LifecycleError("A cancelled run has no lifecycle transition.")
        paths = params.paths
        self.systemd.daemon_reload()
        try:
            if mode is Mode.FRESH:
                self.systemd.enable(paths)
                self.systemd.start(paths)
            else:
                self.systemd.restart(paths)
        except SystemdError as exc:
            verb = "start" if mode is Mode.FRESH else "restart"
            raise ServiceStartError(
                f"{paths.unit_name} failed to {verb}: {exc}. "
                f"Inspect the journal with: {self.systemd.log_hint(paths)}"
            ) from exc

        if self.settle_delay > 0:
            self.sleep(self.settle_delay)
        if not self.systemd.is_active(paths):
            raise ServiceStartError(
                f"{paths.unit_name} is not active after {mode.value}. "
                f"Inspect the journal with: {self.systemd.log_hint(paths)}"
            )

        result = self.prober.probe(params.port, params.credential)
        if not result.ok:
            raise LivenessProbeError(
                f"{paths.unit_name} is active but did not answer PING on port {params.port} "
                f"after {result.attempts} attempt(s): {result.error or 'no reply'}"
            )
        return HealthStatus(
            active=True,
            probe_ok=True,
            attempts=result.attempts,
            detail=f"{result.reply} after {result.attempts} attempt(s)",
            probe=result,
        )


__all__ = [
    "HealthStatus",
    "LifecycleController",
    "LivenessProbeError",
    "ServiceStartError",
]
