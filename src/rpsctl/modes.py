"""Provisioning mode selection.

The initial state is decided by the registry alone: a site without an override
artifact is ``NEW`` and always proceeds to a fresh install. A site that already
has one is ``EXISTS`` and the operator must pick reconfigure, reinstall, or
cancel. :func:`resolve_mode` is pure so it can be tested without any I/O.
"""
from __future__ import annotations

from enum import Enum

from .errors import ValidationError
from .models import MemorySize, MemoryValidationError
from .state import InstanceSummary


class Mode(str, Enum):
    """Resolved action for a provisioning run."""

    FRESH = "fresh"
    RECONFIGURE = "reconfigure"
    REINSTALL = "reinstall"
    CANCEL = "cancel"

    @property
    def rewrites_base(self) -> bool:
        """Return ``True`` when the base config is re-cloned from stock."""
        return self in (Mode.FRESH, Mode.REINSTALL)

    @property
    def label(self) -> str:
        """Human readable name used in summaries."""
        return {
            Mode.FRESH: "Installation",
            Mode.RECONFIGURE: "Reconfiguration",
            Mode.REINSTALL: "Reinstallation",
            Mode.CANCEL: "Cancellation",
        }[self]


class OperatorChoice(str, Enum):
    """What the operator may ask for when an instance already exists."""

    RECONFIGURE = "reconfigure"
    REINSTALL = "reinstall"
    CANCEL = "cancel"


class ModeResolutionError(ValidationError):
    """Raised when no valid mode can be derived from the inputs."""


def resolve_mode(existing: InstanceSummary | None, choice: OperatorChoice | None) -> Mode:
    """Return the mode for a run given the registry lookup and operator choice."""
    if existing is None:
        return Mode.FRESH
    if choice is None:
        raise ModeResolutionError(
            f"An instance for '{existing.site}' already exists; choose reconfigure, "
            "reinstall, or cancel."
        )
    return {
        OperatorChoice.RECONFIGURE: Mode.RECONFIGURE,
        OperatorChoice.REINSTALL: Mode.REINSTALL,
        OperatorChoice.CANCEL: Mode.CANCEL,
    }[choice]


def carry_forward(existing: InstanceSummary) -> tuple[int, MemorySize]:
    """Return the port and memory a reconfigure keeps unchanged.

    Reconfigure never changes either value, so an override whose port or
    memory cannot be read must be reinstalled instead.
    """
    if existing.port is None:
        raise ModeResolutionError(
            f"Existing override for '{existing.site}' has no readable port; use reinstall."
        )
    if existing.max_memory is None:
        raise ModeResolutionError(
            f"Existing override for '{existing.site}' has no readable maxmemory; use reinstall."
        )
    try:
        memory = MemorySize.parse(existing.max_memory)
    except MemoryValidationError as exc:
        raise ModeResolutionError(
            f"Existing override for '{existing.site}' has an unusable maxmemory: {exc}"
        ) from exc
    return existing.port, memory


__all__ = [
    "Mode",
    "ModeResolutionError",
    "OperatorChoice",
    "carry_forward",
    "resolve_mode",
]
