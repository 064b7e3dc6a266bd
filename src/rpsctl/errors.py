"""Exception taxonomy shared by the provisioning components.

Every failure raised by the core belongs to one of the categories below. The
CLI maps each category onto an :class:`~rpsctl.exit_codes.ExitCode`:

* :class:`PreconditionError` - a required host capability, file, or user is
  missing. Raised before any state is mutated.
* :class:`ValidationError` - malformed operator input (port, memory size,
  site name, mode choice). Interactive callers re-prompt.
* :class:`ConflictError` - a resource (port) is already taken. Retryable.
* :class:`MutationError` - writing an artifact or applying permissions failed.
  The run aborts; the exception lists the artifacts already written.
* :class:`LifecycleError` - the service failed to become active, or became
  active but failed the liveness probe.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class RpsctlError(RuntimeError):
    """Base class for all rpsctl failures."""

    exit_code: ExitCode = ExitCode.PROVIDER
    retryable: bool = False


class PreconditionError(RpsctlError):
    """Raised when the host lacks something provisioning requires."""

    exit_code = ExitCode.ENVIRONMENT


class ValidationError(RpsctlError, ValueError):
    """Raised when operator supplied values are malformed."""

    exit_code = ExitCode.VALIDATION


class ConflictError(RpsctlError):
    """Raised when a requested resource is already allocated."""

    exit_code = ExitCode.VALIDATION
    retryable = True


class MutationError(RpsctlError):
    """Raised when an artifact write fails part-way through a run."""

    exit_code = ExitCode.ENVIRONMENT

    def __init__(self, message: str, *, written: list[str] | None = None) -> None:
        """Store the artifacts that were written before the failure."""
        super().__init__(message)
        self.written: list[str] = list(written or [])


class LifecycleError(RpsctlError):
    """Raised when the service manager or the instance itself misbehaves."""

    exit_code = ExitCode.PROVIDER


__all__ = [
    "ConflictError",
    "LifecycleError",
    "MutationError",
    "PreconditionError",
    "RpsctlError",
    "ValidationError",
]
