"""Value types shared across the provisioning pipeline."""
from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass

from .errors import ValidationError
from .paths import InstancePaths

CREDENTIAL_LENGTH = 32
_CREDENTIAL_ALPHABET = string.ascii_letters + string.digits
_MEMORY_PATTERN = re.compile(r"(\d+)([MmGg])")


class MemoryValidationError(ValidationError):
    """Raised when a memory ceiling is not of the form ``<int>M`` or ``<int>G``."""


@dataclass(frozen=True, slots=True)
class MemorySize:
    """A Redis ``maxmemory`` value expressed in megabytes or gigabytes."""

    amount: int
    unit: str

    @classmethod
    def parse(cls, value: str | MemorySize) -> MemorySize:
        """Parse values such as ``256M`` or ``1g``."""
        if isinstance(value, MemorySize):
            return value
        text = str(value).strip()
        match = _MEMORY_PATTERN.fullmatch(text)
        if match is None:
            raise MemoryValidationError(
                f"Invalid memory format '{text}'. Use a size like 256M or 1G."
            )
        amount = int(match.group(1))
        if amount <= 0:
            raise MemoryValidationError("Memory size must be greater than zero.")
        return cls(amount=amount, unit=match.group(2).upper())

    def __str__(self) -> str:
        """Render the size the way ``redis.conf`` expects it."""
        return f"{self.amount}{self.unit}"


def generate_credential(length: int = CREDENTIAL_LENGTH) -> str:
    """Return a random alphanumeric credential."""
    return "".join(secrets.choice(_CREDENTIAL_ALPHABET) for _ in range(length))


@dataclass(frozen=True, slots=True)
class InstanceParameters:
    """Fully resolved settings for one provisioning run."""

    paths: InstancePaths
    port: int
    max_memory: MemorySize
    credential: str
    eviction_policy: str

    @property
    def site(self) -> str:
        """Return the site name."""
        return self.paths.site

    def __repr__(self) -> str:
        """Hide the credential from reprs that might end up in logs."""
        return (
            f"InstanceParameters(site={self.site!r}, port={self.port}, "
            f"max_memory='{self.max_memory}', eviction_policy={self.eviction_policy!r}, "
            "credential='***')"
        )

    def to_log_dict(self) -> dict[str, object]:
        """Return a log-safe representation (credential omitted)."""
        return {
            "site": self.site,
            "port": self.port,
            "max_memory": str(self.max_memory),
            "eviction_policy": self.eviction_policy,
        }


__all__ = [
    "CREDENTIAL_LENGTH",
    "InstanceParameters",
    "MemorySize",
    "MemoryValidationError",
    "generate_credential",
]
