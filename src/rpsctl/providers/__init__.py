"""Provider interfaces for rpsctl."""
from __future__ import annotations

from .probe import LivenessProber, ProbeResult, RedisLivenessProber
from .redis_config import ArtifactWriteError, ConfigMaterializeResult, RedisConfigProvider
from .systemd import SystemdError, SystemdProvider, UnitMaterializeResult, UnitWriteError
from .wordpress import ApplicationConfigurer, IntegrationResult, WordPressConfigurer

__all__ = [
    "ApplicationConfigurer",
    "ArtifactWriteError",
    "ConfigMaterializeResult",
    "IntegrationResult",
    "LivenessProber",
    "ProbeResult",
    "RedisConfigProvider",
    "RedisLivenessProber",
    "SystemdError",
    "SystemdProvider",
    "UnitMaterializeResult",
    "UnitWriteError",
    "WordPressConfigurer",
]
