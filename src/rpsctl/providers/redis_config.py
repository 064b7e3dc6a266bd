"""Redis configuration provider for per-site base and override artifacts."""
from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from ..errors import MutationError
from ..fsutils import atomic_write_text, read_text_or_none
from ..models import InstanceParameters
from ..modes import Mode
from ..templates import TemplateEngine

OVERRIDE_TEMPLATE = "redis/overrides.conf.j2"
OVERRIDE_MODE = 0o640
BASE_MODE = 0o644


class ArtifactWriteError(MutationError):
    """Raised when a configuration artifact cannot be written."""


@dataclass(slots=True)
class ConfigMaterializeResult:
    """Outcome of materialising one site's configuration artifacts."""

    written: list[Path] = field(default_factory=list)
    base_cloned: bool = False
    include_added: bool = False
    override_changed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "written": [str(path) for path in self.written],
            "base_cloned": self.base_cloned,
            "include_added": self.include_added,
            "override_changed": self.override_changed,
        }


def has_include(text: str, directive: str) -> bool:
    """Return ``True`` when *text* already contains *directive* on its own line."""
    return any(line.strip() == directive for line in text.splitlines())


def append_include(text: str, directive: str) -> str:
    """Return *text* with *directive* appended unless it is already present."""
    if has_include(text, directive):
        return text
    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{directive}\n"


@dataclass(slots=True)
class RedisConfigProvider:
    """Write the base config clone and the rendered override for a site."""

    templates: TemplateEngine
    primary_config: Path = Path("/etc/redis/redis.conf")
    user: str = "redis"
    group: str = "redis"

    def render_override(self, params: InstanceParameters) -> str:
        """Return the override file content for *params*."""
        paths = params.paths
        return self.templates.render_to_string(
            OVERRIDE_TEMPLATE,
            {
                "port": params.port,
                "pid_file": str(paths.pid_file),
                "log_file": str(paths.log_file),
                "data_file": paths.data_file,
                "max_memory": str(params.max_memory),
                "eviction_policy": params.eviction_policy,
                "credential": params.credential,
            },
        )

    def materialize(self, params: InstanceParameters, mode: Mode) -> ConfigMaterializeResult:
        """Write the override and base artifacts for *params*.

        Fresh installs and reinstalls replace the base file with a clean copy of
        the primary config. Every mode makes sure the base file carries the
        include directive exactly once.
        """
        result = ConfigMaterializeResult()
        paths = params.paths
        try:
            content = self.render_override(params)
            result.override_changed = read_text_or_none(paths.override_config) != content
            atomic_write_text(paths.override_config, content, mode=OVERRIDE_MODE)
            self._apply_ownership(paths.override_config)
            result.written.append(paths.override_config)

            existing = read_text_or_none(paths.base_config)
            if mode.rewrites_base or existing is None:
                base = self.primary_config.read_text(encoding="utf-8")
                result.base_cloned = True
            else:
                base = existing
            updated = append_include(base, paths.include_directive)
            result.include_added = updated != base
            if result.base_cloned or result.include_added:
                atomic_write_text(paths.base_config, updated, mode=BASE_MODE)
                self._apply_ownership(paths.base_config)
                result.written.append(paths.base_config)
        except (OSError, LookupError) as exc:
            written = [str(path) for path in result.written]
            raise ArtifactWriteError(
                f"Failed to write configuration for '{params.site}': {exc}", written=written
            ) from exc
        return result

    # ------------------------------------------------------------------
    def _apply_ownership(self, path: Path) -> None:
        if os.geteuid() != 0:
            return
        shutil.chown(path, user=self.user, group=self.group)


__all__ = [
    "ArtifactWriteError",
    "ConfigMaterializeResult",
    "RedisConfigProvider",
    "append_include",
    "has_include",
]
