"""Tests for the Redis configuration provider."""
from __future__ import annotations

from pathlib import Path

import pytest

from rpsctl.config import AppConfig
from rpsctl.errors import MutationError
from rpsctl.models import InstanceParameters, MemorySize
from rpsctl.modes import Mode
from rpsctl.paths import InstanceLayout
from rpsctl.providers.redis_config import (
    ArtifactWriteError,
    RedisConfigProvider,
    append_include,
    has_include,
)
from rpsctl.state import InstanceRegistry
from rpsctl.templates import TemplateEngine


@pytest.fixture
def provider(app_config: AppConfig) -> RedisConfigProvider:
    """Return a provider cloning the fake host's primary config."""
    return RedisConfigProvider(
        templates=TemplateEngine.with_overrides(None),
        primary_config=app_config.redis.primary_config,
    )


def _params(
    layout: InstanceLayout,
    site: str = "acme",
    *,
    port: int = 7000,
    memory: str = "128M",
    credential: str = "S3cretS3cretS3cretS3cretS3cretXX",
) -> InstanceParameters:
    return InstanceParameters(
        paths=layout.for_site(site),
        port=port,
        max_memory=MemorySize.parse(memory),
        credential=credential,
        eviction_policy="allkeys-lru",
    )


def test_render_override_lists_site_directives(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """The override carries the seven site-scoped directives in order."""
    text = provider.render_override(_params(layout))

    assert text.splitlines() == [
        "port 7000",
        "pidfile /var/run/redis/redis-server-acme.pid",
        "logfile /var/log/redis/redis-server-acme.log",
        "dbfilename dump-acme.rdb",
        "maxmemory 128M",
        "maxmemory-policy allkeys-lru",
        'requirepass "S3cretS3cretS3cretS3cretS3cretXX"',
    ]
    assert text.endswith("\n")


def test_fresh_install_clones_primary_and_appends_include(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """A fresh run writes the override and a base clone ending in the include."""
    stock = provider.primary_config.read_text(encoding="utf-8")
    params = _params(layout)

    result = provider.materialize(params, Mode.FRESH)

    paths = params.paths
    base = paths.base_config.read_text(encoding="utf-8")
    assert base == stock + paths.include_directive + "\n"
    assert result.written == [paths.override_config, paths.base_config]
    assert result.base_cloned is True
    assert result.include_added is True
    assert paths.override_config.stat().st_mode & 0o777 == 0o640
    assert paths.base_config.stat().st_mode & 0o777 == 0o644


def test_override_is_readable_by_registry(
    provider: RedisConfigProvider,
    layout: InstanceLayout,
    registry: InstanceRegistry,
) -> None:
    """The registry recovers port and memory from a rendered override."""
    provider.materialize(_params(layout, port=7001, memory="512M"), Mode.FRESH)

    summary = registry.lookup("acme")

    assert summary is not None
    assert summary.port == 7001
    assert summary.max_memory == "512M"


def test_repeated_runs_keep_a_single_include(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """Re-running any mode never duplicates the include directive."""
    params = _params(layout)
    provider.materialize(params, Mode.FRESH)
    provider.materialize(params, Mode.RECONFIGURE)
    provider.materialize(params, Mode.REINSTALL)

    base = params.paths.base_config.read_text(encoding="utf-8")
    assert base.count(params.paths.include_directive) == 1


def test_reconfigure_preserves_base_edits(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """Reconfigure leaves the existing base file alone."""
    params = _params(layout)
    provider.materialize(params, Mode.FRESH)
    base_path = params.paths.base_config
    base_path.write_text(
        "# local tweak\n" + base_path.read_text(encoding="utf-8"), encoding="utf-8"
    )

    result = provider.materialize(params, Mode.RECONFIGURE)

    assert base_path.read_text(encoding="utf-8").startswith("# local tweak\n")
    assert result.base_cloned is False
    assert result.include_added is False
    assert result.written == [params.paths.override_config]


def test_reconfigure_restores_missing_include(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """A base file that lost its include gets it back without re-cloning."""
    params = _params(layout)
    base_path = params.paths.base_config
    base_path.write_text("port 6379\n# edited", encoding="utf-8")

    result = provider.materialize(params, Mode.RECONFIGURE)

    assert base_path.read_text(encoding="utf-8") == (
        f"port 6379\n# edited\n{params.paths.include_directive}\n"
    )
    assert result.include_added is True
    assert result.base_cloned is False


def test_reinstall_replaces_base_with_clean_clone(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """Reinstall discards local base edits and re-clones the primary config."""
    stock = provider.primary_config.read_text(encoding="utf-8")
    params = _params(layout)
    provider.materialize(params, Mode.FRESH)
    params.paths.base_config.write_text("# hand edited\n", encoding="utf-8")

    result = provider.materialize(_params(layout, port=7001, memory="512M"), Mode.REINSTALL)

    base = params.paths.base_config.read_text(encoding="utf-8")
    assert base.startswith(stock)
    assert "# hand edited" not in base
    assert result.base_cloned is True
    override = params.paths.override_config.read_text(encoding="utf-8")
    assert "port 7001\n" in override
    assert "maxmemory 512M\n" in override


def test_write_failure_lists_written_artifacts(
    provider: RedisConfigProvider, layout: InstanceLayout
) -> None:
    """A failing base write reports the override that already landed."""
    params = _params(layout)
    params.paths.base_config.mkdir(parents=True)

    with pytest.raises(ArtifactWriteError) as excinfo:
        provider.materialize(params, Mode.FRESH)

    assert isinstance(excinfo.value, MutationError)
    assert excinfo.value.written == [str(params.paths.override_config)]
    assert "S3cret" not in str(excinfo.value)


def test_include_helpers_match_whole_lines() -> None:
    """Only an exact directive line counts as present."""
    directive = "include /etc/redis/sites/overrides.acme.conf"

    assert has_include(f"port 1\n  {directive}  \n", directive)
    assert not has_include(f"# {directive}\n", directive)
    assert append_include("port 1", directive) == f"port 1\n{directive}\n"
    assert append_include(f"{directive}\n", directive) == f"{directive}\n"


def test_primary_config_is_never_modified(
    provider: RedisConfigProvider, layout: InstanceLayout, host_root: Path
) -> None:
    """The stock config stays byte-identical after provisioning."""
    primary = host_root / "etc" / "redis" / "redis.conf"
    stock = primary.read_text(encoding="utf-8")
    provider.materialize(_params(layout), Mode.FRESH)

    assert primary.read_text(encoding="utf-8") == stock
