"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from rpsctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.sites_root == Path("/sites")
    assert config.redis.config_root == Path("/etc/redis")
    assert config.redis.sites_dir == Path("/etc/redis/sites")
    assert config.redis.primary_config == Path("/etc/redis/redis.conf")
    assert config.redis.default_memory == "256M"
    assert config.redis.eviction_policy == "allkeys-lru"
    assert (config.ports.range_start, config.ports.range_end) == (6380, 6400)
    assert config.systemd.settle_delay == 2.0
    assert config.probe.attempts == 3
    assert config.probe.expected_reply == "PONG"
    assert config.wordpress.plugin == "spinupwp"
    assert config.wordpress.activate_plugin is False
    assert config.templates_dir == Path("/etc/rpsctl/templates")


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "rpsctl.yml"
    cfg.write_text(
        "sites_root: /srv/sites\n"
        "redis:\n"
        "  config_root: /opt/redis\n"
        "  default_memory: 512M\n"
        "ports:\n"
        "  range_start: 7000\n"
        "  range_end: 7010\n"
        "wordpress:\n"
        "  enabled: false\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.sites_root == Path("/srv/sites")
    assert config.redis.config_root == Path("/opt/redis")
    assert config.redis.sites_dir == Path("/opt/redis/sites")
    assert config.redis.primary_config == Path("/opt/redis/redis.conf")
    assert config.redis.default_memory == "512M"
    assert config.ports.range_start == 7000
    assert config.ports.range_end == 7010
    assert config.wordpress.enabled is False


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "rpsctl.yml"
    cfg.write_text("ports:\n  range_start: 7000\n  range_end: 7100\n")
    env = {
        "RPSCTL_PORTS__RANGE_START": "7050",
        "RPSCTL_LOCK_TIMEOUT": "45",
        "RPSCTL_REDIS__EVICTION_POLICY": "volatile-lru",
        "RPSCTL_PROBE__ATTEMPTS": "5",
        "RPSCTL_WORDPRESS__ENABLED": "false",
        "RPSCTL_WORDPRESS__ACTIVATE_PLUGIN": "true",
        "RPSCTL_TEMPLATES_DIR": str(tmp_path / "templates"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.ports.range_start == 7050
    assert config.ports.range_end == 7100
    assert config.lock_timeout == 45.0
    assert config.redis.eviction_policy == "volatile-lru"
    assert config.probe.attempts == 5
    assert config.wordpress.enabled is False
    assert config.wordpress.activate_plugin is True
    assert config.templates_dir == tmp_path / "templates"


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("sites_root: /data/sites\n")

    env = {"RPSCTL_CONFIG_FILE": str(cfg)}
    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.sites_root == Path("/data/sites")


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A config file without a top-level mapping raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_section_keys_raise(tmp_path: Path) -> None:
    """Extra keys inside a section produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("redis:\n  extra: true\n")

    with pytest.raises(ConfigError, match="Unknown redis configuration keys"):
        load_config(config_file=cfg, env={})


def test_inverted_port_range_raises(tmp_path: Path) -> None:
    """A range whose start exceeds its end is rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ports:\n  range_start: 6400\n  range_end: 6380\n")

    with pytest.raises(ConfigError, match="must not exceed"):
        load_config(config_file=cfg, env={})


def test_privileged_port_range_raises(tmp_path: Path) -> None:
    """Suggestion ranges must stay within unprivileged ports."""
    with pytest.raises(ConfigError, match="between 1024 and 65535"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"ports": {"range_start": 80}},
        )


def test_probe_attempts_must_be_positive(tmp_path: Path) -> None:
    """At least one probe attempt is required."""
    with pytest.raises(ConfigError, match="probe.attempts"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"probe": {"attempts": 0}},
        )


def test_flags_must_be_booleans(tmp_path: Path) -> None:
    """A quoted boolean in YAML is rejected rather than treated as truthy."""
    cfg = tmp_path / "config.yml"
    cfg.write_text('require_root: "no"\n')

    with pytest.raises(ConfigError, match="require_root must be true or false"):
        load_config(config_file=cfg, env={})


def test_env_section_conflicting_with_scalar_raises(tmp_path: Path) -> None:
    """A scalar and a nested variable for the same key cannot both apply."""
    env = {"RPSCTL_PROBE": "fast", "RPSCTL_PROBE__ATTEMPTS": "2"}

    with pytest.raises(ConfigError, match="conflicts with a scalar"):
        load_config(config_file=tmp_path / "missing.yml", env=env)


def test_prefix_names_reject_slashes(tmp_path: Path) -> None:
    """Name-like settings feed file names and may not contain path separators."""
    with pytest.raises(ConfigError, match="redis.service_prefix"):
        load_config(
            config_file=tmp_path / "missing.yml",
            env={},
            overrides={"redis": {"service_prefix": "../evil"}},
        )
