"""Layered configuration for rpsctl.

Values are resolved from four layers, each overriding the one before:

1. The built-in :data:`DEFAULTS`.
2. A YAML file, ``/etc/rpsctl/config.yml`` unless another path is given
   explicitly or through ``RPSCTL_CONFIG_FILE``.
3. ``RPSCTL_*`` environment variables, where a double underscore descends
   into a section::

       export RPSCTL_PORTS__RANGE_START=7000
       export RPSCTL_REDIS__EVICTION_POLICY=volatile-lru

4. Programmatic overrides.

Environment values go through ``yaml.safe_load`` so ``false`` and ``7000``
arrive as a boolean and an integer. The merged result is validated and frozen
into the dataclasses below.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "RPSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"

PORT_MIN = 1024
PORT_MAX = 65535


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or fails validation."""


@dataclass(frozen=True)
class RedisConfig:
    """Host layout of the stock Redis installation and per-site conventions."""

    config_root: Path = Path("/etc/redis")
    sites_dir: Path = Path("/etc/redis/sites")
    primary_config: Path = Path("/etc/redis/redis.conf")
    config_prefix: str = "redis"
    service_prefix: str = "redis-server"
    alias_prefix: str = "redis"
    user: str = "redis"
    group: str = "redis"
    run_dir: Path = Path("/var/run/redis")
    unit_run_dir: Path = Path("/run/redis")
    log_dir: Path = Path("/var/log/redis")
    server_bin: str = "/usr/bin/redis-server"
    default_memory: str = "256M"
    eviction_policy: str = "allkeys-lru"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "config_root": str(self.config_root),
            "sites_dir": str(self.sites_dir),
            "primary_config": str(self.primary_config),
            "config_prefix": self.config_prefix,
            "service_prefix": self.service_prefix,
            "alias_prefix": self.alias_prefix,
            "user": self.user,
            "group": self.group,
            "run_dir": str(self.run_dir),
            "unit_run_dir": str(self.unit_run_dir),
            "log_dir": str(self.log_dir),
            "server_bin": self.server_bin,
            "default_memory": self.default_memory,
            "eviction_policy": self.eviction_policy,
        }


@dataclass(frozen=True)
class PortsConfig:
    """Bounded range used when suggesting ports."""

    range_start: int = 6380
    range_end: int = 6400

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"range_start": self.range_start, "range_end": self.range_end}


@dataclass(frozen=True)
class SystemdConfig:
    """Where units live and how systemd is driven."""

    unit_dir: Path = Path("/etc/systemd/system")
    stock_unit: Path = Path("/lib/systemd/system/redis-server.service")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    settle_delay: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "stock_unit": str(self.stock_unit),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
            "settle_delay": self.settle_delay,
        }


@dataclass(frozen=True)
class ProbeConfig:
    """Liveness probe tuning."""

    host: str = "127.0.0.1"
    attempts: int = 3
    interval: float = 1.0
    timeout: float = 2.0
    expected_reply: str = "PONG"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "attempts": self.attempts,
            "interval": self.interval,
            "timeout": self.timeout,
            "expected_reply": self.expected_reply,
        }


@dataclass(frozen=True)
class WordPressConfig:
    """Best-effort WordPress integration settings."""

    enabled: bool = True
    wp_bin: str = "wp"
    nginx_bin: str = "nginx"
    sudo_bin: str = "sudo"
    plugin: str = "spinupwp"
    fallback_root: str = "~/files"
    activate_plugin: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "enabled": self.enabled,
            "wp_bin": self.wp_bin,
            "nginx_bin": self.nginx_bin,
            "sudo_bin": self.sudo_bin,
            "plugin": self.plugin,
            "fallback_root": self.fallback_root,
            "activate_plugin": self.activate_plugin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for rpsctl."""

    config_file: Path
    sites_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    require_root: bool
    redis: RedisConfig
    ports: PortsConfig
    systemd: SystemdConfig
    probe: ProbeConfig
    wordpress: WordPressConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "sites_root": str(self.sites_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "require_root": self.require_root,
            "redis": self.redis.to_dict(),
            "ports": self.ports.to_dict(),
            "systemd": self.systemd.to_dict(),
            "probe": self.probe.to_dict(),
            "wordpress": self.wordpress.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/rpsctl/config.yml",
    "sites_root": "/sites",
    "logs_dir": "/var/log/rpsctl",
    "runtime_dir": "/run/rpsctl",
    "templates_dir": "/etc/rpsctl/templates",
    "lock_timeout": 30.0,
    "require_root": True,
    "redis": {
        "config_root": "/etc/redis",
        "sites_dir": None,  # derived from config_root when absent
        "primary_config": None,  # derived from config_root when absent
        "config_prefix": "redis",
        "service_prefix": "redis-server",
        "alias_prefix": "redis",
        "user": "redis",
        "group": "redis",
        "run_dir": "/var/run/redis",
        "unit_run_dir": "/run/redis",
        "log_dir": "/var/log/redis",
        "server_bin": "/usr/bin/redis-server",
        "default_memory": "256M",
        "eviction_policy": "allkeys-lru",
    },
    "ports": {
        "range_start": 6380,
        "range_end": 6400,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "stock_unit": "/lib/systemd/system/redis-server.service",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
        "settle_delay": 2.0,
    },
    "probe": {
        "host": "127.0.0.1",
        "attempts": 3,
        "interval": 1.0,
        "timeout": 2.0,
        "expected_reply": "PONG",
    },
    "wordpress": {
        "enabled": True,
        "wp_bin": "wp",
        "nginx_bin": "nginx",
        "sudo_bin": "sudo",
        "plugin": "spinupwp",
        "fallback_root": "~/files",
        "activate_plugin": False,
    },
}

_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("redis", "ports", "systemd", "probe", "wordpress")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Resolve every configuration layer into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    path = _config_path(config_file, environ)

    merged = copy.deepcopy(DEFAULTS)
    for layer in (_read_yaml(path), _env_layer(environ), dict(overrides or {})):
        _merge_into(merged, layer)
    merged["config_file"] = str(path)

    _reject_unknown_keys(merged)
    return _build_app_config(merged)


def _config_path(explicit: str | os.PathLike[str] | None, environ: Mapping[str, str]) -> Path:
    if explicit:
        return Path(explicit)
    return Path(environ.get(CONFIG_ENV_VAR) or cast(str, DEFAULTS["config_file"]))


def _read_yaml(path: Path) -> dict[str, object]:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Config file {path} is not valid YAML: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ConfigError(
            f"Config file {path} must hold a mapping, not {type(loaded).__name__}."
        )
    return _string_keyed(loaded, str(path))


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX) or name == CONFIG_ENV_VAR:
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part]
        if keys:
            _set_path(layer, keys, _parse_scalar(raw))
    return layer


def _set_path(tree: dict[str, object], keys: list[str], value: object) -> None:
    node = tree
    for key in keys[:-1]:
        child = node.setdefault(key, {})
        if not isinstance(child, dict):
            joined = "__".join(keys).upper()
            raise ConfigError(f"{ENV_PREFIX}{joined} conflicts with a scalar override.")
        node = child
    node[keys[-1]] = value


def _parse_scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge_into(base: dict[str, object], layer: Mapping[str, object]) -> None:
    for key, value in layer.items():
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, _string_keyed(value, key))
        else:
            base[key] = value


def _reject_unknown_keys(merged: Mapping[str, object]) -> None:
    extra = sorted(set(merged) - set(DEFAULTS))
    if extra:
        raise ConfigError(f"Unknown configuration keys: {', '.join(extra)}.")
    for section, known in _SECTION_KEYS.items():
        extra = sorted(set(_string_keyed(merged.get(section), section)) - known)
        if extra:
            raise ConfigError(f"Unknown {section} configuration keys: {', '.join(extra)}.")


def _string_keyed(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping. Got {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"{label} must use string keys. Got {bad[0]!r}.")
    return dict(value)


# ---------------------------------------------------------------------------
# Typed access to merged values
# ---------------------------------------------------------------------------


class _Section:
    """Typed readers over one level of merged values, falling back to defaults."""

    def __init__(
        self,
        values: Mapping[str, object],
        defaults: Mapping[str, object],
        prefix: str = "",
    ) -> None:
        self._values = values
        self._defaults = defaults
        self._prefix = prefix

    def child(self, key: str) -> _Section:
        return _Section(
            _string_keyed(self._values.get(key), key),
            _string_keyed(self._defaults.get(key), key),
            f"{key}.",
        )

    def _label(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def _raw(self, key: str) -> object | None:
        value = self._values.get(key)
        return self._defaults.get(key) if value is None else value

    def text(self, key: str) -> str:
        value = self._raw(key)
        text = "" if value is None else str(value).strip()
        if not text:
            raise ConfigError(f"{self._label(key)} must be a non-empty string.")
        return text

    def name(self, key: str) -> str:
        text = self.text(key)
        if "/" in text or any(char.isspace() for char in text):
            raise ConfigError(f"{self._label(key)} must not contain slashes or whitespace.")
        return text

    def path(self, key: str) -> Path:
        path = self.optional_path(key)
        if path is None:
            raise ConfigError(f"{self._label(key)} must be a filesystem path.")
        return path

    def optional_path(self, key: str) -> Path | None:
        value = self._raw(key)
        if value is None or value == "":
            return None
        if not isinstance(value, (str, Path)):
            raise ConfigError(f"{self._label(key)} must be a filesystem path. Got {value!r}.")
        return Path(value).expanduser()

    def flag(self, key: str) -> bool:
        value = self._raw(key)
        if not isinstance(value, bool):
            raise ConfigError(f"{self._label(key)} must be true or false. Got {value!r}.")
        return value

    def integer(self, key: str, *, minimum: int, maximum: int | None = None) -> int:
        value = self._raw(key)
        label = self._label(key)
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise ConfigError(f"{label} must be an integer. Got {value!r}.")
        try:
            number = int(value, 0) if isinstance(value, str) else value
        except ValueError as exc:
            raise ConfigError(f"{label} must be an integer. Got {value!r}.") from exc
        if maximum is None and number < minimum:
            raise ConfigError(f"{label} must be at least {minimum}. Got {number}.")
        if maximum is not None and not minimum <= number <= maximum:
            raise ConfigError(f"{label} must be between {minimum} and {maximum}. Got {number}.")
        return number

    def number(self, key: str, *, allow_zero: bool = False) -> float:
        value = self._raw(key)
        label = self._label(key)
        if isinstance(value, bool) or not isinstance(value, (int, float, str)):
            raise ConfigError(f"{label} must be a number. Got {value!r}.")
        try:
            number = float(value)
        except ValueError as exc:
            raise ConfigError(f"{label} must be a number. Got {value!r}.") from exc
        if number < 0 or (number == 0 and not allow_zero):
            bound = "must not be negative" if allow_zero else "must be greater than zero"
            raise ConfigError(f"{label} {bound}. Got {number}.")
        return number


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    top = _Section(raw, DEFAULTS)

    redis_values = top.child("redis")
    config_root = redis_values.path("config_root")
    redis = RedisConfig(
        config_root=config_root,
        sites_dir=redis_values.optional_path("sites_dir") or config_root / "sites",
        primary_config=(
            redis_values.optional_path("primary_config") or config_root / "redis.conf"
        ),
        config_prefix=redis_values.name("config_prefix"),
        service_prefix=redis_values.name("service_prefix"),
        alias_prefix=redis_values.name("alias_prefix"),
        user=redis_values.name("user"),
        group=redis_values.name("group"),
        run_dir=redis_values.path("run_dir"),
        unit_run_dir=redis_values.path("unit_run_dir"),
        log_dir=redis_values.path("log_dir"),
        server_bin=redis_values.text("server_bin"),
        default_memory=redis_values.text("default_memory"),
        eviction_policy=redis_values.text("eviction_policy"),
    )

    port_values = top.child("ports")
    range_start = port_values.integer("range_start", minimum=PORT_MIN, maximum=PORT_MAX)
    range_end = port_values.integer("range_end", minimum=PORT_MIN, maximum=PORT_MAX)
    if range_start > range_end:
        raise ConfigError(
            f"ports.range_start ({range_start}) must not exceed ports.range_end ({range_end})."
        )

    systemd_values = top.child("systemd")
    systemd = SystemdConfig(
        unit_dir=systemd_values.path("unit_dir"),
        stock_unit=systemd_values.path("stock_unit"),
        systemctl_bin=systemd_values.text("systemctl_bin"),
        journalctl_bin=systemd_values.text("journalctl_bin"),
        settle_delay=systemd_values.number("settle_delay", allow_zero=True),
    )

    probe_values = top.child("probe")
    probe = ProbeConfig(
        host=probe_values.text("host"),
        attempts=probe_values.integer("attempts", minimum=1),
        interval=probe_values.number("interval", allow_zero=True),
        timeout=probe_values.number("timeout"),
        expected_reply=probe_values.text("expected_reply"),
    )

    wp_values = top.child("wordpress")
    wordpress = WordPressConfig(
        enabled=wp_values.flag("enabled"),
        wp_bin=wp_values.text("wp_bin"),
        nginx_bin=wp_values.text("nginx_bin"),
        sudo_bin=wp_values.text("sudo_bin"),
        plugin=wp_values.name("plugin"),
        fallback_root=wp_values.text("fallback_root"),
        activate_plugin=wp_values.flag("activate_plugin"),
    )

    return AppConfig(
        config_file=top.path("config_file"),
        sites_root=top.path("sites_root"),
        logs_dir=top.path("logs_dir"),
        runtime_dir=top.path("runtime_dir"),
        templates_dir=top.path("templates_dir"),
        lock_timeout=top.number("lock_timeout"),
        require_root=top.flag("require_root"),
        redis=redis,
        ports=PortsConfig(range_start=range_start, range_end=range_end),
        systemd=systemd,
        probe=probe,
        wordpress=wordpress,
    )


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULTS",
    "PORT_MAX",
    "PORT_MIN",
    "PortsConfig",
    "ProbeConfig",
    "RedisConfig",
    "SystemdConfig",
    "WordPressConfig",
    "load_config",
]
