"""Shared fixtures for the rpsctl test suite."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from rpsctl.config import AppConfig, load_config
from rpsctl.paths import InstanceLayout
from rpsctl.state import InstanceRegistry

STOCK_REDIS_CONF = """\
bind 127.0.0.1 ::1
port 6379
daemonize yes
pidfile /var/run/redis/redis-server.pid
logfile /var/log/redis/redis-server.log
dir /var/lib/redis
"""

STOCK_UNIT = """\
[Unit]
Description=Advanced key-value store
After=network.target
Documentation=http://redis.io/documentation, man:redis-server(1)

[Service]
Type=notify
ExecStart=/usr/bin/redis-server /etc/redis/redis.conf --supervised systemd --daemonize no
PIDFile=/run/redis/redis-server.pid
TimeoutStopSec=0
Restart=always
User=redis
Group=redis

[Install]
WantedBy=multi-user.target
Alias=redis.service
"""


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """Return a fake host tree with a stock Redis install and two site directories."""
    root = tmp_path / "host"
    (root / "etc" / "redis").mkdir(parents=True)
    (root / "etc" / "redis" / "redis.conf").write_text(STOCK_REDIS_CONF, encoding="utf-8")
    (root / "lib" / "systemd" / "system").mkdir(parents=True)
    (root / "lib" / "systemd" / "system" / "redis-server.service").write_text(
        STOCK_UNIT, encoding="utf-8"
    )
    (root / "etc" / "systemd" / "system").mkdir(parents=True)
    for site in ("acme", "blog"):
        (root / "sites" / site).mkdir(parents=True)
    return root


@pytest.fixture
def app_config(host_root: Path, tmp_path: Path) -> AppConfig:
    """Return a configuration pointing every path into ``host_root``."""
    overrides: dict[str, object] = {
        "sites_root": str(host_root / "sites"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1.0,
        "require_root": False,
        "redis": {
            "config_root": str(host_root / "etc" / "redis"),
            "run_dir": "/var/run/redis",
            "unit_run_dir": "/run/redis",
            "log_dir": "/var/log/redis",
        },
        "systemd": {
            "unit_dir": str(host_root / "etc" / "systemd" / "system"),
            "stock_unit": str(host_root / "lib" / "systemd" / "system" / "redis-server.service"),
            "settle_delay": 0,
        },
        "probe": {"interval": 0},
        "wordpress": {"enabled": False},
    }
    return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=overrides)


@pytest.fixture
def layout(app_config: AppConfig) -> InstanceLayout:
    """Return the instance layout derived from ``app_config``."""
    return InstanceLayout.from_config(app_config)


@pytest.fixture
def registry(layout: InstanceLayout) -> InstanceRegistry:
    """Return a registry reading the fake override directory."""
    return InstanceRegistry(layout)


def write_override(
    layout: InstanceLayout,
    site: str,
    *,
    port: int | str | None = None,
    memory: str | None = None,
) -> Path:
    """Write a minimal override artifact for *site*."""
    lines = []
    if port is not None:
        lines.append(f"port {port}")
    if memory is not None:
        lines.append(f"maxmemory {memory}")
    lines.append('requirepass "secret"')
    path = layout.override_path(site)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


@pytest.fixture
def make_override(layout: InstanceLayout) -> Callable[..., Path]:
    """Return a helper that writes override artifacts into ``layout``."""

    def _make(site: str, *, port: int | str | None = None, memory: str | None = None) -> Path:
        return write_override(layout, site, port=port, memory=memory)

    return _make
