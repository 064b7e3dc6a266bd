"""End-to-end provisioning run for one site.

A run is split into :meth:`Provisioner.plan`, which only reads (registry lookup,
mode resolution, port and memory validation), and :meth:`Provisioner.execute`,
which holds the host-wide lock, re-validates the port, and then writes
artifacts and drives the service. Once the first artifact has been written the
run always proceeds to a terminal state.
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from .config import AppConfig
from .errors import ConflictError, MutationError, ValidationError
from .lifecycle import HealthStatus, LifecycleController
from .locking import LockManager
from .logging import OperationScope
from .models import InstanceParameters, MemorySize, generate_credential
from .modes import Mode, OperatorChoice, carry_forward, resolve_mode
from .paths import InstanceLayout, InstancePaths, validate_site_name
from .ports import PortAllocator, SocketTable
from .preflight import ensure_preconditions
from .providers.probe import RedisLivenessProber
from .providers.redis_config import ConfigMaterializeResult, RedisConfigProvider
from .providers.systemd import SystemdProvider, UnitMaterializeResult
from .providers.wordpress import ApplicationConfigurer, IntegrationResult, WordPressConfigurer
from .state import InstanceRegistry, InstanceSummary
from .templates import TemplateEngine


@dataclass(frozen=True, slots=True)
class ProvisioningRequest:
    """What the operator asked for."""

    site: str
    port: int | str | None = None
    memory: str | None = None
    choice: OperatorChoice | None = None
    integrate: bool = True
    activate_plugin: bool | None = None


@dataclass(frozen=True, slots=True)
class ProvisioningPlan:
    """Resolved, validated inputs for a run. No credential yet."""

    site: str
    mode: Mode
    paths: InstancePaths
    existing: InstanceSummary | None = None
    port: int | None = None
    max_memory: MemorySize | None = None
    integrate: bool = True
    activate_plugin: bool = False

    @property
    def cancelled(self) -> bool:
        """Return ``True`` when the run ends without side effects."""
        return self.mode is Mode.CANCEL

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "site": self.site,
            "mode": self.mode.value,
            "port": self.port,
            "max_memory": str(self.max_memory) if self.max_memory is not None else None,
            "existing": self.existing.to_dict() if self.existing is not None else None,
            "integrate": self.integrate,
            "activate_plugin": self.activate_plugin,
        }


@dataclass(slots=True)
class ProvisioningResult:
    """Terminal outcome of a run."""

    plan: ProvisioningPlan
    params: InstanceParameters | None = None
    config: ConfigMaterializeResult | None = None
    unit: UnitMaterializeResult | None = None
    health: HealthStatus | None = None
    integration: IntegrationResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        """Return ``True`` when the operator cancelled the run."""
        return self.plan.cancelled

    @property
    def changed(self) -> int:
        """Return the number of artifacts written."""
        count = len(self.config.written) if self.config is not None else 0
        if self.unit is not None and self.unit.changed:
            count += 1
        return count

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without the credential."""
        return {
            "site": self.plan.site,
            "mode": self.plan.mode.value,
            "cancelled": self.cancelled,
            "port": self.plan.port,
            "max_memory": str(self.plan.max_memory) if self.plan.max_memory is not None else None,
            "instance": self.params.to_log_dict() if self.params is not None else None,
            "paths": self.plan.paths.to_dict(),
            "config": self.config.to_dict() if self.config is not None else None,
            "unit": self.unit.to_dict() if self.unit is not None else None,
            "health": self.health.to_dict() if self.health is not None else None,
            "integration": self.integration.to_dict() if self.integration is not None else None,
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class Provisioner:
    """Coordinate registry, allocator, materializers, and lifecycle for a run."""

    config: AppConfig
    layout: InstanceLayout
    registry: InstanceRegistry
    ports: PortAllocator
    redis_config: RedisConfigProvider
    systemd: SystemdProvider
    lifecycle: LifecycleController
    locks: LockManager
    configurer: ApplicationConfigurer | None = None
    check_preconditions: Callable[[AppConfig], object] = ensure_preconditions
    credential_factory: Callable[[], str] = generate_credential

    @classmethod
    def from_config(cls, config: AppConfig) -> Provisioner:
        """Wire the default collaborators for *config*."""
        layout = InstanceLayout.from_config(config)
        registry = InstanceRegistry(layout)
        systemd = SystemdProvider(
            stock_unit=config.systemd.stock_unit,
            primary_config=config.redis.primary_config,
            systemctl_bin=config.systemd.systemctl_bin,
            journalctl_bin=config.systemd.journalctl_bin,
        )
        prober = RedisLivenessProber(
            host=config.probe.host,
            attempts=config.probe.attempts,
            interval=config.probe.interval,
            timeout=config.probe.timeout,
            expected_reply=config.probe.expected_reply,
        )
        configurer: ApplicationConfigurer | None = None
        if config.wordpress.enabled:
            configurer = WordPressConfigurer(
                sites_root=config.sites_root,
                wp_bin=config.wordpress.wp_bin,
                nginx_bin=config.wordpress.nginx_bin,
                sudo_bin=config.wordpress.sudo_bin,
                plugin=config.wordpress.plugin,
                activate_plugin=config.wordpress.activate_plugin,
                fallback_root=config.wordpress.fallback_root,
            )
        return cls(
            config=config,
            layout=layout,
            registry=registry,
            ports=PortAllocator(
                registry,
                range_start=config.ports.range_start,
                range_end=config.ports.range_end,
                sockets=SocketTable(),
            ),
            redis_config=RedisConfigProvider(
                templates=TemplateEngine.with_overrides(config.templates_dir),
                primary_config=config.redis.primary_config,
                user=config.redis.user,
                group=config.redis.group,
            ),
            systemd=systemd,
            lifecycle=LifecycleController(
                systemd=systemd,
                prober=prober,
                settle_delay=config.systemd.settle_delay,
            ),
            locks=LockManager(config.runtime_dir, default_timeout=config.lock_timeout),
            configurer=configurer,
        )

    def plan(self, request: ProvisioningRequest) -> ProvisioningPlan:
        """Resolve the mode and validate parameters without touching the host."""
        site = validate_site_name(request.site)
        paths = self.layout.for_site(site)
        existing = self.registry.lookup(site)
        mode = resolve_mode(existing, request.choice)
        if mode is Mode.CANCEL:
            return ProvisioningPlan(site=site, mode=mode, paths=paths, existing=existing)

        if mode is Mode.RECONFIGURE and existing is not None:
            port, memory = carry_forward(existing)
        else:
            owner = site if mode is Mode.REINSTALL else None
            if request.port is None:
                port = self.ports.suggest_port()
            else:
                port = self.ports.validate_port(request.port, owner=owner)
            memory = MemorySize.parse(request.memory or self.config.redis.default_memory)

        return ProvisioningPlan(
            site=site,
            mode=mode,
            paths=paths,
            existing=existing,
            port=port,
            max_memory=memory,
            integrate=request.integrate,
            activate_plugin=(
                self.config.wordpress.activate_plugin
                if request.activate_plugin is None
                else request.activate_plugin
            ),
        )

    def execute(
        self,
        plan: ProvisioningPlan,
        *,
        op: OperationScope | None = None,
    ) -> ProvisioningResult:
        """Carry out *plan* and return its terminal outcome.

        The generated credential is only reachable through ``result.params``;
        :meth:`ProvisioningResult.to_dict` leaves it out.
        """
        result = ProvisioningResult(plan=plan)
        if plan.cancelled:
            _step(op, "mode.resolve", detail="cancelled")
            return result
        if plan.port is None or plan.max_memory is None:
            raise ValidationError(f"Plan for '{plan.site}' has no port or memory limit.")

        self.check_preconditions(self.config)
        _step(op, "preflight")

        with self.locks.provision_lock([plan.site]) as bundle:
            if op is not None:
                op.set_lock_wait_ms(bundle.wait_ms)
            current = self.registry.lookup(plan.site)
            if (current is None) != (plan.existing is None):
                raise ConflictError(
                    f"Instance state for '{plan.site}' changed since the run was planned; retry."
                )
            self.ports.reserve(plan.port, plan.site)
            _step(op, "port.reserve", detail=str(plan.port))

            params = InstanceParameters(
                paths=plan.paths,
                port=plan.port,
                max_memory=plan.max_memory,
                credential=self.credential_factory(),
                eviction_policy=self.config.redis.eviction_policy,
            )
            result.params = params

            result.config = self.redis_config.materialize(params, plan.mode)
            _step(
                op,
                "config.materialize",
                detail=", ".join(str(path) for path in result.config.written) or "unchanged",
            )

            try:
                result.unit = self.systemd.materialize_unit(plan.paths, plan.mode)
            except MutationError as exc:
                exc.written[:0] = [str(path) for path in result.config.written]
                raise
            _step(
                op,
                "unit.materialize",
                detail="reused" if result.unit.reused else str(result.unit.path),
            )

            result.health = self.lifecycle.apply(params, plan.mode)
            _step(op, "lifecycle.apply", detail=result.health.detail)

            if plan.integrate and self.configurer is not None:
                result.integration = self.configurer.configure(
                    params, activate_plugin=plan.activate_plugin
                )
                result.warnings.extend(result.integration.warnings)
                _step(
                    op,
                    "integration",
                    status="warning" if result.integration.warnings else "success",
                    detail="; ".join(result.integration.steps) or None,
                )
        return result


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


__all__ = [
    "Provisioner",
    "ProvisioningPlan",
    "ProvisioningRequest",
    "ProvisioningResult",
]
