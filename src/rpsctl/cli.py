"""Typer-powered command line interface for ``rpsctl``.

Commands share one :class:`RuntimeContext` built from the merged configuration.
Every command runs inside a structured operation scope so that its steps and
outcome land in ``operations.jsonl``. Credentials are printed to the terminal
once and never handed to the logger.
"""
from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import MutationError, RpsctlError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import MemorySize, MemoryValidationError
from .modes import Mode, OperatorChoice, resolve_mode
from .paths import InstanceLayout, SiteNameError, validate_site_name
from .ports import PortAllocator, PortConflictError, PortValidationError
from .providers import SystemdError, SystemdProvider
from .provisioning import Provisioner, ProvisioningRequest, ProvisioningResult
from .state import InstanceRegistry, InstanceSummary, list_sites

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to rpsctl's YAML config file.",
)

app = typer.Typer(help="Provision and manage per-site Redis instances.")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    layout: InstanceLayout
    registry: InstanceRegistry
    ports: PortAllocator
    systemd_provider: SystemdProvider
    provisioner: Provisioner
    locks: LockManager
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    provisioner = Provisioner.from_config(config)
    runtime = RuntimeContext(
        config=config,
        layout=provisioner.layout,
        registry=provisioner.registry,
        ports=provisioner.ports,
        systemd_provider=provisioner.systemd,
        provisioner=provisioner,
        locks=provisioner.locks,
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Print the rpsctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Seconds to wait for the host lock before giving up.",
    ),
) -> None:
    """Load configuration once and share it with the selected command."""
    runtime = _ensure_runtime(ctx, config_file, lock_timeout)
    if version:
        with runtime.logger.operation("version", target={"kind": "meta"}) as op:
            console.print(f"rpsctl {__version__}")
            op.success(f"rpsctl {__version__}", changed=0)
        raise typer.Exit()
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit()


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: RpsctlError) -> NoReturn:
    """Terminate the command with the exit code mapped from *exc*."""
    errors = [str(exc)]
    if isinstance(exc, MutationError) and exc.written:
        errors.append("Artifacts written before the failure: " + ", ".join(exc.written))
        console.print("[yellow]Artifacts already written:[/yellow] " + ", ".join(exc.written))
    _command_error(op, str(exc), rc=int(exc.exit_code), errors=errors)


def _instances_table(summaries: Iterable[InstanceSummary], *, title: str | None = None) -> Table:
    table = Table(show_header=True, header_style="bold magenta", title=title)
    table.add_column("Site", style="bold")
    table.add_column("Port")
    table.add_column("Memory")
    table.add_column("Status")
    rows = [summary.to_dict() for summary in summaries]
    if not rows:
        table.add_row("(none)", "", "", "")
    for row in rows:
        table.add_row(
            str(row["site"]),
            str(row["port"]),
            str(row["max_memory"]),
            str(row["status"]),
        )
    return table


def _summaries_with_status(runtime: RuntimeContext) -> list[InstanceSummary]:
    return runtime.registry.with_status(runtime.systemd_provider)


def _require_instance(runtime: RuntimeContext, site: str, op: OperationScope) -> InstanceSummary:
    try:
        name = validate_site_name(site)
    except SiteNameError as exc:
        _fail(op, exc)
    summary = runtime.registry.lookup(name)
    if summary is None:
        _command_error(
            op, f"No Redis instance found for site '{name}'.", rc=int(ExitCode.VALIDATION)
        )
    return summary


instances_app = typer.Typer(help="Provision and inspect per-site Redis instances.")
ports_app = typer.Typer(help="Inspect port allocation.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(instances_app, name="instance")
app.add_typer(ports_app, name="ports")
app.add_typer(config_app, name="config")


def _flatten(data: dict[str, object], prefix: str = "") -> Iterable[tuple[str, str]]:
    for key, value in data.items():
        dotted = f"{prefix}{key}"
        if isinstance(value, dict):
            yield from _flatten(value, f"{dotted}.")
        else:
            yield dotted, str(value)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Print the merged configuration as JSON.",
    ),
) -> None:
    """Show the configuration after defaults, file, and environment are merged."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation("config show", args={"json": json_output}) as op:
        if json_output:
            console.print_json(data=data)
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Setting", style="bold")
            table.add_column("Value")
            for dotted, rendered in _flatten(data):
                table.add_row(dotted, rendered)
            console.print(table)
        op.success(f"Shown {runtime.config.config_file} merged with defaults.", changed=0)


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List per-site instances with port, memory, and service state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance list",
        args={"json": json_output},
        target={"kind": "instance", "scope": "registry"},
    ) as op:
        summaries = _summaries_with_status(runtime)
        if json_output:
            console.print_json(data={"instances": [summary.to_dict() for summary in summaries]})
            op.success("Reported instance list as JSON.", changed=0)
            return
        console.print(_instances_table(summaries))
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instance_show(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Site whose instance to display."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit details as JSON instead of a table.",
    ),
) -> None:
    """Show details and artifact paths for a single instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance show",
        args={"site": site, "json": json_output},
        target={"kind": "instance", "name": site},
    ) as op:
        summary = _require_instance(runtime, site, op)
        annotated = runtime.registry.with_status(runtime.systemd_provider, [summary])[0]
        payload = annotated.to_dict()
        payload["paths"] = runtime.layout.for_site(annotated.site).to_dict()

        if json_output:
            console.print_json(data=payload)
            op.success("Displayed instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        for key, value in payload.items():
            if key == "paths":
                continue
            table.add_row(key.replace("_", " ").title(), str(value))
        for key, value in payload["paths"].items():
            table.add_row(key.replace("_", " ").title(), str(value))
        console.print(table)
        op.success("Displayed instance details.", changed=0)


@instances_app.command("status")
def instance_status_command(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Site whose instance to query."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit structured JSON instead of human-readable output.",
    ),
) -> None:
    """Report the systemd state for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance status",
        args={"site": site, "json": json_output},
        target={"kind": "instance", "name": site},
    ) as op:
        summary = _require_instance(runtime, site, op)
        annotated = runtime.registry.with_status(runtime.systemd_provider, [summary])[0]
        paths = runtime.layout.for_site(annotated.site)

        systemd_output = ""
        try:
            result = runtime.systemd_provider.status(paths)
            op.add_step("systemd.status", status="success", detail=f"exit {result.returncode}")
            systemd_output = (getattr(result, "stdout", "") or "").strip()
        except SystemdError as exc:
            op.add_step("systemd.status", status="warning", detail=str(exc))
            systemd_output = str(exc)

        payload = {
            "site": annotated.site,
            "state": annotated.state,
            "unit": paths.unit_name,
            "systemd_output": systemd_output,
        }
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_row("State", str(annotated.state))
            table.add_row("Unit", paths.unit_name)
            if systemd_output:
                table.add_row("systemd", systemd_output)
            console.print(table)
        op.success("Reported instance status.", changed=0, context={"state": annotated.state})


@instances_app.command("logs")
def instance_logs(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Site whose instance logs to read."),
    lines: int | None = typer.Option(
        None,
        "--lines",
        "-n",
        min=1,
        help="Show the last N log lines (default: systemd journal default).",
    ),
    follow: bool = typer.Option(
        False,
        "--follow",
        "-f",
        help="Keep streaming new journal entries.",
    ),
) -> None:
    """Show the systemd journal for an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instance logs",
        args={"site": site, "lines": lines, "follow": follow},
        target={"kind": "instance", "name": site},
    ) as op:
        summary = _require_instance(runtime, site, op)
        paths = runtime.layout.for_site(summary.site)
        try:
            result = runtime.systemd_provider.logs(paths, lines=lines, follow=follow)
        except SystemdError as exc:
            _command_error(op, f"journalctl failed: {exc}", rc=int(ExitCode.PROVIDER))

        op.add_step("systemd.logs", status="success", detail=f"exit {result.returncode}")
        stdout = (getattr(result, "stdout", "") or "").rstrip()
        stderr = (getattr(result, "stderr", "") or "").rstrip()
        if stdout:
            console.print(stdout)
        if stderr:
            console.print(stderr, style="red")
        op.success("Fetched instance logs.", changed=0)


def _prompt_site(runtime: RuntimeContext, op: OperationScope) -> str:
    sites = list_sites(runtime.config.sites_root)
    if not sites:
        _command_error(
            op,
            f"No site directories found under {runtime.config.sites_root}.",
            rc=int(ExitCode.ENVIRONMENT),
        )
    console.print("[bold]Available sites:[/bold]")
    for index, name in enumerate(sites, start=1):
        console.print(f"  {index}) {name}")
    while True:
        choice = typer.prompt("Select a site by number", type=int)
        if 1 <= choice <= len(sites):
            return sites[choice - 1]
        console.print(
            f"[red]Invalid choice. Please enter a number between 1 and {len(sites)}.[/red]"
        )


def _prompt_choice(existing: InstanceSummary) -> OperatorChoice:
    console.print(
        f"[yellow]A Redis instance already exists for '{existing.site}'.[/yellow]"
    )
    console.print(_instances_table([existing]))
    options = list(OperatorChoice)
    for index, option in enumerate(options, start=1):
        console.print(f"  {index}) {option.value.title()}")
    while True:
        choice = typer.prompt("Choose an action", type=int, default=1)
        if 1 <= choice <= len(options):
            return options[choice - 1]
        console.print(
            f"[red]Invalid choice. Please enter a number between 1 and {len(options)}.[/red]"
        )


def _prompt_port(runtime: RuntimeContext, site: str, mode: Mode) -> int:
    suggestion = runtime.ports.suggest_port()
    owner = site if mode is Mode.REINSTALL else None
    while True:
        raw = typer.prompt("Redis port", default=str(suggestion))
        try:
            return runtime.ports.validate_port(raw, owner=owner)
        except (PortValidationError, PortConflictError) as exc:
            console.print(f"[red]{exc}[/red]")


def _prompt_memory(runtime: RuntimeContext) -> MemorySize:
    while True:
        raw = typer.prompt(
            "Max memory (e.g. 256M or 1G)", default=runtime.config.redis.default_memory
        )
        try:
            return MemorySize.parse(raw)
        except MemoryValidationError as exc:
            console.print(f"[red]{exc}[/red]")


def _print_connection_details(runtime: RuntimeContext, result: ProvisioningResult) -> None:
    params = result.params
    if params is None:
        return
    paths = params.paths
    service = paths.unit_name.removesuffix(".service")
    table = Table(show_header=False, title=f"{result.plan.mode.label} complete for {params.site}")
    table.add_row("Host", runtime.config.probe.host)
    table.add_row("Port", str(params.port))
    table.add_row("Password", params.credential)
    table.add_row("Max Memory", str(params.max_memory))
    table.add_row("Eviction Policy", params.eviction_policy)
    table.add_row("Base Config", str(paths.base_config))
    table.add_row("Override Config", str(paths.override_config))
    table.add_row("Unit File", str(paths.unit_file))
    table.add_row("Log File", str(paths.log_file))
    console.print(table)
    console.print(
        "[bold yellow]Save the password now; it will not be displayed again.[/bold yellow]"
    )
    for label, command in (
        ("Status", f"sudo systemctl status {service}"),
        ("Stop", f"sudo systemctl stop {service}"),
        ("Start", f"sudo systemctl start {service}"),
        ("Restart", f"sudo systemctl restart {service}"),
        ("Logs", f"sudo journalctl -u {service} -f"),
    ):
        console.print(f"{label + ':':<9}{command}")


@instances_app.command("provision")
def instance_provision(
    ctx: typer.Context,
    site: str | None = typer.Argument(
        None,
        help="Site to provision (prompted from the sites root when omitted).",
    ),
    port: str | None = typer.Option(
        None,
        "--port",
        help="Port for a fresh install or reinstall (defaults to the next free port).",
    ),
    memory: str | None = typer.Option(
        None,
        "--memory",
        help="Max memory such as 256M or 1G (defaults to the configured default).",
    ),
    mode: OperatorChoice | None = typer.Option(
        None,
        "--mode",
        case_sensitive=False,
        help="Action when an instance already exists.",
    ),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Do not prompt; use defaults for anything not supplied.",
    ),
    wordpress: bool | None = typer.Option(
        None,
        "--wordpress/--no-wordpress",
        help="Configure the site's WordPress install after provisioning.",
    ),
    activate_plugin: bool | None = typer.Option(
        None,
        "--activate-plugin/--no-activate-plugin",
        help="Install or activate the object cache plugin during WordPress setup.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the result as JSON (implies --yes).",
    ),
) -> None:
    """Install, reconfigure, or reinstall the Redis instance for a site."""
    runtime = _get_runtime(ctx)
    interactive = not (yes or json_output)
    integrate = runtime.config.wordpress.enabled if wordpress is None else wordpress

    with runtime.logger.operation(
        "instance provision",
        args={
            "site": site,
            "port": port,
            "memory": memory,
            "mode": mode.value if mode is not None else None,
            "yes": yes,
            "wordpress": integrate,
            "activate_plugin": activate_plugin,
            "json": json_output,
        },
        target={"kind": "instance", "name": site},
    ) as op:
        try:
            if not json_output:
                console.print(
                    _instances_table(_summaries_with_status(runtime), title="Current instances")
                )

            if site is None:
                if not interactive:
                    _command_error(
                        op,
                        "A site name is required with --yes or --json.",
                        rc=int(ExitCode.VALIDATION),
                    )
                site = _prompt_site(runtime, op)
            site = validate_site_name(site)
            op.target["name"] = site

            existing = runtime.registry.lookup(site)
            if existing is not None and mode is None and interactive:
                mode = _prompt_choice(existing)

            if interactive:
                resolved = resolve_mode(existing, mode)
                if resolved.rewrites_base:
                    if port is None:
                        port = str(_prompt_port(runtime, site, resolved))
                    if memory is None:
                        memory = str(_prompt_memory(runtime))
                if integrate and activate_plugin is None and resolved is not Mode.CANCEL:
                    activate_plugin = typer.confirm(
                        f"Install or activate the {runtime.config.wordpress.plugin} plugin "
                        "if it is not active?",
                        default=runtime.config.wordpress.activate_plugin,
                    )

            plan = runtime.provisioner.plan(
                ProvisioningRequest(
                    site=site,
                    port=port,
                    memory=memory,
                    choice=mode,
                    integrate=integrate,
                    activate_plugin=activate_plugin,
                )
            )
            op.add_step("mode.resolve", detail=plan.mode.value)

            if interactive and not plan.cancelled:
                summary = (
                    f"{plan.mode.label} for '{site}' on port {plan.port} with {plan.max_memory}"
                )
                if not typer.confirm(f"Proceed with {summary}?", default=True):
                    plan = replace(plan, mode=Mode.CANCEL)

            if plan.cancelled:
                if json_output:
                    console.print_json(
                        data={"site": site, "mode": plan.mode.value, "cancelled": True}
                    )
                else:
                    console.print("[yellow]Operation cancelled; nothing was changed.[/yellow]")
                op.success("Provisioning cancelled.", changed=0, context=plan.to_dict())
                return

            result = runtime.provisioner.execute(plan, op=op)
        except RpsctlError as exc:
            _fail(op, exc)

        context = result.to_dict()
        if json_output:
            payload = dict(context)
            if result.params is not None:
                payload["connection"] = {
                    "host": runtime.config.probe.host,
                    "port": result.params.port,
                    "password": result.params.credential,
                }
            console.print_json(data=payload)
        else:
            console.print(
                _instances_table(_summaries_with_status(runtime), title="Instances after")
            )
            _print_connection_details(runtime, result)
            for warning in result.warnings:
                console.print(f"[yellow]Warning:[/yellow] {warning}")

        message = f"{plan.mode.label} complete for {site}."
        if result.warnings:
            op.warning(message, warnings=result.warnings, changed=result.changed, context=context)
        else:
            op.success(message, changed=result.changed, context=context)


@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit port allocations as JSON instead of a table.",
    ),
) -> None:
    """List ports declared by instance overrides."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports list",
        args={"json": json_output},
        target={"kind": "ports"},
    ) as op:
        entries = [
            {"site": summary.site, "port": summary.port}
            for summary in runtime.registry.list_instances()
            if summary.port is not None
        ]
        entries.sort(key=lambda entry: entry["port"])
        if json_output:
            console.print_json(
                data={
                    "ports": entries,
                    "range": [runtime.ports.range_start, runtime.ports.range_end],
                }
            )
            op.success("Reported port allocations as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Port", style="bold")
        table.add_column("Site")
        if not entries:
            table.add_row("(none)", "")
        for entry in entries:
            table.add_row(str(entry["port"]), str(entry["site"]))
        console.print(table)
        console.print(
            f"Suggestion range: {runtime.ports.range_start}-{runtime.ports.range_end}"
        )
        op.success("Reported port allocations.", changed=0)


@ports_app.command("suggest")
def ports_suggest(ctx: typer.Context) -> None:
    """Print the lowest free port in the suggestion range."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "ports suggest",
        args={},
        target={"kind": "ports"},
    ) as op:
        try:
            suggestion = runtime.ports.suggest_port()
        except RpsctlError as exc:
            _fail(op, exc)
        console.print(str(suggestion))
        op.success("Suggested a free port.", changed=0, context={"port": suggestion})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
