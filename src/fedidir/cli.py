"""Typer-powered command line for ``fedidir``.

Commands share one :class:`RuntimeContext` built from the layered
configuration. Remote work (probes, admin checks, challenge delivery) runs on
an ``asyncio`` event loop per command with a single ``httpx.AsyncClient``.
"""
from __future__ import annotations

import asyncio
import json
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import get_version
from .config import AppConfig, ConfigError, load_config
from .directory import DirectoryWriter
from .exit_codes import ExitCode
from .health import (
    SWEEP_SCOPE_VALUES,
    ReconciliationEngine,
    SweepOptions,
    SweepReport,
    SweepStatus,
    serialize_report,
)
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .models import CONTENT_POLICY_VALUES, PLATFORM_VALUES, ProbeOutcome
from .onboarding import (
    InvalidAddressError,
    OnboardingService,
    SubmissionResult,
    normalize_address,
)
from .providers import DirectMessageSender, InstanceApiClient, build_http_client
from .state import DirectoryStore, StateRegistry, StateRegistryError
from .verification import ChallengeIssuer

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to fedidir's YAML config file.",
)

_PLATFORM_NAMES = "|".join(PLATFORM_VALUES)

PLATFORM_OPTION = typer.Option(
    ...,
    "--platform",
    help=f"Platform family of the instance ({_PLATFORM_NAMES}).",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

_SWEEP_STATUS_STYLE = {
    SweepStatus.RECOVERED: "[green]RECOVERED[/green]",
    SweepStatus.HEALTHY: "[green]OK[/green]",
    SweepStatus.DEGRADED: "[yellow]DEGRADED[/yellow]",
    SweepStatus.BANNED: "[red]BANNED[/red]",
    SweepStatus.ERROR: "[red]ERROR[/red]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Fediverse instance directory admin CLI.

        Submit candidate instances for onboarding, re-check registered
        instances, and inspect the directory.
        """
    ).strip(),
)

instances_app = typer.Typer(help="Inspect registered instances.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(instances_app, name="instances")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    store: DirectoryStore
    writer: DirectoryWriter
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc
    registry = StateRegistry(config.registry_dir)
    registry.ensure_root()
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    store = DirectoryStore(registry, locks)
    runtime = RuntimeContext(
        config=config,
        registry=registry,
        store=store,
        writer=DirectoryWriter(store),
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the fedidir version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"fedidir {get_version()}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=int(rc))
    raise typer.Exit(code=int(rc))


def _validate_platform(op: OperationScope, platform: str) -> str:
    value = platform.strip().lower()
    if value not in PLATFORM_VALUES:
        _command_error(
            op,
            f"Unsupported platform '{platform}'. Expected one of: {', '.join(PLATFORM_VALUES)}.",
        )
    return value


def _render_sweep_report(report: SweepReport) -> None:
    """Render a sweep report in a human-friendly format."""
    summary = report.summary
    totals_line = " ".join(
        f"{status.value}={summary.totals.get(status, 0)}" for status in SweepStatus
    )
    console.print(f"Sweep: {summary.message} (selected={summary.selected})")
    console.print(f"Totals: {totals_line}")
    if not report.results:
        console.print("No instances matched the sweep scope.")
        return

    console.print()
    for result in report.results:
        console.print(
            f"{_SWEEP_STATUS_STYLE[result.status]} {result.uri}: {result.message}"
        )
        if result.probe_failure:
            console.print(f"  probe: {result.probe_failure}")
        if result.warnings:
            console.print(f"  notes: {', '.join(result.warnings)}")


async def _run_submission(
    runtime: RuntimeContext,
    *,
    uri: str,
    platform: str,
    content_policy: str,
    claimed_admin: str | None,
    category: str | None,
) -> SubmissionResult:
    config = runtime.config
    async with build_http_client(config.probe) as http:
        api = InstanceApiClient(http, config.probe)
        service = OnboardingService(
            api,
            ChallengeIssuer(api, config.directory),
            runtime.writer,
            DirectMessageSender(http, config.directory),
            runtime.logger,
        )
        result = await service.submit_candidate(
            uri,
            platform,
            content_policy,
            claimed_admin,
            category=category,
        )
        # Deliveries must finish before the client closes.
        await service.drain()
    return result


async def _run_sweep(runtime: RuntimeContext, options: SweepOptions) -> SweepReport:
    async with build_http_client(runtime.config.probe) as http:
        api = InstanceApiClient(http, runtime.config.probe)
        engine = ReconciliationEngine(runtime.store, runtime.writer, api, options)
        return await engine.run()


async def _run_probe(runtime: RuntimeContext, address: str, platform: str) -> ProbeOutcome:
    async with build_http_client(runtime.config.probe) as http:
        api = InstanceApiClient(http, runtime.config.probe)
        return await api.probe(address, platform)


@app.command()
def submit(
    ctx: typer.Context,
    uri: str = typer.Argument(..., help="Hostname (or URL) of the candidate instance."),
    platform: str = PLATFORM_OPTION,
    content_policy: str = typer.Option(
        "sfw",
        "--content-policy",
        help=f"Content policy label ({'|'.join(CONTENT_POLICY_VALUES)}).",
    ),
    admin: str | None = typer.Option(
        None,
        "--admin",
        help="Claimed administrator handle (required for misskey).",
    ),
    category: str | None = typer.Option(
        None,
        "--category",
        help="Optional directory category label.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Submit a candidate instance for onboarding."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "submit",
        args={
            "uri": uri,
            "platform": platform,
            "content_policy": content_policy,
            "admin": admin,
            "category": category,
            "json": json_output,
        },
        target={"kind": "instance", "uri": uri},
    ) as op:
        try:
            runtime.config.directory.require()
        except ConfigError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)

        platform_value = _validate_platform(op, platform)
        policy = content_policy.strip().lower()
        if policy not in CONTENT_POLICY_VALUES:
            _command_error(
                op,
                f"Unsupported content policy '{content_policy}'. "
                f"Expected one of: {', '.join(CONTENT_POLICY_VALUES)}.",
            )

        try:
            result = asyncio.run(
                _run_submission(
                    runtime,
                    uri=uri,
                    platform=platform_value,
                    content_policy=policy,
                    claimed_admin=admin,
                    category=category,
                )
            )
        except StateRegistryError as exc:
            _command_error(op, f"Directory state is unreadable: {exc}", rc=ExitCode.ENVIRONMENT)

        op.add_step(
            "onboarding",
            status="success" if result.ok else "failed",
            detail=result.reason or (f"id={result.instance_id}" if result.instance_id else None),
        )

        if json_output:
            console.print_json(data=result.to_payload())
        elif result.ok:
            console.print(f"[green]{result.message}[/green]")
        else:
            console.print(f"[red]{result.message}[/red]")
            if result.detail:
                console.print(f"  detail: {result.detail}")

        context: dict[str, object] = {"result": result.to_payload()}
        if result.ok:
            context["instance_id"] = result.instance_id
            op.success(result.message, changed=1, context=context)
            return

        if result.detail:
            context["detail"] = result.detail
        op.error(
            result.message,
            errors=[result.reason or "submission-failed"],
            rc=int(ExitCode.VALIDATION),
            context=context,
        )
        raise typer.Exit(code=int(ExitCode.VALIDATION))


@app.command()
def sweep(
    ctx: typer.Context,
    scope: str = typer.Option(
        "banned",
        "--scope",
        help=f"Instances to re-probe ({'|'.join(SWEEP_SCOPE_VALUES)}).",
    ),
    max_concurrency: int | None = typer.Option(
        None,
        "--max-concurrency",
        min=1,
        help="Limit the number of instances probed concurrently.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit a JSON sweep report.",
    ),
) -> None:
    """Re-probe instances and apply health transitions."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "sweep",
        args={"scope": scope, "max_concurrency": max_concurrency, "json": json_output},
        target={"kind": "directory", "scope": scope},
    ) as op:
        if scope not in SWEEP_SCOPE_VALUES:
            _command_error(
                op,
                f"Unknown sweep scope '{scope}'. Expected one of: {', '.join(SWEEP_SCOPE_VALUES)}.",
            )

        options = SweepOptions(
            scope=scope,  # type: ignore[arg-type]
            max_concurrency=(
                max_concurrency
                if max_concurrency is not None
                else runtime.config.sweep.max_concurrency
            ),
        )
        try:
            report = asyncio.run(_run_sweep(runtime, options))
        except StateRegistryError as exc:
            _command_error(op, f"Directory state is unreadable: {exc}", rc=ExitCode.ENVIRONMENT)

        payload = serialize_report(report)
        if json_output:
            console.print_json(data=payload)
        else:
            _render_sweep_report(report)

        changed = sum(
            1
            for result in report.results
            if result.status is not SweepStatus.ERROR
        )
        error_ids = [result.uri for result in report.results if result.is_error]
        if error_ids:
            op.warning(
                report.summary.message,
                warnings=error_ids,
                changed=changed,
                context={"report": payload},
            )
            return
        op.success(report.summary.message, changed=changed, context={"report": payload})


@app.command()
def probe(
    ctx: typer.Context,
    uri: str = typer.Argument(..., help="Hostname (or URL) of the instance to probe."),
    platform: str = PLATFORM_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Fetch and print an instance snapshot without touching the directory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "probe",
        args={"uri": uri, "platform": platform, "json": json_output},
        target={"kind": "instance", "uri": uri},
    ) as op:
        try:
            address = normalize_address(uri)
        except InvalidAddressError as exc:
            _command_error(op, str(exc))
        platform_value = _validate_platform(op, platform)

        outcome = asyncio.run(_run_probe(runtime, address, platform_value))
        if outcome.snapshot is None:
            _command_error(
                op,
                f"Probe of '{address}' failed: {outcome.failure}",
                rc=ExitCode.PROVIDER,
                errors=[outcome.failure.reason if outcome.failure else "probe-failed"],
            )

        data = outcome.snapshot.to_data()
        if json_output:
            console.print_json(data={"uri": address, "platform": platform_value, "data": data})
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Field", style="bold")
            table.add_column("Value")
            for key, value in data.items():
                table.add_row(key, "" if value is None else str(value))
            console.print(table)
        op.success("Probe succeeded.", changed=0, context={"data": data})


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@instances_app.command("list")
def instances_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
    banned: bool = typer.Option(
        False,
        "--banned",
        help="Only list banned instances.",
    ),
) -> None:
    """List registered instances and their health."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances list",
        args={"json": json_output, "banned": banned},
        target={"kind": "instance", "scope": "directory"},
    ) as op:
        try:
            entries = runtime.store.find_many({"banned": True} if banned else None)
        except StateRegistryError as exc:
            _command_error(op, f"Directory state is unreadable: {exc}", rc=ExitCode.ENVIRONMENT)

        if json_output:
            console.print_json(data={"instances": [dict(entry) for entry in entries]})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("URI")
        table.add_column("Platform")
        table.add_column("Policy")
        table.add_column("Verified")
        table.add_column("Failed checks")
        table.add_column("Banned")

        if not entries:
            table.add_row("(none)", "", "", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry["id"]),
                    entry["uri"],
                    entry["platform"],
                    entry["content_policy"],
                    "yes" if entry["verified"] else "no",
                    str(entry["failed_checks"]),
                    "yes" if entry["banned"] else "no",
                )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("show")
def instances_show(
    ctx: typer.Context,
    uri: str = typer.Argument(..., help="Hostname of the instance to display."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instance details as JSON.",
    ),
) -> None:
    """Show a single registered instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "instances show",
        args={"uri": uri, "json": json_output},
        target={"kind": "instance", "uri": uri},
    ) as op:
        try:
            address = normalize_address(uri)
        except InvalidAddressError as exc:
            _command_error(op, str(exc))
        try:
            entry = runtime.store.get_by_uri(address)
        except StateRegistryError as exc:
            _command_error(op, f"Directory state is unreadable: {exc}", rc=ExitCode.ENVIRONMENT)
        if entry is None:
            _command_error(op, f"Instance '{address}' is not registered.")

        payload = dict(entry)
        if json_output:
            console.print_json(data=payload)
            op.success("Reported instance details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        table.add_column("Field", style="bold")
        table.add_column("Value")
        for key, value in payload.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = "" if value is None else str(value)
            table.add_row(key, rendered)
        console.print(table)
        op.success("Reported instance details.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
