"""Typer-powered command line interface for ``certcompanion``.

``run`` starts the reconciliation daemon, ``renew`` and ``cleanup`` execute a
single pass for operators and cron jobs, and ``status`` reports the managed
certificate bundles. Every command shares one :class:`RuntimeContext` that is
built from the resolved configuration the first time it is needed.
"""
from __future__ import annotations

import json
import logging
import textwrap
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .accounts import AccountManager, ZeroSSLClient
from .aliases import AliasStore
from .config import AppConfig, ConfigError, load_config
from .daemon import ServiceDaemon
from .exit_codes import ExitCode
from .issuance import IssuanceOrchestrator
from .logging import StructuredLogger
from .models import IssueOutcome
from .providers import AcmeShClient, ContainerProvider, NginxProvider
from .reconcile import PROXY_DOWN_REASON, CycleReport, Reconciler
from .services import ServiceFeed
from .status import BundleStatus, collect_status
from .templates import TemplateEngine

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    help="Path to an alternate configuration file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Keep ACME certificates for proxied services issued, renewed and
        aliased for nginx.
        """
    ).strip(),
)


@dataclass(slots=True)
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    templates: TemplateEngine
    nginx: NginxProvider
    containers: ContainerProvider
    acme_client: AcmeShClient
    aliases: AliasStore
    accounts: AccountManager
    orchestrator: IssuanceOrchestrator
    feed: ServiceFeed
    reconciler: Reconciler


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc

    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    nginx = NginxProvider(
        templates=templates,
        vhost_dir=config.proxy.vhost_dir,
        conf_dir=config.proxy.conf_dir,
        pid_file=config.proxy.pid_file,
        webroot=config.acme.webroot,
        nginx_bin=config.proxy.nginx_bin,
    )
    containers = ContainerProvider(docker_bin=config.runtime.docker_bin)
    acme_client = AcmeShClient(acme_bin=config.acme.client_bin)
    aliases = AliasStore(config.cert_dir, config.files)
    accounts = AccountManager(config.acme_home, config.acme, ZeroSSLClient())
    orchestrator = IssuanceOrchestrator(
        config=config,
        acme_client=acme_client,
        aliases=aliases,
        nginx=nginx,
        containers=containers,
        defer_reload=config.proxy.reload_per_cycle,
    )
    feed = ServiceFeed(config.services_file, config.standalone_file)
    reconciler = Reconciler(
        acme=config.acme,
        feed=feed,
        accounts=accounts,
        orchestrator=orchestrator,
        aliases=aliases,
        nginx=nginx,
        logger=logger,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        templates=templates,
        nginx=nginx,
        containers=containers,
        acme_client=acme_client,
        aliases=aliases,
        accounts=accounts,
        orchestrator=orchestrator,
        feed=feed,
        reconciler=reconciler,
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
        help="Show the certcompanion version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Emit debug diagnostics.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    runtime = _ensure_runtime(ctx, config_file)
    if runtime.config.acme.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"certcompanion {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=ExitCode.OK)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


def _print_json(payload: object) -> None:
    console.print(json.dumps(payload, indent=2), markup=False, highlight=False, soft_wrap=True)


@app.command()
def run(
    ctx: typer.Context,
    force_renew: bool = typer.Option(
        False,
        "--force-renew",
        help="Force renewal of every certificate on the first pass.",
    ),
    source_only: bool = typer.Option(
        False,
        "--source-only",
        help="Load configuration and components, then exit without starting the daemon.",
    ),
) -> None:
    """Reconcile certificates now and then every ``update_interval`` seconds."""
    runtime = _get_runtime(ctx)
    if source_only:
        with runtime.logger.operation(
            "run --source-only",
            args={"source_only": True},
            target={"kind": "meta", "scope": "components"},
        ) as op:
            console.print(
                f"certcompanion {__version__}: components loaded from "
                f"{runtime.config.config_file}; daemon not started."
            )
            op.success("Loaded components without starting the daemon.", changed=0)
        return

    interval = runtime.config.update_interval
    console.print(
        f"certcompanion {__version__}: reconciling every {interval:.0f} seconds"
        + (" (forced renewal on the first pass)." if force_renew else ".")
    )
    ServiceDaemon(runtime.reconciler, interval).run(force_renew=force_renew)


@app.command()
def renew(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Renew even when not yet due."),
    json_output: bool = typer.Option(False, "--json", help="Emit the cycle summary as JSON."),
) -> None:
    """Run a single reconciliation pass."""
    runtime = _get_runtime(ctx)
    report = runtime.reconciler.run_cycle(force_renew=force)
    if json_output:
        _print_json(
            {
                **report.to_dict(),
                "services": [
                    {
                        "id": result.service_id,
                        "outcome": result.outcome.value,
                        "restarted": result.restarted,
                        "message": result.message,
                    }
                    for result in report.results
                ],
            }
        )
    else:
        _render_cycle(report)

    if report.skipped:
        rc = ExitCode.ENVIRONMENT if report.reason == PROXY_DOWN_REASON else ExitCode.VALIDATION
        if not json_output:
            console.print(f"[red]Reconciliation skipped: {report.reason}[/red]")
        raise typer.Exit(code=rc)
    if report.count(IssueOutcome.FAILED):
        raise typer.Exit(code=ExitCode.PROVIDER)


@app.command()
def cleanup(ctx: typer.Context) -> None:
    """Remove aliases and standalone configs for services no longer declared."""
    runtime = _get_runtime(ctx)
    report = runtime.reconciler.prune()
    if report.skipped:
        console.print(f"[red]Cleanup skipped: {report.reason}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION)
    console.print(
        f"Removed aliases for {report.aliases_removed} domain(s) and "
        f"{report.standalone_removed} standalone server block(s)."
    )
    if report.reloaded:
        console.print("[green]nginx reloaded.[/green]")


@app.command()
def status(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit status as JSON."),
) -> None:
    """List managed certificate bundles and their validity windows."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"json": json_output},
        target={"kind": "certificates", "cert_dir": str(runtime.config.cert_dir)},
    ) as op:
        statuses = collect_status(runtime.aliases)
        now = datetime.now(UTC)
        if json_output:
            _print_json({"bundles": [item.to_dict(now) for item in statuses]})
        elif not statuses:
            console.print(f"No managed certificates in {runtime.config.cert_dir}.")
        else:
            _render_status(statuses, now)
        op.success("Reported certificate status.", changed=0, context={"bundles": len(statuses)})


def _render_cycle(report: CycleReport) -> None:
    if report.results:
        table = Table("Service", "Outcome", "Restarted", "Details")
        for result in report.results:
            table.add_row(
                result.service_id,
                _format_outcome(result.outcome),
                "yes" if result.restarted else "",
                result.message,
            )
        console.print(table)
    console.print(
        f"Issued {report.count(IssueOutcome.ISSUED)}, "
        f"not due {report.count(IssueOutcome.SKIPPED)}, "
        f"failed {report.count(IssueOutcome.FAILED)}; "
        f"removed aliases for {report.aliases_removed} domain(s)."
        + (" nginx reloaded." if report.reloaded else "")
    )


def _format_outcome(outcome: IssueOutcome) -> str:
    if outcome is IssueOutcome.ISSUED:
        return "[green]issued[/green]"
    if outcome is IssueOutcome.SKIPPED:
        return "[cyan]not due[/cyan]"
    return "[red]failed[/red]"


def _render_status(statuses: list[BundleStatus], now: datetime) -> None:
    table = Table("Bundle", "Domains", "Not after", "Days left", "Notes")
    for item in statuses:
        notes = [label for label, flag in (("staging", item.staging), ("wildcard", item.wildcard)) if flag]
        if item.error:
            notes.append(f"[red]{item.error}[/red]")
        days = item.days_remaining(now)
        table.add_row(
            item.name,
            ", ".join(item.domains) or "-",
            item.not_valid_after.strftime("%Y-%m-%d") if item.not_valid_after else "-",
            "-" if days is None else str(days),
            "; ".join(notes),
        )
    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()
