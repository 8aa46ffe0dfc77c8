"""Typer-powered command line interface for ``ironstack``.

Commands are thin: they resolve the shared :class:`RuntimeContext`, call into
the lifecycle orchestrator (which records its own structured operation log)
and render results with Rich. Package errors are mapped onto the documented
exit codes by :func:`_fail`.
"""
from __future__ import annotations

import json
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .backups import BackupArchiver, BackupsRegistry
from .config import AppConfig, ConfigError, load_config
from .errors import IronstackError, NotFoundError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import StructuredLogger
from .providers import CaddyConfigGenerator, CaddyController, MariaDBProvisioner, WordPressCLIFactory
from .sites.inspector import DomainInspector
from .sites.models import SiteEntry
from .sites.naming import validate_domain
from .sites.orchestrator import SiteLifecycleOrchestrator
from .sites.wpconfig import read_credentials
from .state import StateRegistry
from .templates import TemplateEngine
from .tls import CertificateProbe, CertificateStatus, TLSProbe

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to ironstack's YAML config file.",
)
JSON_OPTION = typer.Option(False, "--json", help="Emit machine-readable JSON.")
YES_OPTION = typer.Option(
    False,
    "--yes",
    help="Skip confirmation prompt and proceed non-interactively.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        ironstack: single-host WordPress control panel.

        Provisions sites behind Caddy with MariaDB and WP-CLI, manages staging
        copies, domain aliases, backups and certificate checks.
        """
    ).strip(),
)
site_app = typer.Typer(help="Create, clone, delete and inspect sites.")
staging_app = typer.Typer(help="Manage staging copies of production sites.")
domain_app = typer.Typer(help="Manage domain aliases.")
tls_app = typer.Typer(help="Inspect served TLS certificates.")
backup_app = typer.Typer(help="Create, list, restore and delete site backups.")
config_app = typer.Typer(help="Inspect the resolved configuration.")

app.add_typer(site_app, name="site")
app.add_typer(staging_app, name="staging")
app.add_typer(domain_app, name="domain")
app.add_typer(tls_app, name="tls")
app.add_typer(backup_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    orchestrator: SiteLifecycleOrchestrator
    inspector: DomainInspector
    probe: TLSProbe
    archiver: BackupArchiver


def build_runtime(config: AppConfig) -> RuntimeContext:
    """Wire providers and workflows for *config*."""
    registry = StateRegistry(config.registry_dir)
    locks = LockManager(config.runtime_dir, config.lock_timeout)
    logger = StructuredLogger(config.logs_dir)
    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime_factory = WordPressCLIFactory(
        cli_bin=config.wordpress.cli_bin,
        allow_root=config.wordpress.allow_root,
        command_timeout=config.command_timeout,
    )
    archiver = BackupArchiver(
        registry=BackupsRegistry(config.backups.root, config.backups.index),
        runtime_factory=runtime_factory,
        command_timeout=config.command_timeout,
    )
    orchestrator = SiteLifecycleOrchestrator(
        web_root=config.web_root,
        runtime_dir=config.runtime_dir,
        registry=registry,
        locks=locks,
        logger=logger,
        database=MariaDBProvisioner(
            client_bin=config.database.client_bin,
            host=config.database.host,
            command_timeout=config.command_timeout,
        ),
        runtime_factory=runtime_factory,
        config_generator=CaddyConfigGenerator(
            templates=templates,
            web_root=config.web_root,
            cache_backend=config.backends.cache,
            direct_backend=config.backends.direct,
            log_dir=config.caddy.log_dir,
        ),
        proxy=CaddyController(
            sites_dir=config.caddy.sites_dir,
            reload_command=config.caddy.reload_command,
            status_command=config.caddy.status_command,
            command_timeout=min(config.command_timeout, 120.0),
        ),
        backups=archiver,
        templates=templates,
        service_user=config.service_user,
        service_group=config.service_group,
        lock_timeout=config.lock_timeout,
    )
    probe = TLSProbe(port=config.tls.port, timeout=config.tls.probe_timeout)
    inspector = DomainInspector(
        web_root=config.web_root,
        registry=registry,
        aliases=orchestrator.aliases,
        probe=probe,
    )
    return RuntimeContext(
        config=config,
        registry=registry,
        locks=locks,
        logger=logger,
        templates=templates,
        orchestrator=orchestrator,
        inspector=inspector,
        probe=probe,
        archiver=archiver,
    )


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

    config = load_config(config_file=config_file, overrides=overrides)
    runtime = build_runtime(config)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _fail(exc: IronstackError) -> NoReturn:
    """Print *exc* and exit with its mapped code."""
    console.print(f"[red]{escape(str(exc))}[/red]")
    for step, error in exc.compensation_failures:
        console.print(f"[yellow]Rollback of {step} failed: {escape(error)}[/yellow]")
    raise typer.Exit(code=int(exc.exit_code)) from exc


def _confirm(message: str, yes: bool) -> None:
    if yes:
        return
    if not typer.confirm(message, default=False):
        console.print("[yellow]Cancelled.[/yellow]")
        raise typer.Exit(code=int(ExitCode.OK))


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the ironstack version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"ironstack {__version__}")
        raise typer.Exit(code=0)

    try:
        _ensure_runtime(ctx, config_file, lock_timeout)
    except ConfigError as exc:
        _fail(exc)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# site
# ---------------------------------------------------------------------------
@site_app.command("create")
def site_create(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Primary domain of the new site."),
    cache: bool = typer.Option(
        False,
        "--cache/--no-cache",
        help="Route traffic through the page cache instead of PHP directly.",
    ),
) -> None:
    """Provision a new site."""
    runtime = _get_runtime(ctx)
    try:
        site = runtime.orchestrator.create(domain, cache_enabled=cache)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Site {site.domain} created at {site.path}.[/green]")
    console.print(f"Database: {site.db_name} (user {site.db_user})")


@site_app.command("clone")
def site_clone(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Existing site to copy."),
    target: str = typer.Argument(..., help="Domain of the new copy."),
    cache: bool = typer.Option(True, "--cache/--no-cache", help="Enable the page cache."),
) -> None:
    """Clone a site, including its database, to a new domain."""
    runtime = _get_runtime(ctx)
    try:
        site = runtime.orchestrator.clone(source, target, cache_enabled=cache)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Cloned {source} to {site.domain}.[/green]")


@site_app.command("delete")
def site_delete(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site or alias to delete."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete a site: files, database, proxy config and aliases."""
    runtime = _get_runtime(ctx)
    _confirm(f"Delete {domain} and all of its data?", yes)
    try:
        entry = runtime.orchestrator.delete(domain)
    except IronstackError as exc:
        _fail(exc)
    kind = "Site" if isinstance(entry, SiteEntry) else "Alias"
    console.print(f"[green]{kind} {entry.domain} deleted.[/green]")


@site_app.command("list")
def site_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List registered sites."""
    runtime = _get_runtime(ctx)
    try:
        sites = runtime.orchestrator.list_sites()
        links = {
            str(link.get("staging_domain")): str(link.get("production_domain"))
            for link in runtime.registry.list_staging_links()
        }
    except IronstackError as exc:
        _fail(exc)

    if json_output:
        console.print_json(
            data={
                "sites": [
                    {**site.to_record(), "staging_of": links.get(site.domain)} for site in sites
                ]
            }
        )
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain", style="bold")
    table.add_column("Database")
    table.add_column("Cache")
    table.add_column("Staging of")
    table.add_column("Created")
    if not sites:
        table.add_row("(none)", "", "", "", "")
    for site in sites:
        table.add_row(
            site.domain,
            site.db_name,
            "yes" if site.cache_enabled else "no",
            links.get(site.domain, ""),
            site.created_at,
        )
    console.print(table)


@site_app.command("show")
def site_show(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to describe."),
    credentials: bool = typer.Option(
        False,
        "--credentials",
        help="Include the database password read from wp-config.php.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the registry record of a site."""
    runtime = _get_runtime(ctx)
    try:
        site = runtime.orchestrator.get_site(domain)
        if site is None:
            raise NotFoundError(f"Site {domain} is not registered.")
        details: dict[str, object] = site.to_record()
        details["aliases"] = runtime.orchestrator.aliases.aliases_of(site.domain)
        link = runtime.orchestrator.staging_link(site.domain)
        details["staging"] = link.staging_domain if link else None
        details["maintenance"] = (site.public_dir / ".maintenance").exists()
        if credentials:
            try:
                details["db_password"] = read_credentials(site.wp_config).get("DB_PASSWORD")
            except OSError as exc:
                details["db_password"] = None
                console.print(f"[yellow]Cannot read {site.wp_config}: {escape(str(exc))}[/yellow]")
    except IronstackError as exc:
        _fail(exc)

    if json_output:
        console.print_json(data=details)
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in details.items():
        rendered = ", ".join(value) if isinstance(value, list) else str(value)
        table.add_row(key, rendered)
    console.print(table)


@site_app.command("maintenance")
def site_maintenance(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to switch."),
    enabled: bool = typer.Option(True, "--on/--off", help="Enable or disable maintenance mode."),
) -> None:
    """Toggle maintenance mode."""
    runtime = _get_runtime(ctx)
    try:
        changed = runtime.orchestrator.set_maintenance(domain, enabled)
    except IronstackError as exc:
        _fail(exc)
    state = "enabled" if enabled else "disabled"
    suffix = "" if changed else " (no change)"
    console.print(f"[green]Maintenance mode {state} for {domain}{suffix}.[/green]")


# ---------------------------------------------------------------------------
# staging
# ---------------------------------------------------------------------------
@staging_app.command("create")
def staging_create(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Production site to copy."),
) -> None:
    """Create ``staging.<domain>`` as a linked copy of a site."""
    runtime = _get_runtime(ctx)
    try:
        site = runtime.orchestrator.create_staging(domain)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Staging site {site.domain} created for {domain}.[/green]")


@staging_app.command("push")
def staging_push(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Production site to overwrite from its staging copy."),
    yes: bool = YES_OPTION,
    rollback: bool = typer.Option(
        True,
        "--rollback/--no-rollback",
        help="Restore the pre-promote backup automatically if the push fails.",
    ),
) -> None:
    """Promote the staging copy of a site to production."""
    runtime = _get_runtime(ctx)
    _confirm(f"Overwrite production {domain} with its staging copy?", yes)
    try:
        result = runtime.orchestrator.promote(domain, auto_rollback=rollback)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Promoted {result.staging} to {result.production}.[/green]")
    console.print(f"Pre-promote backup: {result.backup.path}")


# ---------------------------------------------------------------------------
# domain
# ---------------------------------------------------------------------------
@domain_app.command("add")
def domain_add(
    ctx: typer.Context,
    site: str = typer.Argument(..., help="Existing site to serve."),
    alias: str = typer.Argument(..., help="Additional domain."),
) -> None:
    """Serve an additional domain from an existing site."""
    runtime = _get_runtime(ctx)
    try:
        entry = runtime.orchestrator.add_alias(site, alias)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]{entry.domain} now serves {entry.target}.[/green]")


@domain_app.command("remove")
def domain_remove(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Alias (or site) to remove."),
    yes: bool = YES_OPTION,
) -> None:
    """Remove an alias; removing a site domain deletes the site."""
    runtime = _get_runtime(ctx)
    try:
        entry = runtime.orchestrator.aliases.resolve(validate_domain(domain))
        if isinstance(entry, SiteEntry):
            _confirm(f"{domain} is a site. Delete it and all of its data?", yes)
        removed = runtime.orchestrator.remove_domain(domain)
    except IronstackError as exc:
        _fail(exc)
    kind = "Site" if isinstance(removed, SiteEntry) else "Alias"
    console.print(f"[green]{kind} {removed.domain} removed.[/green]")


@domain_app.command("list")
def domain_list(
    ctx: typer.Context,
    tls: bool = typer.Option(False, "--tls", help="Probe each domain's certificate."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List every domain under the web root."""
    runtime = _get_runtime(ctx)
    try:
        domains = runtime.inspector.list_domains(check_tls=tls)
    except IronstackError as exc:
        _fail(exc)

    if json_output:
        console.print_json(data={"domains": [info.to_dict() for info in domains]})
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain", style="bold")
    table.add_column("App")
    table.add_column("TLS")
    table.add_column("Staging")
    table.add_column("Alias of")
    if not domains:
        table.add_row("(none)", "", "", "", "")
    for info in domains:
        table.add_row(
            info.domain,
            "yes" if info.has_application else "no",
            info.tls_status or "-",
            "yes" if info.is_staging else "no",
            info.alias_target or "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# tls
# ---------------------------------------------------------------------------
def _format_status(status: CertificateStatus) -> str:
    colours = {
        CertificateStatus.VALID: "green",
        CertificateStatus.UNTRUSTED: "yellow",
        CertificateStatus.EXPIRED: "red",
        CertificateStatus.ABSENT: "yellow",
        CertificateStatus.UNREACHABLE: "red",
    }
    colour = colours.get(status, "white")
    return f"[{colour}]{status.value}[/{colour}]"


def _render_probes(probes: list[CertificateProbe]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Domain", style="bold")
    table.add_column("Status")
    table.add_column("Issuer")
    table.add_column("Expires")
    table.add_column("Days")
    if not probes:
        table.add_row("(none)", "", "", "", "")
    for probe in probes:
        table.add_row(
            probe.domain,
            _format_status(probe.status),
            probe.issuer or "-",
            probe.not_valid_after.date().isoformat() if probe.not_valid_after else "-",
            str(probe.days_remaining) if probe.days_remaining is not None else "-",
        )
    console.print(table)


@tls_app.command("probe")
def tls_probe(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Domain to probe."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the certificate a domain serves."""
    runtime = _get_runtime(ctx)
    try:
        normalized = validate_domain(domain)
    except IronstackError as exc:
        _fail(exc)
    with runtime.logger.operation(
        "tls probe",
        args={"domain": normalized},
        target={"kind": "domain", "name": normalized},
    ) as op:
        probe = runtime.probe.probe(normalized)
        op.add_step("tls.probe", status="success" if probe.is_valid else "warning", detail=probe.status.value)
        op.success(f"Probed {normalized}: {probe.status.value}.", context=probe.to_dict())
    if json_output:
        console.print_json(data=probe.to_dict())
        return
    _render_probes([probe])
    if probe.error:
        console.print(f"[yellow]{escape(probe.error)}[/yellow]")


@tls_app.command("expiring")
def tls_expiring(
    ctx: typer.Context,
    domains: list[str] | None = typer.Argument(None, help="Domains to check (default: all)."),
    days: int | None = typer.Option(
        None,
        "--days",
        help="Report certificates expiring within this many days (default from config).",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """List certificates that expire soon."""
    runtime = _get_runtime(ctx)
    window = days if days is not None else runtime.config.tls.warn_expiry_days
    try:
        targets = [validate_domain(domain) for domain in domains or []]
        if not targets:
            targets = [info.domain for info in runtime.inspector.list_domains()]
    except IronstackError as exc:
        _fail(exc)
    with runtime.logger.operation(
        "tls expiring",
        args={"domains": targets, "days": window},
        target={"kind": "domains", "count": len(targets)},
    ) as op:
        probes = runtime.probe.expiring(targets, window)
        if probes:
            op.warning(
                f"{len(probes)} certificate(s) expire within {window} days.",
                warnings=[probe.domain for probe in probes],
            )
        else:
            op.success(f"No certificates expire within {window} days.")
    if json_output:
        console.print_json(data={"days": window, "expiring": [probe.to_dict() for probe in probes]})
        return
    _render_probes(probes)


# ---------------------------------------------------------------------------
# backup
# ---------------------------------------------------------------------------
@backup_app.command("create")
def backup_create(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to back up."),
    kind: str = typer.Option(
        "full",
        "--type",
        help="full (files and database), database (compressed dump) or files (without uploads).",
    ),
    label: str | None = typer.Option(None, "--label", help="Label stored with the archive."),
) -> None:
    """Archive a site's files, database, or both."""
    runtime = _get_runtime(ctx)
    try:
        artifact = runtime.orchestrator.backup(domain, kind=kind, label=label)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Backup {artifact.id} written to {artifact.path}.[/green]")


@backup_app.command("list")
def backup_list(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site whose backups to list."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List recorded backups for a site."""
    runtime = _get_runtime(ctx)
    try:
        artifacts = runtime.archiver.list_for_domain(validate_domain(domain))
    except IronstackError as exc:
        _fail(exc)
    if json_output:
        console.print_json(data={"backups": [artifact.to_dict() for artifact in artifacts]})
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="bold")
    table.add_column("Type")
    table.add_column("Label")
    table.add_column("Created")
    table.add_column("Size")
    table.add_column("Path")
    if not artifacts:
        table.add_row("(none)", "", "", "", "", "")
    for artifact in artifacts:
        table.add_row(
            artifact.id,
            artifact.kind,
            artifact.label,
            artifact.created_at,
            str(artifact.size_bytes),
            str(artifact.path),
        )
    console.print(table)


@backup_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    domain: str = typer.Argument(..., help="Site to restore."),
    backup_id: str = typer.Argument(..., help="Identifier shown by `backup list`."),
    yes: bool = YES_OPTION,
) -> None:
    """Replace a site's files and database with a backup."""
    runtime = _get_runtime(ctx)
    _confirm(f"Replace {domain} with backup {backup_id}?", yes)
    try:
        artifact = runtime.archiver.get(backup_id)
        runtime.orchestrator.restore(domain, artifact)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Restored {domain} from {artifact.id}.[/green]")


@backup_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    backup_id: str = typer.Argument(..., help="Identifier shown by `backup list`."),
    yes: bool = YES_OPTION,
) -> None:
    """Delete a backup archive and its index entry."""
    runtime = _get_runtime(ctx)
    _confirm(f"Delete backup {backup_id}?", yes)
    try:
        artifact = runtime.orchestrator.delete_backup(backup_id)
    except IronstackError as exc:
        _fail(exc)
    console.print(f"[green]Deleted backup {artifact.id} ({artifact.path}).[/green]")


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the merged configuration."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()
    if json_output:
        console.print_json(data=data)
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Key", style="bold")
    table.add_column("Value")
    for key, value in data.items():
        rendered = json.dumps(value, indent=2, sort_keys=True) if isinstance(value, dict) else str(value)
        table.add_row(key, rendered)
    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "build_runtime", "main"]
