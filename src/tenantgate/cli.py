"""tenantgate CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import os
import sys
from typing import Any

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from tenantgate.core.config import apply_file_config, clear_config, get_config
from tenantgate.core.logging import configure_logging
from tenantgate.domains.collaborators import StaticTenantDirectory
from tenantgate.domains.errors import DomainError, NotFound

console = Console()

STATUS_COLORS = {
    "pending_verification": "yellow",
    "active": "green",
    "error": "red",
    "deleting": "dim",
}

STATE_COLORS = {"healthy": "green", "warning": "yellow", "error": "red", "unknown": "dim"}


def _build(storage: str | None, plan: str | None = None, tenant_id: str | None = None):
    from tenantgate.domains.manager import build_manager

    tenants = None
    if plan and tenant_id:
        domains = get_config().domains
        tenants = StaticTenantDirectory(
            {**domains.tenant_plans, tenant_id: plan}, default=domains.default_plan
        )
    return build_manager(storage_path=storage, tenants=tenants)


def _fail(error: DomainError) -> None:
    console.print(f"[red]Error:[/red] {error.message}")
    for key, value in error.details.items():
        console.print(f"  [dim]{key}:[/dim] {value}")
    if error.retry_after is not None:
        console.print(f"  [dim]retry after:[/dim] {error.retry_after}s")
    sys.exit(1)


async def _find(manager: Any, domain_name: str):
    mapping = await manager.registry.find_by_name(domain_name.strip().lower().rstrip("."))
    if mapping is None:
        raise NotFound(f"Domain not found: {domain_name}")
    return mapping


@click.group()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--log-level", default=None, help="Log level (debug, info, warning, error)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def main(config_file: str | None, log_level: str | None, verbose: bool):
    """tenantgate - tenant domain management.

    Maps platform subdomains and verified custom domains to tenants and
    manages their TLS certificates.
    """
    if config_file:
        os.environ.update(apply_file_config(config_file))
        clear_config()
    server = get_config().server
    level = "debug" if verbose else (log_level or server.log_level)
    configure_logging(level, json_output=server.log_json)


@main.command()
@click.option("--bind", default=None, help="host:port for the management API")
@click.option("--storage", default=None, help="Path to domain storage file")
@click.option("--no-scheduler", is_flag=True, help="Do not run background jobs")
def serve(bind: str | None, storage: str | None, no_scheduler: bool):
    """Run the management API and background jobs."""
    try:
        asyncio.run(_serve_async(bind, storage, not no_scheduler))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


async def _serve_async(bind: str | None, storage: str | None, scheduler_enabled: bool):
    from tenantgate.server.app import ApiServer

    settings = get_config().server
    manager = _build(storage)
    server = ApiServer(
        manager,
        bind=bind or settings.bind,
        metrics_enabled=settings.metrics_enabled,
        scheduler_enabled=scheduler_enabled and settings.scheduler_enabled,
    )
    await server.start()
    console.print(
        Panel(
            f"[bold]API:[/bold] http://{bind or settings.bind}\n"
            f"[bold]Base domain:[/bold] {manager.base_domain}\n"
            f"[bold]Scheduler:[/bold] {'on' if scheduler_enabled else 'off'}",
            title="tenantgate",
            border_style="green",
        )
    )
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


@main.group()
def config():
    """View configuration settings.

    All settings can be configured via environment variables with the
    TENANTGATE_ prefix.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only one section (domains, certificates, health, resolver, server)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings."""
    display = get_config().to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        click.echo(json.dumps(display, indent=2, default=str))
        return

    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")
        for key, value in settings.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, f"TENANTGATE_{key.upper()}")
        console.print(table)
        console.print()


@main.group()
def domain():
    """Manage tenant domains.

    Examples:

        tenantgate domain add shop.example.com --tenant t-1 --plan premium

        tenantgate domain verify shop.example.com

        tenantgate domain list --tenant t-1

        tenantgate domain remove shop.example.com
    """
    pass


@domain.command("add")
@click.argument("domain_name")
@click.option("--tenant", "-t", "tenant_id", required=True, help="Owning tenant ID")
@click.option("--plan", help="Tenant plan (foundation, growth, premium, enterprise)")
@click.option("--subdomain", is_flag=True, help="Register a platform subdomain label")
@click.option(
    "--method",
    type=click.Choice(["dns", "file", "email"]),
    default="dns",
    help="Verification method",
)
@click.option("--storage", default=None, help="Path to domain storage file")
def domain_add(domain_name: str, tenant_id: str, plan: str | None, subdomain: bool, method: str, storage: str | None):
    """Register a subdomain or custom domain for a tenant."""
    asyncio.run(_domain_add_async(domain_name, tenant_id, plan, subdomain, method, storage))


async def _domain_add_async(
    domain_name: str, tenant_id: str, plan: str | None, subdomain: bool, method: str, storage: str | None
):
    manager = _build(storage, plan, tenant_id)
    try:
        result = await manager.add_domain(
            tenant_id,
            domain_name,
            kind="subdomain" if subdomain else "custom",
            verification_method=method,
            actor="cli",
            metadata={"source": "cli"},
        )
    except DomainError as e:
        _fail(e)
        return

    mapping = result["domain"]
    setup = result["setup"]
    lines = [
        "[green]Domain registered![/green]\n",
        f"[bold]Domain:[/bold] {mapping['domain']}",
        f"[bold]ID:[/bold] {mapping['id']}",
        f"[bold]Status:[/bold] {mapping['status']}\n",
    ]
    if setup["records"]:
        lines.append("[yellow]Configure these DNS records:[/yellow]\n")
        for i, record in enumerate(setup["records"], 1):
            lines.append(f"{i}. [bold]{record['type']} Record[/bold]")
            lines.append(f"   Name: {record['name']}")
            lines.append(f"   Value: {record['value']}")
            lines.append(f"   TTL: {record['ttl']}\n")
        lines.append("After configuring DNS, run:")
        lines.append(f"  [cyan]tenantgate domain verify {mapping['domain']}[/cyan]")
    console.print(Panel("\n".join(lines), title="Domain Registration", border_style="green"))


@domain.command("verify")
@click.argument("domain_name")
@click.option("--storage", default=None, help="Path to domain storage file")
def domain_verify(domain_name: str, storage: str | None):
    """Check DNS records and activate the domain."""
    asyncio.run(_domain_verify_async(domain_name, storage))


async def _domain_verify_async(domain_name: str, storage: str | None):
    manager = _build(storage)
    try:
        mapping = await _find(manager, domain_name)
        console.print(f"Verifying DNS records for [cyan]{mapping.domain}[/cyan]...", style="yellow")
        outcome = await manager.verify_domain(mapping.tenant_id, mapping.id, actor="cli")
        await manager.lifecycle.wait_idle()
    except DomainError as e:
        _fail(e)
        return

    if outcome["verified"]:
        console.print(
            Panel(
                f"[green]Domain verified![/green]\n\n"
                f"[bold]Domain:[/bold] {outcome['domain']}\n"
                f"[bold]Certificate requested:[/bold] {'yes' if outcome['certificate_requested'] else 'no'}",
                title="Verification Successful",
                border_style="green",
            )
        )
        return

    body = [f"[yellow]Verification incomplete ({outcome['status']})[/yellow]\n"]
    body.extend(f"[red]-[/red] {issue}" for issue in outcome["issues"])
    if outcome["suggestions"]:
        body.append("")
        body.extend(f"[cyan]>[/cyan] {tip}" for tip in outcome["suggestions"])
    if outcome["retry_after_seconds"]:
        body.append(f"\nNext automatic check in {outcome['retry_after_seconds']}s")
    console.print(Panel("\n".join(body), title="Verification Status", border_style="yellow"))
    sys.exit(1)


@domain.command("list")
@click.option("--tenant", "-t", "tenant_id", default=None, help="Only this tenant's domains")
@click.option("--storage", default=None, help="Path to domain storage file")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def domain_list(tenant_id: str | None, storage: str | None, json_output: bool):
    """List registered domains."""
    asyncio.run(_domain_list_async(tenant_id, storage, json_output))


async def _domain_list_async(tenant_id: str | None, storage: str | None, json_output: bool):
    manager = _build(storage)
    if tenant_id:
        mappings = await manager.registry.list_for_tenant(tenant_id)
    else:
        mappings = await manager.registry.store.list_all()

    if json_output:
        click.echo(json.dumps([m.to_public_dict() for m in mappings], indent=2, default=str))
        return

    if not mappings:
        console.print("[dim]No domains registered[/dim]")
        return

    table = Table(title="Registered Domains")
    table.add_column("Domain", style="cyan")
    table.add_column("Tenant", style="dim")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Certificate")
    table.add_column("Created At")
    for mapping in mappings:
        color = STATUS_COLORS.get(mapping.status.value, "white")
        created = mapping.audit.created_at.strftime("%Y-%m-%d %H:%M") if mapping.audit.created_at else "N/A"
        table.add_row(
            mapping.domain,
            mapping.tenant_id,
            mapping.kind.value,
            f"[{color}]{mapping.status.value}[/{color}]",
            mapping.certificate.state.value,
            created,
        )
    console.print(table)


@domain.command("status")
@click.argument("domain_name")
@click.option("--storage", default=None, help="Path to domain storage file")
def domain_status(domain_name: str, storage: str | None):
    """Show detailed status for a domain."""
    asyncio.run(_domain_status_async(domain_name, storage))


async def _domain_status_async(domain_name: str, storage: str | None):
    manager = _build(storage)
    try:
        mapping = await _find(manager, domain_name)
    except DomainError as e:
        _fail(e)
        return

    data = mapping.to_public_dict()
    color = STATUS_COLORS.get(mapping.status.value, "white")
    current = mapping.certificate.current
    content = (
        f"[bold]Domain:[/bold] {mapping.domain}\n"
        f"[bold]Tenant:[/bold] {mapping.tenant_id}\n"
        f"[bold]Status:[/bold] [{color}]{mapping.status.value}[/{color}]\n"
        f"[bold]Verification:[/bold] {mapping.verification.method.value}, "
        f"{mapping.verification.attempts} attempts"
        f"{' (stalled)' if mapping.verification.stalled else ''}\n"
        f"[bold]Certificate:[/bold] {data['ssl_status']}"
        f"{f' until {current.expires_at:%Y-%m-%d}' if current else ''}\n"
        f"[bold]Health:[/bold] {mapping.health.overall.value} ({data['uptime_percent']}% uptime)"
    )
    if mapping.verification.last_issues:
        content += "\n\n[yellow]Issues:[/yellow]\n" + "\n".join(
            f"- {issue}" for issue in mapping.verification.last_issues
        )
    console.print(Panel(content, title="Domain Status", border_style=color))


@domain.command("remove")
@click.argument("domain_name")
@click.option("--storage", default=None, help="Path to domain storage file")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
def domain_remove(domain_name: str, storage: str | None, yes: bool):
    """Remove a domain and revoke its certificates."""
    if not yes:
        click.confirm(f"Remove {domain_name}?", abort=True)
    asyncio.run(_domain_remove_async(domain_name, storage))


async def _domain_remove_async(domain_name: str, storage: str | None):
    manager = _build(storage)
    try:
        mapping = await _find(manager, domain_name)
        result = await manager.remove_domain(mapping.tenant_id, mapping.id, actor="cli")
    except DomainError as e:
        _fail(e)
        return
    if result["removed"]:
        console.print(f"[green]Removed:[/green] {mapping.domain}")
    else:
        console.print(f"[dim]Nothing to remove for {mapping.domain}[/dim]")


@domain.command("renew")
@click.argument("domain_name")
@click.option("--storage", default=None, help="Path to domain storage file")
def domain_renew(domain_name: str, storage: str | None):
    """Renew the managed certificate of an active domain."""
    asyncio.run(_domain_renew_async(domain_name, storage))


async def _domain_renew_async(domain_name: str, storage: str | None):
    manager = _build(storage)
    try:
        mapping = await _find(manager, domain_name)
        certificate = await manager.renew_certificate(mapping.tenant_id, mapping.id, actor="cli")
    except DomainError as e:
        _fail(e)
        return
    console.print(
        f"[green]Certificate {certificate['serial']}[/green] valid until {certificate['expires_at']}"
    )


@domain.command("health")
@click.argument("domain_name")
@click.option("--no-http", is_flag=True, help="Skip the HTTP probe")
@click.option("--storage", default=None, help="Path to domain storage file")
def domain_health(domain_name: str, no_http: bool, storage: str | None):
    """Run a health check for a domain."""
    asyncio.run(_domain_health_async(domain_name, not no_http, storage))


async def _domain_health_async(domain_name: str, include_http: bool, storage: str | None):
    manager = _build(storage)
    try:
        mapping = await _find(manager, domain_name)
        report = await manager.get_health(mapping.tenant_id, mapping.id, include_http=include_http)
    except DomainError as e:
        _fail(e)
        return

    table = Table(title=f"Health: {report['domain']}")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Message")
    for name, check in report["checks"].items():
        color = STATE_COLORS.get(check["status"], "white")
        table.add_row(name, f"[{color}]{check['status']}[/{color}]", check["message"])
    console.print(table)
    for tip in report["recommendations"]:
        console.print(f"[cyan]>[/cyan] {tip}")
    if report["overall"] == "error":
        sys.exit(1)


@main.command()
@click.argument("host")
@click.option("--storage", default=None, help="Path to domain storage file")
def resolve(host: str, storage: str | None):
    """Show which tenant serves HOST."""
    tenant_id = asyncio.run(_build(storage).resolve_tenant(host))
    if tenant_id is None:
        console.print(f"[red]No tenant serves[/red] {host}")
        sys.exit(1)
    console.print(f"{host} -> [green]{tenant_id}[/green]")


@main.command()
@click.option("--storage", default=None, help="Path to domain storage file")
def sweep(storage: str | None):
    """Run one certificate renewal sweep."""
    report = asyncio.run(_build(storage).lifecycle.renewal_sweep())
    console.print(
        f"Renewed [green]{len(report.renewed)}[/green], "
        f"skipped {len(report.skipped)}, failed [red]{len(report.failed)}[/red]"
    )
    for domain_name, error in report.failed.items():
        console.print(f"  [red]{domain_name}[/red]: {error}")
    if report.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
