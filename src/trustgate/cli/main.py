"""
TrustGate CLI Main Entry Point
"""

import json
import sys
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from trustgate import __version__
from trustgate.core.config import Settings, get_settings
from trustgate.core.logging import get_logger
from trustgate.database.session import create_database_engine, init_database
from trustgate.security.models import SecurityEventType
from trustgate.security.risk import AccessAction, ResourceSensitivity
from trustgate.security.service import TrustAccessService, create_trust_service

logger = get_logger(__name__)
console = Console()

app = typer.Typer(
    name="trustgate",
    help="TrustGate - MFA, zero-trust evaluation and access risk engine",
    rich_markup_mode="rich",
    no_args_is_help=True,
)

_state = {"database_url": None}

ACTION_STYLES = {
    AccessAction.ALLOW: "green",
    AccessAction.MONITOR: "yellow",
    AccessAction.REQUIRE_MFA: "magenta",
    AccessAction.DENY: "bold red",
}


def _settings() -> Settings:
    config = get_settings()
    if _state["database_url"]:
        config = config.model_copy(update={"DATABASE_URL": _state["database_url"]})
    return config


def _service() -> TrustAccessService:
    return create_trust_service(_settings())


def _flag(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"[bold blue]TrustGate[/bold blue] version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    database_url: Optional[str] = typer.Option(
        None,
        "--database-url",
        help="Override TRUSTGATE_DATABASE_URL"
    ),
) -> None:
    """
    TrustGate - Trust & Access Risk Engine
    """
    _state["database_url"] = database_url


@app.command()
def info() -> None:
    """
    Show configuration summary
    """
    config = _settings()
    info_text = Text()
    info_text.append("TrustGate Trust & Access Risk Engine\n", style="bold blue")
    info_text.append(f"Version: {__version__}\n", style="green")
    info_text.append(f"Environment: {config.ENVIRONMENT}\n", style="yellow")
    info_text.append(f"Python: {sys.version.split()[0]}\n", style="cyan")
    info_text.append(f"Cache backend: {config.CACHE_BACKEND}\n")
    info_text.append(f"Timezone: {config.TIMEZONE}\n")
    info_text.append(f"Trusted networks: {', '.join(config.TRUSTED_NETWORKS) or '-'}\n")
    info_text.append(f"Blacklisted IPs: {len(config.BLACKLISTED_IPS)}")

    console.print(Panel(
        info_text,
        title="[bold blue]System Information[/bold blue]",
        border_style="blue"
    ))


@app.command("init-db")
def init_db() -> None:
    """
    Create the MFA device and security log tables
    """
    config = _settings()
    try:
        engine = create_database_engine(config=config)
        init_database(engine)
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        console.print(f"[bold red]✗[/bold red] Database initialization failed: {e}")
        raise typer.Exit(1)

    console.print(f"[bold green]✓[/bold green] Schema ready on {engine.url.render_as_string(hide_password=True)}")


@app.command()
def assess(
    user_id: str = typer.Argument(..., help="User to assess"),
    action: str = typer.Argument(..., help="Action being attempted"),
    ip_address: str = typer.Argument(..., help="Source IP address"),
    sensitivity: ResourceSensitivity = typer.Option(
        ResourceSensitivity.MEDIUM, "--sensitivity", "-s", help="Resource sensitivity"
    ),
    tenant_id: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    user_agent: Optional[str] = typer.Option(None, "--user-agent", help="Client user agent"),
) -> None:
    """
    Run a risk assessment and print the access decision
    """
    result = _service().assess_risk(user_id, action, ip_address, user_agent, sensitivity, tenant_id)

    table = Table(title="Risk Factors")
    table.add_column("Factor", style="cyan")
    table.add_column("Impact", justify="right")
    table.add_column("Description")
    for factor in result.factors:
        table.add_row(factor.factor, f"{factor.impact:.2f}", factor.description)

    style = ACTION_STYLES[result.action]
    console.print(table)
    console.print(Panel(
        f"Risk score: [bold]{result.risk_score}[/bold]\n"
        f"Decision: [{style}]{result.action.value}[/{style}]\n"
        f"[dim]{result.recommendation}[/dim]",
        title="[bold blue]Access Decision[/bold blue]",
        border_style=style.split()[-1],
    ))


@app.command()
def evaluate(
    user_id: str = typer.Argument(..., help="User to evaluate"),
    ip_address: str = typer.Argument(..., help="Source IP address"),
    tenant_id: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    fingerprint: Optional[str] = typer.Option(None, "--fingerprint", "-f", help="Device fingerprint"),
    user_agent: Optional[str] = typer.Option(None, "--user-agent", help="Client user agent"),
) -> None:
    """
    Run a zero-trust evaluation
    """
    result = _service().evaluate_zero_trust(
        user_id, ip_address, user_agent, tenant_id, device_fingerprint=fingerprint
    )

    table = Table(title="Zero-Trust Evaluation")
    table.add_column("Signal", style="cyan")
    table.add_column("Trusted", justify="center")
    table.add_row("Device", _flag(result.device_trusted))
    table.add_row("Location", _flag(result.location_trusted))
    table.add_row("Behavior", _flag(result.behavior_trusted))
    table.add_row("Time", _flag(result.time_trusted))
    console.print(table)

    style = "yellow" if result.needs_attention else "green"
    console.print(f"Overall trust: [{style}]{result.overall_trust:.2f}[/{style}]")


@app.command()
def analytics(
    tenant_id: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    days: int = typer.Option(30, "--days", "-d", min=1, help="Window in days"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw report as JSON"),
) -> None:
    """
    Show security analytics for a tenant
    """
    report = _service().get_security_analytics(tenant_id, days)

    if as_json:
        console.print_json(report.model_dump_json())
        return

    console.print(Panel(
        f"Events: [bold]{report.total_events}[/bold] over {report.window_days} days\n"
        f"Risk: low {report.risk_distribution.low} / medium {report.risk_distribution.medium} / "
        f"high {report.risk_distribution.high} / critical {report.risk_distribution.critical}\n"
        f"MFA adoption: {report.mfa_usage.adoption_rate:.0%}  "
        f"verified: {report.mfa_usage.verification_rate:.0%}  "
        f"recent use: {report.mfa_usage.usage_rate:.0%}",
        title=f"[bold blue]Security Analytics - {tenant_id}[/bold blue]",
        border_style="blue",
    ))

    if report.events_by_type:
        by_type = Table(title="Events by Type")
        by_type.add_column("Event", style="cyan")
        by_type.add_column("Count", justify="right")
        for event_type, count in report.events_by_type.items():
            by_type.add_row(event_type, str(count))
        console.print(by_type)

    if report.top_risk_ips:
        ips = Table(title="Top Risk IPs")
        ips.add_column("IP", style="cyan")
        ips.add_column("Events", justify="right")
        ips.add_column("Avg risk", justify="right")
        for entry in report.top_risk_ips:
            ips.add_row(entry.ip_address, str(entry.event_count), f"{entry.average_risk:.1f}")
        console.print(ips)


@app.command()
def events(
    tenant_id: str = typer.Option("default", "--tenant", "-t", help="Tenant id"),
    user_id: Optional[str] = typer.Option(None, "--user", "-u", help="Filter by user"),
    event_type: Optional[SecurityEventType] = typer.Option(None, "--type", help="Filter by event type"),
    min_risk: Optional[float] = typer.Option(None, "--min-risk", help="Minimum risk score"),
    since: Optional[datetime] = typer.Option(None, "--since", help="Start of the window"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, max=1000, help="Maximum rows"),
    as_json: bool = typer.Option(False, "--json", help="Print events as JSON lines"),
) -> None:
    """
    Query the security event log
    """
    rows = _service().query_events(
        tenant_id,
        user_id=user_id,
        action=event_type,
        start_date=since,
        min_risk_score=min_risk,
        limit=limit,
    )

    if as_json:
        for row in rows:
            typer.echo(json.dumps(row.model_dump(mode="json")))
        return

    table = Table(title=f"Security Events ({len(rows)})")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("User")
    table.add_column("IP")
    table.add_column("Risk", justify="right")
    table.add_column("Status")
    for row in rows:
        table.add_row(
            row.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            row.event_type.value,
            row.user_id or "-",
            row.ip_address,
            f"{row.risk_score:.0f}",
            row.status.value,
        )
    console.print(table)


if __name__ == "__main__":
    app()
