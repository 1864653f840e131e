"""apihub CLI: inspect the environment topology and reconcile credential scopes."""

import asyncio
import logging
from datetime import datetime
from pathlib import Path

import typer
import yaml
from pydantic import TypeAdapter, ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from apihub.config import (
    build_audit_logger,
    build_catalogue_connector,
    build_idms_connector,
    build_topology,
    default_config,
    get_config_path,
    load_settings,
    Settings,
)
from apihub.credentials import ApplicationsCredentialsService
from apihub.environments import EnvironmentTopology
from apihub.errors import ApiHubError, ReconciliationError
from apihub.models import AccessRequest, Application
from apihub.reconciliation import ScopeReconciler

app = typer.Typer(
    name="apihub",
    help="API gateway onboarding: environments, credentials and scope reconciliation",
)
console = Console()

_state: dict = {"config": None}

_access_requests_adapter = TypeAdapter(list[AccessRequest])


@app.callback()
def main(
    config: Path = typer.Option(None, "--config", "-c", help="Config file (default ~/.config/apihub/config.yaml)"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    _state["config"] = config


def _fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(1)


def _load() -> tuple[Settings, EnvironmentTopology]:
    try:
        settings = load_settings(_state["config"])
        return settings, build_topology(settings)
    except ApiHubError as e:
        _fail(str(e))


def _load_application(path: Path) -> Application:
    try:
        return Application.model_validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        _fail(f"Cannot read application from {path}: {e}")


def _load_access_requests(path: Path | None) -> list[AccessRequest]:
    if path is None:
        return []
    try:
        return _access_requests_adapter.validate_json(path.read_text())
    except (OSError, ValidationError) as e:
        _fail(f"Cannot read access requests from {path}: {e}")


@app.command()
def init():
    """Write a starter configuration."""
    config_path = _state["config"] or get_config_path()
    if config_path.exists():
        if not typer.confirm("Config already exists. Overwrite?"):
            raise typer.Abort()

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.dump(default_config(), default_flow_style=False, sort_keys=False))
    console.print(f"[green]Created config at {config_path}[/green]")
    console.print("\nNext steps:")
    console.print("  1. Edit the environments to match your gateway")
    console.print("  2. Export the ${...} variables the config refers to")
    console.print("  3. Run [bold]apihub validate[/bold]")


@app.command()
def environments():
    """List the configured environments."""
    _, topology = _load()

    table = Table(title="Environments")
    table.add_column("Rank", justify="right")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Production-like")
    table.add_column("Promotes to")
    table.add_column("Base URL", style="dim")

    for environment in topology.environments():
        marker = " [bold](production)[/bold]" if environment.id == topology.production().id else ""
        table.add_row(
            str(environment.rank),
            environment.id + marker,
            environment.name,
            "yes" if environment.is_production_like else "no",
            environment.promote_to or "-",
            environment.base_url,
        )
    console.print(table)


@app.command()
def validate():
    """Check the environment configuration."""
    _, topology = _load()

    console.print(f"[green]Configuration valid[/green]: {len(topology)} environments")
    console.print(f"  production:  {topology.production().id}")
    console.print(f"  deploy_to:   {topology.deploy_to().id}")
    console.print(f"  validate_in: {topology.validate_in().id}")
    for environment in topology.environments():
        chain = [environment.id] + [e.id for e in topology.promotion_chain(environment)]
        console.print(f"  {' -> '.join(chain)}")


@app.command()
def scopes(
    application_file: Path = typer.Argument(..., help="Application JSON"),
):
    """Show the scopes each credential currently holds."""
    settings, topology = _load()
    application = _load_application(application_file)

    async def run():
        idms = build_idms_connector(settings)
        try:
            service = ApplicationsCredentialsService(idms, topology)
            return await service.fetch_all_scopes(application)
        finally:
            await idms.close()

    try:
        records = asyncio.run(run())
    except ApiHubError as e:
        _fail(f"Error: {e}")

    table = Table(title=f"Scopes for {application.name}")
    table.add_column("Environment")
    table.add_column("Client id")
    table.add_column("Created", style="dim")
    table.add_column("Scopes")
    for record in records:
        table.add_row(
            record.environment_id,
            record.client_id,
            record.created.strftime("%Y-%m-%d %H:%M"),
            ", ".join(sorted(record.scopes)) or "-",
        )
    console.print(table)


@app.command()
def reconcile(
    application_file: Path = typer.Argument(..., help="Application JSON"),
    access_requests: Path = typer.Option(None, "--access-requests", "-a", help="Access requests JSON list"),
    client_id: list[str] = typer.Option(None, "--client-id", help="Only reconcile these credentials"),
):
    """Align remote scope grants with the application's APIs."""
    settings, topology = _load()
    application = _load_application(application_file)
    requests = _load_access_requests(access_requests)

    credentials = None
    if client_id:
        credentials = []
        for target in client_id:
            credential = application.find_credential(target)
            if credential is None:
                _fail(f"Application has no credential {target}")
            credentials.append(credential)

    async def run():
        catalogue = build_catalogue_connector(settings)
        idms = build_idms_connector(settings)
        try:
            reconciler = ScopeReconciler(catalogue, idms, topology, audit=build_audit_logger(settings))
            await reconciler.reconcile(application, requests, credentials)
        finally:
            await idms.close()
            await catalogue.close()

    try:
        asyncio.run(run())
    except ReconciliationError as e:
        _fail(str(e))
    except ApiHubError as e:
        _fail(f"Error: {e}")

    console.print(f"[green]Scopes reconciled for {application.name}[/green]")


@app.command()
def audit(
    limit: int = typer.Option(50, help="Maximum entries to show"),
    environment: str = typer.Option(None, help="Filter by environment"),
):
    """View the scope change audit log."""
    settings, _ = _load()
    entries = build_audit_logger(settings).read()
    if not entries:
        console.print("[dim]No audit log found yet.[/dim]")
        return

    if environment:
        entries = [e for e in entries if e.get("environment") == environment]
    entries = entries[-limit:]

    table = Table(title="Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("Environment")
    table.add_column("Client id")
    table.add_column("Scope")
    table.add_column("Result")

    for entry in entries:
        ts = entry.get("ts", "")
        if ts:
            ts = datetime.fromisoformat(ts.rstrip("Z")).strftime("%H:%M:%S")

        result = entry.get("result") or entry.get("error") or "-"
        if result == "ok":
            result = "[green]ok[/green]"
        elif "error" in entry:
            result = f"[red]{result}[/red]"

        table.add_row(
            ts,
            entry.get("event", "-"),
            entry.get("environment", "-"),
            entry.get("client_id", "-"),
            entry.get("scope", "-"),
            result,
        )
    console.print(table)


@app.command()
def version():
    """Show version information."""
    from apihub import __version__
    console.print(f"apihub v{__version__}")


if __name__ == "__main__":
    app()
