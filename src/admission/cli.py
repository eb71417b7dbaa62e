"""
Admission CLI Tool
Command-line interface for serving the API and inspecting policies.
"""

import json
import sys
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from admission.config import get_settings
from admission.identity import CallerIdentity, Role
from admission.quota import AdmissionController, AdmissionError, load_policies


console = Console()

OUTCOME_STYLES = {
    "allowed": "green",
    "queued": "yellow",
    "rejected": "red",
}


@click.group()
@click.option(
    "--policies",
    "-p",
    "policies_path",
    envvar="POLICIES_PATH",
    type=click.Path(dir_okay=False),
    help="JSON policy file (defaults to built-in policies)",
)
@click.pass_context
def cli(ctx, policies_path: Optional[str]):
    """Workshop API admission control."""
    ctx.ensure_object(dict)
    ctx.obj["policies_path"] = policies_path


def _load_registry(ctx):
    try:
        return load_policies(ctx.obj["policies_path"])
    except AdmissionError as e:
        console.print(f"❌ [red]Invalid policy configuration: {escape(str(e))}[/red]")
        sys.exit(1)


@cli.command()
@click.option("--host", default=None, help="Bind address")
@click.option("--port", default=None, type=int, help="Bind port")
@click.pass_context
def serve(ctx, host: Optional[str], port: Optional[int]):
    """Run the API server."""
    import uvicorn

    from admission.api.app import create_app

    settings = get_settings()
    if ctx.obj["policies_path"]:
        settings = settings.model_copy(update={"policies_path": ctx.obj["policies_path"]})

    app = create_app(settings=settings)
    uvicorn.run(
        app,
        host=host or settings.api_host,
        port=port or settings.api_port,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def policies(ctx, as_json: bool):
    """Show the effective admission policies."""
    registry = _load_registry(ctx)

    if as_json:
        click.echo(json.dumps(registry.describe(), indent=2))
        return

    table = Table(title="Admission Policies")
    table.add_column("Policy", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Permits", justify="right", style="green")
    table.add_column("Window (s)", justify="right")
    table.add_column("Queue", justify="right")
    table.add_column("Order")

    for entry in registry.describe():
        if entry["type"] == "role":
            for role_name, sub in entry["roles"].items():
                table.add_row(
                    entry["name"],
                    role_name,
                    str(sub["permit_limit"]),
                    f"{sub['window_seconds']:g}",
                    str(sub["queue_limit"]),
                    sub["queue_order"],
                )
        else:
            table.add_row(
                entry["name"],
                "-",
                str(entry["permit_limit"]),
                f"{entry['window_seconds']:g}",
                str(entry["queue_limit"]),
                entry["queue_order"],
            )

    console.print(table)


@cli.command()
@click.argument("policy")
@click.option("--ip", default="127.0.0.1", help="Caller IP address")
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role], case_sensitive=False),
    default=None,
    help="Caller role (authenticated caller)",
)
@click.option("--count", "-n", default=10, help="Number of requests to simulate")
@click.pass_context
def simulate(ctx, policy: str, ip: str, role: Optional[str], count: int):
    """Simulate COUNT requests within one window against POLICY."""
    registry = _load_registry(ctx)
    controller = AdmissionController(registry=registry, clock=lambda: 0.0)

    roles = frozenset({Role.parse(role)}) if role else frozenset()
    identity = CallerIdentity(ip=ip, roles=roles, subject="cli" if roles else None)

    table = Table(title=f"Simulation: {policy}")
    table.add_column("#", style="dim", width=4)
    table.add_column("Outcome")
    table.add_column("Partition", style="cyan")
    table.add_column("Remaining", justify="right")
    table.add_column("Retry after", justify="right")

    for i in range(count):
        try:
            decision = controller.evaluate(policy, identity, now=0.0)
        except AdmissionError as e:
            console.print(f"❌ [red]{escape(str(e))}[/red]")
            sys.exit(1)
        style = OUTCOME_STYLES[decision.outcome.value]
        table.add_row(
            str(i + 1),
            f"[{style}]{decision.outcome.value}[/{style}]",
            decision.partition_key,
            str(decision.remaining),
            f"{decision.retry_after:.0f}s" if decision.retry_after is not None else "-",
        )

    console.print(table)


if __name__ == "__main__":
    cli()
