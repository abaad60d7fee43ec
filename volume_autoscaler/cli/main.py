"""volume-autoscaler command-line interface.

Commands:
    volume-autoscaler run                          Run the controller in the foreground.
    volume-autoscaler status [--namespace NS]      Show last cycle outcome per policy via REST API.
    volume-autoscaler calculate CURRENT --max-size SIZE
                                                   Compute the next size offline.
    volume-autoscaler version                      Print version and exit.

``status`` calls the REST API at http://localhost:8080 (configurable via
``--api-url``).
"""

from __future__ import annotations

import asyncio
import json

import click
import httpx

from volume_autoscaler import __version__
from volume_autoscaler.controller.sizing import DEFAULT_INCREASE_MINIMUM, calculate_new_size
from volume_autoscaler.errors import InvalidQuantityError
from volume_autoscaler.models.policy import DEFAULT_INCREASE_PERCENT
from volume_autoscaler.models.quantity import format_quantity, parse_quantity

_DEFAULT_API_URL = "http://localhost:8080"

# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _get(api_url: str, path: str) -> dict[str, object]:
    """Perform a GET request and return the parsed JSON body.

    Raises click.ClickException on connection errors or non-2xx responses.
    """
    url = api_url.rstrip("/") + path
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.get(url)
        response.raise_for_status()
        return response.json()  # type: ignore[no-any-return]
    except httpx.ConnectError as err:
        raise click.ClickException(f"Cannot connect to volume-autoscaler API at {api_url}. Is it running?") from err
    except httpx.HTTPStatusError as exc:
        raise click.ClickException(_error_message(exc.response)) from exc


def _error_message(response: httpx.Response) -> str:
    try:
        data: dict[str, object] = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    return f"{data.get('error', 'ERROR')}: {data.get('detail', 'Unknown error')}"


def _parse_size(value: str, option: str) -> int:
    try:
        return parse_quantity(value)
    except InvalidQuantityError as exc:
        raise click.BadParameter(str(exc), param_hint=option) from exc


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--api-url",
    default=_DEFAULT_API_URL,
    envvar="VOLUME_AUTOSCALER_API_URL",
    show_default=True,
    help="volume-autoscaler REST API base URL.",
)
@click.pass_context
def cli(ctx: click.Context, api_url: str) -> None:
    """volume-autoscaler: grow PersistentVolumeClaims before they fill up."""
    ctx.ensure_object(dict)
    ctx.obj["api_url"] = api_url


@cli.command("version")
def cmd_version() -> None:
    """Print the version and exit."""
    click.echo(f"volume-autoscaler {__version__}")


@cli.command("run")
def cmd_run() -> None:
    """Run the controller until SIGTERM or SIGINT."""
    from volume_autoscaler.app import main

    asyncio.run(main())


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


@cli.command("status")
@click.option("--namespace", "-n", default=None, metavar="NS", help="Only show policies in this namespace.")
@click.option("--json", "output_json", is_flag=True, default=False, help="Print raw JSON response.")
@click.pass_context
def cmd_status(ctx: click.Context, namespace: str | None, output_json: bool) -> None:
    """Show the last reconcile outcome of each policy."""
    data = _get(ctx.obj["api_url"], "/api/v1/policies")
    policies: list[dict[str, object]] = data.get("policies", [])  # type: ignore[assignment]
    if namespace:
        policies = [p for p in policies if str(p.get("policy", "")).startswith(f"{namespace}/")]

    if output_json:
        click.echo(json.dumps({"policies": policies}, indent=2))
        return

    if not policies:
        click.echo("No policies reconciled yet.")
        return

    click.echo(click.style("Policies", bold=True))
    for p in policies:
        ready = bool(p.get("ready"))
        state = click.style("Ready" if ready else "NotReady", fg="green" if ready else "red")
        click.echo(
            f"  {p.get('policy', '?')}  {state}  reason={p.get('reason', '')}  "
            f"volumes={p.get('volumes', 0)}  expanded={p.get('expanded', 0)}"
        )
        if p.get("error"):
            click.echo("    " + click.style(f"error: {p['error']}", fg="red"))
        elif not ready and p.get("message"):
            click.echo(f"    {p['message']}")


# ---------------------------------------------------------------------------
# calculate
# ---------------------------------------------------------------------------


@cli.command("calculate")
@click.argument("current")
@click.option("--max-size", required=True, help="Upper bound, e.g. 100Gi.")
@click.option(
    "--increase-percent",
    default=DEFAULT_INCREASE_PERCENT,
    type=click.IntRange(min=1),
    show_default=True,
    help="Growth step as a percentage of current capacity.",
)
@click.option("--increase-minimum", default=None, help="Minimum growth step, e.g. 5Gi. Defaults to 1Gi.")
def cmd_calculate(current: str, max_size: str, increase_percent: int, increase_minimum: str | None) -> None:
    """Print the size a PVC of CURRENT capacity would be expanded to."""
    current_bytes = _parse_size(current, "CURRENT")
    max_bytes = _parse_size(max_size, "--max-size")
    minimum = _parse_size(increase_minimum, "--increase-minimum") if increase_minimum else DEFAULT_INCREASE_MINIMUM

    new_size = calculate_new_size(current_bytes, increase_percent, minimum, max_bytes)
    if new_size <= current_bytes:
        click.echo(f"{format_quantity(current_bytes)} is already at or above max size {format_quantity(max_bytes)}")
        return
    click.echo(f"{format_quantity(current_bytes)} -> {format_quantity(new_size)}")
