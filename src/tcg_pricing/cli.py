"""Click-based CLI for tcg-pricing.

Thin wrapper around the engine. Every command builds the engine from
config, runs one operation, and closes it again.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import timedelta

import click
from rich.console import Console
from rich.table import Table

from tcg_pricing.core.models import Category, utc_now

console = Console(stderr=True)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run_async(coro):
    """Run an async coroutine from synchronous Click code."""
    return asyncio.run(coro)


def _load_config(ctx: click.Context):
    """Load config lazily, caching on first call."""
    if "config" not in ctx.obj:
        from tcg_pricing.core import load_config

        ctx.obj["config"] = load_config(config_path=ctx.obj.get("config_path"))
    return ctx.obj["config"]


async def _open_engine(ctx: click.Context):
    from tcg_pricing.service import create_engine

    return await create_engine(_load_config(ctx), ctx.obj.get("adapters"))


def _parse_params(pairs: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected key=value, got {pair!r}", param_hint="--param")
        params[key] = value
    return params


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )


def _fmt(value: float | None) -> str:
    return "-" if value is None else f"{value:,.2f}"


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    envvar="TCG_PRICING_CONFIG",
    default=None,
    help="Path to tcg-pricing.yml config file.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging.",
)
@click.version_option(package_name="tcg-pricing")
@click.pass_context
def cli(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """TCG Pricing: cached, quota-aware multi-provider price resolution."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose
    ctx.obj["console"] = console
    level = "DEBUG" if verbose else _load_config(ctx).logging.level
    _configure_logging(level)


# ---------------------------------------------------------------------------
# price
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("category", type=click.Choice([c.value for c in Category]))
@click.argument("identity")
@click.option("--param", "-p", "params", multiple=True, help="Extra query parameter key=value.")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    help="Output format.",
)
@click.pass_context
def price(
    ctx: click.Context,
    category: str,
    identity: str,
    params: tuple[str, ...],
    output_format: str,
) -> None:
    """Resolve the price (or metadata) for one item."""
    from tcg_pricing.core import AllProvidersExhaustedError, RequestSpec

    spec = RequestSpec(category=category, item_identity=identity, query_params=_parse_params(params))

    async def _run():
        engine = await _open_engine(ctx)
        try:
            resolution = await engine.resolver.get(spec)
            await engine.resolver.drain()
            return resolution
        finally:
            await engine.close()

    try:
        resolution = _run_async(_run())
    except AllProvidersExhaustedError as exc:
        console.print(f"[red]Price unavailable for {identity}[/red]")
        for attempt in exc.context.get("attempts", []):
            console.print(f"  {attempt['provider']}: {attempt['outcome']}")
        raise SystemExit(2)

    if output_format == "json":
        click.echo(resolution.model_dump_json(indent=2))
        return
    _output_resolution_table(resolution)


def _output_resolution_table(resolution) -> None:
    console.print(
        f"[bold]{resolution.key}[/bold]  state=[cyan]{resolution.cache_state}[/cyan]  "
        f"source=[cyan]{resolution.source_provider}[/cyan]  fetched={resolution.fetched_at:%Y-%m-%d %H:%M}"
    )
    record = resolution.record
    if record is None:
        click.echo(resolution.payload.model_dump_json(indent=2))
        return

    table = Table(title=f"Prices: {record.item_identity}")
    table.add_column("Tier", style="bold")
    table.add_column("Low", justify="right")
    table.add_column("Market", justify="right")
    table.add_column("Mid", justify="right")
    table.add_column("High", justify="right")
    table.add_column("Currency")
    for tier in record.tiers:
        table.add_row(
            tier.tier_label, _fmt(tier.low), _fmt(tier.market), _fmt(tier.mid), _fmt(tier.high), tier.currency
        )
    console.print(table)
    if record.trend:
        trends = ", ".join(
            f"{window}d {change.percent_change:+.2f}%"
            for window, change in sorted(record.trend.items())
            if change.percent_change is not None
        )
        console.print(f"Trend: {trends}")


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def refresh(ctx: click.Context) -> None:
    """Run one refresh-scheduler tick now."""
    async def _run():
        engine = await _open_engine(ctx)
        try:
            return await engine.scheduler.tick()
        finally:
            await engine.close()

    report = _run_async(_run())
    console.print(
        f"[green]Refresh tick:[/green] {report.due} due, {report.attempted} attempted, "
        f"{report.refreshed} refreshed, {report.failed} failed, {report.skipped} skipped"
    )


# ---------------------------------------------------------------------------
# sweep / clear
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--idle-seconds", type=int, default=0, show_default=True, help="Keep expired entries hit this recently.")
@click.pass_context
def sweep(ctx: click.Context, idle_seconds: int) -> None:
    """Delete expired cache entries."""
    async def _run():
        engine = await _open_engine(ctx)
        try:
            return await engine.cache.sweep_expired(utc_now(), timedelta(seconds=idle_seconds))
        finally:
            await engine.close()

    removed = _run_async(_run())
    console.print(f"[green]Swept {removed} expired entries.[/green]")


@cli.command()
@click.option("--category", default=None, help="Only clear this category.")
@click.option("--yes", is_flag=True, default=False, help="Do not prompt for confirmation.")
@click.pass_context
def clear(ctx: click.Context, category: str | None, yes: bool) -> None:
    """Remove cached entries, optionally for one category only."""
    try:
        target = Category(category) if category else None
    except ValueError:
        raise click.BadParameter(f"unknown category: {category}", param_hint="--category")
    if not yes:
        click.confirm(f"Clear {target or 'all'} cache entries?", abort=True)

    async def _run():
        engine = await _open_engine(ctx)
        try:
            return await engine.cache.clear(target)
        finally:
            await engine.close()

    removed = _run_async(_run())
    console.print(f"[green]Removed {removed} entries.[/green]")


# ---------------------------------------------------------------------------
# quota / policies / stats
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_context
def quota(ctx: click.Context) -> None:
    """Show local quota counters per provider and period."""
    async def _run():
        engine = await _open_engine(ctx)
        try:
            return await engine.quota.snapshot()
        finally:
            await engine.close()

    states = _run_async(_run())
    if not states:
        console.print("[yellow]No providers have a configured quota.[/yellow]")
        return
    table = Table(title="Provider Quota")
    table.add_column("Provider", style="bold")
    table.add_column("Period")
    table.add_column("Window start")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    for s in states:
        style = "red" if s.exhausted else None
        table.add_row(
            s.provider, str(s.period), f"{s.window_start:%Y-%m-%d}",
            str(s.used), str(s.limit), str(s.remaining), style=style,
        )
    console.print(table)


@cli.command()
@click.pass_context
def policies(ctx: click.Context) -> None:
    """Show the cache policy table."""
    from tcg_pricing.engine import PolicyRegistry

    registry = PolicyRegistry.from_config(_load_config(ctx).cache)
    table = Table(title="Cache Policies")
    table.add_column("Category", style="bold")
    table.add_column("TTL", justify="right")
    table.add_column("Soft refresh", justify="right")
    table.add_column("Credit cost", justify="right")
    for p in registry.all():
        table.add_row(str(p.category), str(p.ttl), str(p.soft_refresh_interval), f"{p.credit_cost:g}")
    console.print(table)


@cli.command()
@click.option("--json", "as_json", is_flag=True, default=False, help="Emit JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show cache size by category."""
    async def _run():
        engine = await _open_engine(ctx)
        try:
            counts = await engine.cache.count_by_category()
            due = await engine.cache.due_for_refresh(utc_now(), 10_000)
            return counts, len(due), engine.db.path
        finally:
            await engine.close()

    counts, due, path = _run_async(_run())
    if as_json:
        click.echo(json.dumps({"entries": {str(k): v for k, v in counts.items()}, "due_for_refresh": due}))
        return
    table = Table(title="Cache Statistics")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Database path", path)
    table.add_section()
    for category, count in sorted(counts.items()):
        table.add_row(str(category), str(count))
    table.add_row("Total entries", str(sum(counts.values())))
    table.add_row("Due for refresh", str(due))
    console.print(table)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", type=str, default=None, help="Bind address (default from config).")
@click.option("--port", "-p", type=int, default=None, help="Port number (default from config).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the REST API server with background refresh."""
    import uvicorn

    from tcg_pricing.api.app import create_app

    config = _load_config(ctx)
    host = host or config.api.host
    port = port or config.api.port
    console.print(f"Starting tcg-pricing API on [bold]{host}:{port}[/bold]")
    console.print(f"API docs: http://{host}:{port}/docs")

    uvicorn.run(create_app(config), host=host, port=port)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
