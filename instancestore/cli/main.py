"""Main CLI entry point and application setup."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click
import msgspec
from click.exceptions import Exit
from rich.console import Console
from rich.table import Table

from instancestore import __version__
from instancestore.config import load_config, to_settings
from instancestore.exceptions import InstanceStoreError
from instancestore.lifecycle import CURRENT_VERSION
from instancestore.models import InstanceResult, property_name
from instancestore.store import InstanceStore

T = TypeVar("T")


@dataclass
class Context:
    """CLI context that holds shared resources."""

    store: InstanceStore
    console: Console
    debug: bool = False


def setup_logging(
    verbose: bool = False, quiet: bool = False, debug: bool = False
) -> None:
    """Configure logging based on CLI flags."""
    if quiet:
        level = logging.WARNING
    elif verbose or debug:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s"
        if not debug
        else "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_console(no_color: bool = False, width: int | None = None) -> Console:
    """Create Rich console with appropriate settings."""
    return Console(
        no_color=no_color,
        width=width or 120,
        highlight=not no_color,
        color_system=None if no_color else "auto",
    )


def run(ctx: click.Context, operation: Callable[[InstanceStore], Awaitable[T]]) -> T:
    """Run an async operation against the store, then close it."""
    store = ctx.obj.store

    async def main() -> T:
        async with store:
            return await operation(store)

    return asyncio.run(main())


def parse_value(text: str) -> Any:
    """Read a command-line value as JSON, falling back to a plain string."""
    try:
        return msgspec.json.decode(text)
    except msgspec.DecodeError:
        return text


def parse_where(conditions: tuple[str, ...]) -> dict[str, Any] | None:
    """Turn ``property=value`` arguments into a query mapping."""
    if not conditions:
        return None
    query = {}
    for condition in conditions:
        name, sep, value = condition.partition("=")
        if not sep or not name:
            raise click.BadParameter(
                f"expected property=value, got {condition!r}", param_hint="--where"
            )
        query[name] = parse_value(value)
    return query


def print_results(console: Console, results: list[InstanceResult]) -> None:
    """Render instances as a table."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Key", style="cyan")
    table.add_column("Classes", style="green")
    table.add_column("Instance")
    for result in results:
        table.add_row(
            str(result.key),
            ", ".join(result.classes),
            msgspec.json.encode(result.instance).decode(),
        )
    console.print(table)


class InstanceStoreGroup(click.Group):
    """Custom group that reports store errors cleanly."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except KeyboardInterrupt:
            console = getattr(ctx.obj, "console", None) if ctx.obj else None
            if console:
                console.print("[yellow]Interrupted[/yellow]")
            ctx.exit(130)
        except (click.ClickException, click.Abort, Exit, SystemExit):
            raise
        except InstanceStoreError as e:
            debug = getattr(ctx.obj, "debug", False) if ctx.obj else False
            if debug:
                raise
            console = getattr(ctx.obj, "console", None) if ctx.obj else None
            if console:
                console.print(f"[red]Error:[/red] {e}")
            else:
                click.echo(f"Error: {e}", err=True)
            ctx.exit(1)


@click.group(cls=InstanceStoreGroup)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.option("--debug", is_flag=True, help="Enable debug mode with full tracebacks")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--name", "-n", help="Store name (overrides configuration)")
@click.option("--url", "-u", help="Engine URL, e.g. sqlite:///data/store.db")
@click.version_option(
    version=__version__,
    prog_name="instancestore",
    message="instancestore version %(version)s",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    no_color: bool,
    debug: bool,
    config: Path | None,
    name: str | None,
    url: str | None,
) -> None:
    """Polymorphic instance store.

    Store, fetch and query class-tagged instances from the command line.
    """
    setup_logging(verbose=verbose, quiet=quiet, debug=debug)
    console = create_console(no_color=no_color)

    try:
        config_data = load_config(config)
        if name:
            config_data["name"] = name
        if url:
            config_data["url"] = url
        store = InstanceStore.from_settings(to_settings(config_data))
    except (InstanceStoreError, ValueError) as e:
        if debug:
            raise
        console.print(f"[red]Error initializing store:[/red] {e}")
        ctx.exit(1)

    ctx.obj = Context(store=store, console=console, debug=debug)


@cli.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Show the store configuration and its indexes."""
    console = ctx.obj.console
    store = ctx.obj.store

    record = run(ctx, _load_record)

    console.print(f"[bold]Store:[/bold] {store.name}")
    console.print(f"[bold]URL:[/bold] {store.url}")
    console.print(f"[bold]Version:[/bold] {record.version} (current {CURRENT_VERSION})")

    table = Table(title=f"Indexes of {store.collection.name}", header_style="bold")
    table.add_column("Name", style="cyan")
    table.add_column("Properties")
    table.add_column("Projection")
    for index in store.collection.indexes:
        table.add_row(
            index.name,
            ", ".join(property_name(p) for p in index.properties),
            ", ".join(index.projection) if index.projection else "",
        )
    console.print(table)


async def _load_record(store: InstanceStore):
    await store.initialize()
    return await store.lifecycle.load_record()


@cli.command()
@click.argument("klass", metavar="CLASS")
@click.argument("key")
@click.pass_context
def get(ctx: click.Context, klass: str, key: str) -> None:
    """Show the instance of CLASS stored under KEY."""
    console = ctx.obj.console
    result = run(ctx, lambda store: store.get(klass, key, error_if_missing=False))
    if result is None:
        console.print(f"[yellow]No instance found for key '{key}'[/yellow]")
        ctx.exit(1)
    console.print(f"[bold]Classes:[/bold] {', '.join(result.classes)}")
    console.print_json(msgspec.json.encode(result.instance).decode())


@cli.command()
@click.argument("key")
@click.argument("instance")
@click.option(
    "--class",
    "-C",
    "classes",
    multiple=True,
    required=True,
    help="Class of the instance (repeatable)",
)
@click.option("--create-only", is_flag=True, help="Fail if the key already exists")
@click.pass_context
def put(
    ctx: click.Context, key: str, instance: str, classes: tuple[str, ...], create_only: bool
) -> None:
    """Store INSTANCE (a JSON object) under KEY."""
    console = ctx.obj.console
    value = parse_value(instance)
    if not isinstance(value, dict):
        raise click.BadParameter("instance must be a JSON object", param_hint="INSTANCE")

    run(
        ctx,
        lambda store: store.put(list(classes), key, value, error_if_exists=create_only),
    )
    console.print(f"[green]✓[/green] Stored '{key}' as {', '.join(classes)}")


@cli.command()
@click.argument("klass", metavar="CLASS")
@click.argument("key")
@click.option("--missing-ok", is_flag=True, help="Do not fail if the key is missing")
@click.pass_context
def delete(ctx: click.Context, klass: str, key: str, missing_ok: bool) -> None:
    """Delete the instance of CLASS stored under KEY."""
    console = ctx.obj.console
    deleted = run(
        ctx, lambda store: store.delete(klass, key, error_if_missing=not missing_ok)
    )
    if deleted:
        console.print(f"[green]✓[/green] Deleted '{key}'")
    else:
        console.print(f"[yellow]Nothing to delete for '{key}'[/yellow]")


@cli.command()
@click.argument("klass", metavar="CLASS")
@click.option("--where", "-w", multiple=True, help="Condition as property=value")
@click.option("--order", "-o", multiple=True, help="Property to order by (repeatable)")
@click.option("--limit", "-l", type=int, help="Maximum number of results")
@click.option("--reverse", "-r", is_flag=True, help="Reverse the order")
@click.option("--json", "as_json", is_flag=True, help="Print results as JSON")
@click.pass_context
def find(
    ctx: click.Context,
    klass: str,
    where: tuple[str, ...],
    order: tuple[str, ...],
    limit: int | None,
    reverse: bool,
    as_json: bool,
) -> None:
    """Find instances of CLASS."""
    console = ctx.obj.console
    query = parse_where(where)
    results = run(
        ctx,
        lambda store: store.find(
            klass, query=query, order=list(order) or None, limit=limit, reverse=reverse
        ),
    )
    if as_json:
        console.print_json(msgspec.json.encode(results).decode())
    elif not results:
        console.print(f"[yellow]No instances of {klass} found[/yellow]")
    else:
        print_results(console, results)


@cli.command()
@click.argument("klass", metavar="CLASS")
@click.option("--where", "-w", multiple=True, help="Condition as property=value")
@click.pass_context
def count(ctx: click.Context, klass: str, where: tuple[str, ...]) -> None:
    """Count instances of CLASS."""
    query = parse_where(where)
    total = run(ctx, lambda store: store.count(klass, query=query))
    ctx.obj.console.print(str(total))


@cli.command()
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy(ctx: click.Context, yes: bool) -> None:
    """Remove every instance and the store record."""
    console = ctx.obj.console
    if not yes and not click.confirm(f"Destroy store '{ctx.obj.store.name}'?"):
        console.print("[yellow]Aborted[/yellow]")
        return
    run(ctx, lambda store: store.destroy_all())
    console.print(f"[green]✓[/green] Destroyed store '{ctx.obj.store.name}'")
