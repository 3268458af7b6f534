"""
Typer application for the ``timecapsule`` CLI.

Example::

    timecapsule bury '{"to": "a@b.c"}' --json --in 30
    timecapsule count
    timecapsule dig
    timecapsule watch --interval 0.25
    timecapsule --key mailer:delayed purge --yes
"""

from __future__ import annotations

import json
import time
from typing import Any

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from timecapsule.capsule import Capsule
from timecapsule.digger import Digger
from timecapsule.errors import TimeCapsuleError
from timecapsule.factory import create_digger, create_store
from timecapsule.logging import configure_logging
from timecapsule.settings import StoreBackend, TimeCapsuleSettings, get_settings
from timecapsule.stores import SortedSetStore

console = Console()
err_console = Console(stderr=True)

app = typer.Typer(
    name="timecapsule",
    help="timecapsule: bury payloads now, dig them up when they are due.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        try:
            v = pkg_version("timecapsule")
        except PackageNotFoundError:
            v = "0.1.0"
        typer.echo(f"timecapsule {v}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    redis_url: str | None = typer.Option(None, "--redis-url", help="Override TIMECAPSULE_REDIS_URL"),  # noqa: UP007
    key: str | None = typer.Option(None, "--key", "-k", help="Override TIMECAPSULE_SORTED_SET_KEY"),  # noqa: UP007
    backend: StoreBackend | None = typer.Option(None, "--backend", help="Store adapter"),  # noqa: UP007
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """timecapsule CLI: bury, dig and watch delayed payloads."""
    overrides: dict[str, Any] = {}
    if redis_url is not None:
        overrides["redis_url"] = redis_url
    if key is not None:
        overrides["sorted_set_key"] = key
    if backend is not None:
        overrides["store_backend"] = backend
    ctx.obj = overrides


# ── Helpers ──────────────────────────────────────────────────────────────


def _fail(message: str) -> typer.Exit:
    err_console.print(f"[bold red]Error[/bold red]: {escape(message)}")
    return typer.Exit(code=1)


def _settings(ctx: typer.Context) -> TimeCapsuleSettings:
    try:
        return get_settings(**(ctx.obj or {}))
    except TimeCapsuleError as e:
        raise _fail(e.message) from e


def _open_store(settings: TimeCapsuleSettings) -> SortedSetStore[Any]:
    return create_store(settings)


def _render_payload(payload: Any) -> str:
    if isinstance(payload, str):
        return escape(payload)
    return escape(json.dumps(payload, default=str))


def _capsule_table(capsule: Capsule[Any]) -> Table:
    table = Table(title="Capsule", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("payload", _render_payload(capsule.payload))
    table.add_row("buried_at", str(capsule.buried_at))
    table.add_row("due_at", str(capsule.due_at))
    table.add_row("dug_out_at", str(capsule.dug_out_at))
    return table


# ── Commands ─────────────────────────────────────────────────────────────


@app.command("bury")
def bury(
    ctx: typer.Context,
    payload: str = typer.Argument(..., help="Payload to bury"),
    in_seconds: float | None = typer.Option(None, "--in", help="Seconds from now"),  # noqa: UP007
    at_ms: int | None = typer.Option(None, "--at", help="Due time in epoch milliseconds"),  # noqa: UP007
    as_json: bool = typer.Option(False, "--json", help="Parse PAYLOAD as JSON"),
) -> None:
    """Bury a payload until it is due.

    Example::

        timecapsule bury hello --in 5
        timecapsule bury '{"id": 7}' --json --at 1700000000000
    """
    if (in_seconds is None) == (at_ms is None):
        raise _fail("pass exactly one of --in or --at")

    value: Any = payload
    if as_json:
        try:
            value = json.loads(payload)
        except ValueError as e:
            raise _fail(f"payload is not valid JSON: {e}") from e

    settings = _settings(ctx)
    try:
        store = _open_store(settings)
        if in_seconds is not None:
            capsule = store.bury_for(value, in_seconds)
        else:
            capsule = store.bury_until(value, at_ms)
    except TimeCapsuleError as e:
        raise _fail(e.message) from e

    console.print(
        f"[green]Buried[/green] in [bold]{settings.sorted_set_key}[/bold] "
        f"(due_at={capsule.due_at})"
    )


@app.command("dig")
def dig(ctx: typer.Context) -> None:
    """Dig up the earliest due capsule, print it and destroy it."""
    settings = _settings(ctx)
    try:
        store = _open_store(settings)
        capsule = store.dig()
        if capsule is None:
            console.print("[yellow]Nothing due[/yellow]")
            return
        console.print(_capsule_table(capsule))
        store.destroy(capsule)
    except TimeCapsuleError as e:
        raise _fail(e.message) from e


@app.command("count")
def count(ctx: typer.Context) -> None:
    """Show how many capsules are buried."""
    settings = _settings(ctx)
    try:
        size = _open_store(settings).size()
    except TimeCapsuleError as e:
        raise _fail(e.message) from e
    console.print(f"{size} capsule(s) in [bold]{settings.sorted_set_key}[/bold]")


@app.command("purge")
def purge(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Confirm deletion"),
) -> None:
    """Destroy every capsule under the key."""
    settings = _settings(ctx)
    if not yes:
        raise _fail(f"refusing to purge {settings.sorted_set_key!r} without --yes")
    try:
        _open_store(settings).destroy_all()
    except TimeCapsuleError as e:
        raise _fail(e.message) from e
    console.print(f"[green]Purged[/green] [bold]{settings.sorted_set_key}[/bold]")


@app.command("watch")
def watch(
    ctx: typer.Context,
    interval: float | None = typer.Option(None, "--interval", "-i", help="Seconds between digs"),  # noqa: UP007
    duration: float = typer.Option(0.0, "--for", help="Stop after this many seconds (0 = until Ctrl-C)"),
) -> None:
    """Run a digger, printing each payload as it comes due.

    Example::

        timecapsule watch --interval 0.25
    """
    overrides = dict(ctx.obj or {})
    if interval is not None:
        overrides["dig_interval_seconds"] = interval
    ctx.obj = overrides
    settings = _settings(ctx)

    configure_logging(level=settings.log_level, json_format=settings.json_logs)

    def handler(digger: Digger[Any], capsule: Capsule[Any]) -> None:
        console.print(f"[cyan]{capsule.due_at}[/cyan] {_render_payload(capsule.payload)}")

    try:
        digger = create_digger(settings, store=_open_store(settings), handler=handler)
    except TimeCapsuleError as e:
        raise _fail(e.message) from e

    console.print(
        f"[bold green]Watching[/bold green] {settings.sorted_set_key} "
        f"(interval={settings.dig_interval_seconds}s)"
    )

    digger.start()
    deadline = time.monotonic() + duration if duration > 0 else None
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")
    finally:
        digger.stop()

    stats = digger.stats
    console.print(f"dug={stats.dug} destroyed={stats.destroyed} errors={stats.dig_errors}")


__all__ = ["app"]
