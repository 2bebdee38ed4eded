"""Thin CLI wrapper for sticky_builder.

This module provides the command-line interface using Typer.
All lifecycle logic is delegated to the orchestrator.
"""

import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from sticky_builder import __version__
from sticky_builder.config import Settings, get_settings, print_settings_json
from sticky_builder.errors import BuildFailed, StickyBuilderError
from sticky_builder.orchestrator import (
    Orchestrator,
    load_or_create_session,
    resolve_dockerfile_path,
)
from sticky_builder.session import BuildSession

app = typer.Typer(
    name="sticky-builder",
    help="Remote container builder backed by a persistent sticky disk",
    no_args_is_help=True,
)
console = Console()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sticky-builder version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Sticky Builder - remote container builds on a persistent sticky disk."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Control plane:[/bold]")
    console.print(f"  Repository:          {settings.repo_name or '(unset)'}")
    console.print(f"  Region:              {settings.region}")
    console.print(f"  Agent URL:           {settings.agent_url}")
    console.print(f"  Builder URL:         {settings.builder_url or '(unset)'}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Mount point:         {settings.mount_point}")
    console.print(f"  Default device:      {settings.default_device}")
    console.print(f"  Daemon config:       {settings.daemon_config_path}")
    console.print(f"  Daemon log:          {settings.daemon_log_path}")
    console.print(f"  State file:          {settings.state_file}")
    console.print(f"  Build records:       {settings.build_record_dir}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Daemon port:         {settings.daemon_port}")
    console.print(f"  Registry mirror:     {settings.registry_mirror or '(none)'}")
    console.print(f"  Cache keep (hours):  {settings.cache_keep_hours}")
    console.print(f"  Use sudo:            {settings.use_sudo}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Acquire:             {settings.acquire_timeout}")
    console.print(f"  Daemon start:        {settings.daemon_start_timeout}")
    console.print(f"  Workers ready:       {settings.workers_ready_timeout}")
    console.print(f"  Daemon shutdown:     {settings.daemon_shutdown_timeout}")
    console.print(f"  Request:             {settings.request_timeout}")


def _start(
    settings: Settings,
    file: str | None,
    context: str | None,
    platforms: list[str] | None,
    no_fallback: bool,
    setup_only: bool,
) -> BuildSession:
    session = BuildSession(
        entity_path=resolve_dockerfile_path(context, file),
        no_fallback=no_fallback,
        setup_only=setup_only,
        platforms=platforms or [],
    )
    session.save(settings.state_file)
    return session


@app.command()
def setup(
    file: Annotated[
        str | None,
        typer.Option("--file", "-f", help="Dockerfile the cache is keyed on"),
    ] = None,
    context: Annotated[
        str | None,
        typer.Option("--context", help="Build context directory"),
    ] = None,
    platforms: Annotated[
        list[str] | None,
        typer.Option("--platform", help="Target platform (can be repeated)"),
    ] = None,
    no_fallback: Annotated[
        bool,
        typer.Option("--no-fallback", help="Fail instead of using a local builder"),
    ] = False,
) -> None:
    """Provision the builder only; the daemon keeps running after exit.

    Run `post` at the end of the job to release the sticky disk.
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    session = _start(settings, file, context, platforms, no_fallback, setup_only=True)

    with Orchestrator.from_settings(settings, session) as orchestrator:
        try:
            handle = orchestrator.setup()
        except StickyBuilderError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1) from None

    console.print(f"[green]Builder ready:[/green] {handle.name}")
    if handle.address:
        console.print(f"  Address: {handle.address}")


@app.command()
def build(
    args: Annotated[
        list[str] | None,
        typer.Argument(help="Extra arguments for `docker buildx build` (after --)"),
    ] = None,
    file: Annotated[
        str | None,
        typer.Option("--file", "-f", help="Path to the Dockerfile"),
    ] = None,
    context: Annotated[
        str | None,
        typer.Option("--context", help="Build context (default: .)"),
    ] = None,
    platforms: Annotated[
        list[str] | None,
        typer.Option("--platform", help="Target platform (can be repeated)"),
    ] = None,
    no_fallback: Annotated[
        bool,
        typer.Option("--no-fallback", help="Fail instead of using a local builder"),
    ] = False,
) -> None:
    """Provision the builder, run the build and clean up.

    Example: sticky-builder build --file Dockerfile -- --push -t app:latest
    """
    settings = get_settings()
    configure_logging(settings.log_level)
    session = _start(settings, file, context, platforms, no_fallback, setup_only=False)

    build_args = list(args or [])
    if file:
        build_args += ["--file", file]
    if platforms:
        build_args += ["--platform", ",".join(platforms)]
    build_args.append(context or ".")

    with Orchestrator.from_settings(settings, session) as orchestrator:
        try:
            result = orchestrator.run(build_args)
        except BuildFailed as e:
            console.print(f"[red]Build failed:[/red] {e}")
            raise typer.Exit(code=e.exit_code or 1) from None
        except StickyBuilderError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(code=1) from None

    console.print("[green]Build succeeded[/green]")
    if result.ref:
        console.print(f"  Reference: {result.ref}")


@app.command()
def post() -> None:
    """Exit-time cleanup: stop the daemon, unmount and release the disk."""
    settings = get_settings()
    configure_logging(settings.log_level)
    session = load_or_create_session(settings.state_file)

    with Orchestrator.from_settings(settings, session) as orchestrator:
        outcomes = orchestrator.post()

    for outcome in outcomes:
        if not outcome.ok:
            status = "[red]failed[/red]"
        elif outcome.skipped:
            status = "[dim]skipped[/dim]"
        else:
            status = "[green]done[/green]"
        console.print(f"  {outcome.name}: {status}")


if __name__ == "__main__":
    app()
