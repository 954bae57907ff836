"""CLI commands for autobuild."""

import asyncio
import signal
import sys
from pathlib import Path

import typer
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from autobuild import __logo__, __version__

app = typer.Typer(
    name="autobuild",
    help=f"{__logo__} autobuild - Continuous builds for Nix flakes",
    no_args_is_help=True,
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} autobuild v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True
    ),
):
    """autobuild - Continuous builds for Nix flakes."""
    pass


def _load(config_path: Path):
    """Load config or exit with status 1; nothing is polled on failure."""
    from autobuild.config.loader import load_config
    from autobuild.errors import ConfigError

    try:
        return load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


# ============================================================================
# Daemon
# ============================================================================


@app.command()
def run(
    config_path: Path = typer.Argument(..., help="Path to the JSON config file"),
    once: bool = typer.Option(False, "--once", help="Run one cycle per repository and exit"),
    log_level: str = typer.Option(None, "--log-level", "-l", help="Override the configured log level"),
):
    """Start the build daemon."""
    from autobuild.daemon.service import AutoBuildDaemon

    config = _load(config_path)
    _configure_logging(log_level or config.log_level)

    console.print(f"{__logo__} Starting autobuild with {len(config.repos)} repositories...")
    console.print(f"[green]✓[/green] Build pool: {config.build_pool_size} worker(s)")
    if config.supported_architectures:
        console.print(f"[green]✓[/green] Platforms: {', '.join(config.supported_architectures)}")
    else:
        console.print("[yellow]Warning: No supported architectures configured[/yellow]")

    daemon = AutoBuildDaemon(config)

    if once:
        reports = asyncio.run(daemon.run_once())
        failed = sum(r.failed_builds for r in reports)
        errors = sum(1 for r in reports if r.sync_error or r.discovery_errors)
        console.print(
            f"Finished {len(reports)} repositories: "
            f"{sum(len(r.results) for r in reports)} builds, {failed} failed, {errors} with errors"
        )
        raise typer.Exit(1 if failed or errors else 0)

    async def serve():
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown_event.set)

        await daemon.start()
        try:
            await shutdown_event.wait()
        finally:
            console.print("Shutting down...")
            await daemon.stop()

    asyncio.run(serve())


# ============================================================================
# Config
# ============================================================================


@app.command()
def init(
    config_path: Path = typer.Argument(..., help="Where to write the example config"),
):
    """Write an example configuration file."""
    from autobuild.config.loader import save_config
    from autobuild.config.schema import Config, RepoConfig

    if config_path.exists():
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config(
        repos=[RepoConfig(url="github.com/org/repo", branches=["main"])],
        supported_architectures=["x86_64-linux"],
    )
    save_config(config, config_path)
    console.print(f"[green]✓[/green] Created config at {config_path}")


@app.command()
def check(
    config_path: Path = typer.Argument(..., help="Path to the JSON config file"),
):
    """Validate a configuration file."""
    config = _load(config_path)

    table = Table(title="Repositories")
    table.add_column("Name", style="cyan")
    table.add_column("URL")
    table.add_column("Branches")
    table.add_column("Depth")
    table.add_column("Every")
    table.add_column("Enabled")

    for repo in config.repos:
        every = repo.schedule or f"{repo.poll_interval_sec}s"
        table.add_row(
            repo.local_name,
            repo.clone_url,
            ", ".join(repo.branches) or "[dim]all[/dim]",
            str(repo.build_depth),
            every,
            "[green]✓[/green]" if repo.enabled else "[dim]no[/dim]",
        )

    console.print(table)
    console.print(f"Checkout dir: {config.checkout_dir}")
    console.print(f"Platforms: {', '.join(config.supported_architectures) or '[yellow]none[/yellow]'}")
    console.print(f"Build pool: {config.build_pool_size} worker(s)")


# ============================================================================
# Status
# ============================================================================


@app.command()
def status(
    config_path: Path = typer.Argument(..., help="Path to the JSON config file"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent builds to show"),
):
    """Show the last status snapshot written by the daemon."""
    from autobuild.reporting.status import load_status

    config = _load(config_path)
    data = load_status(config.status_path)
    if data is None:
        console.print(f"No status available at {config.status_path}")
        raise typer.Exit(1)

    repos = Table(title="Repositories")
    repos.add_column("Name", style="cyan")
    repos.add_column("Commits")
    repos.add_column("Selected")
    repos.add_column("OK", style="green")
    repos.add_column("Failed", style="red")
    repos.add_column("Errors")
    for repo in data.get("repos", []):
        errors = repo.get("syncError") or ", ".join(h[:12] for h in repo.get("discoveryErrors", {}))
        repos.add_row(
            repo["repo"],
            str(len(repo.get("commits", []))),
            str(repo.get("selected", 0)),
            str(repo.get("succeeded", 0)),
            str(repo.get("failed", 0)),
            escape(errors or ""),
        )
    console.print(repos)

    builds = Table(title="Recent builds")
    builds.add_column("Repo", style="cyan")
    builds.add_column("Commit")
    builds.add_column("Attribute")
    builds.add_column("Status")
    builds.add_column("Duration")
    for build in data.get("builds", [])[:limit]:
        ok = build.get("status") == "succeeded"
        builds.add_row(
            build.get("repo", ""),
            (build.get("commit") or "")[:12],
            build.get("attrPath", ""),
            "[green]succeeded[/green]" if ok else "[red]failed[/red]",
            f"{build.get('durationS', 0):.1f}s",
        )
    console.print(builds)


if __name__ == "__main__":
    app()
