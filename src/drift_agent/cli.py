"""
Agent CLI

Command-line interface and process lifecycle for the drift agent.
"""

import asyncio
import contextlib
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click

from .broadcast import BroadcastHandler, LogBroadcaster
from .config import AgentConfig, LoggingConfig, load_config
from .datadir import DataDir
from .discovery import DiscoveryContext, DiscoveryResult, discover_apps, discover_services, discover_sites
from .monitor import Monitor
from .schedule import Schedule
from .store import SnapshotStore
from .transport import winrm_transport_factory

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(config: LoggingConfig) -> None:
    handlers = [logging.StreamHandler()]
    if config.file:
        handlers.append(logging.FileHandler(config.file))
    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )


def _load(config_file: str) -> AgentConfig:
    config_path = Path(config_file)
    if not config_path.exists():
        click.echo(f"Config file not found: {config_path}")
        click.echo("Run 'drift-agent configure' first")
        sys.exit(1)
    config = load_config(config_path)
    setup_logging(config.logging)
    return config


def build_components(config: AgentConfig):
    data_dir = DataDir(config.resolve_data_dir())
    ctx = DiscoveryContext(data_dir=data_dir, transport_factory=winrm_transport_factory(config.winrm))
    store = SnapshotStore(data_dir.root, config.git)
    return ctx, store


@click.group()
def cli():
    """Fleet inventory and configuration drift agent"""
    pass


@cli.command()
@click.option("--data-dir", default=None, help="Snapshot working directory")
@click.option("--git-remote", default=None, help="Remote repository URL for snapshot history")
@click.option("--git-name", default=None, help="Committer name")
@click.option("--git-email", default=None, help="Committer email")
@click.option("--winrm-username", default=None, help="WinRM username for remote hosts")
@click.option("--winrm-password", default=None, help="WinRM password for remote hosts")
@click.option("--config-file", default="agent_config.yaml", help="Config file path")
def configure(
    data_dir: Optional[str],
    git_remote: Optional[str],
    git_name: Optional[str],
    git_email: Optional[str],
    winrm_username: Optional[str],
    winrm_password: Optional[str],
    config_file: str,
):
    """Configure the agent"""
    config = AgentConfig(data_dir=data_dir)
    config.git.remote = git_remote
    config.git.name = git_name
    config.git.email = git_email
    config.winrm.username = winrm_username
    config.winrm.password = winrm_password
    config_path = config.save(config_file)
    click.echo(f"Configuration saved to {config_path}")


@cli.command()
@click.option("--config-file", default="agent_config.yaml", help="Config file path")
def run(config_file: str):
    """Run the agent until interrupted"""
    config = _load(config_file)
    ctx, store = build_components(config)
    monitor = Monitor(ctx, store, Schedule(config.schedule))
    broadcaster = LogBroadcaster(config.broadcast.host, config.broadcast.port) if config.broadcast.enabled else None

    async def main():
        if broadcaster:
            await broadcaster.init()
            await broadcaster.run()
            logging.getLogger().addHandler(BroadcastHandler(broadcaster))

        loop = asyncio.get_running_loop()
        stopping = []

        def request_stop():
            if not stopping:
                stopping.append(asyncio.ensure_future(monitor.stop()))

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, request_stop)

        try:
            await monitor.init()
            await monitor.run()
        finally:
            if stopping:
                await stopping[0]
            if broadcaster:
                await broadcaster.stop()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")


@cli.command()
@click.option("--apps/--no-apps", default=True, help="Discover applications")
@click.option("--sites/--no-sites", default=True, help="Discover websites")
@click.option("--services/--no-services", default=True, help="Discover OS services")
@click.option("--commit/--no-commit", default=True, help="Commit discovered changes")
@click.option("--config-file", default="agent_config.yaml", help="Config file path")
def discover(apps: bool, sites: bool, services: bool, commit: bool, config_file: str):
    """Run one discovery pass"""
    config = _load(config_file)
    ctx, store = build_components(config)

    async def main():
        await asyncio.to_thread(store.ensure_initialized)
        result = DiscoveryResult()
        if services:
            result.merge(await discover_services(ctx))
        if sites:
            result.merge(await discover_sites(ctx))
        if apps:
            result.merge(await discover_apps(ctx))
        commits = await asyncio.to_thread(store.commit_pending_changes) if commit else 0
        return result, commits

    result, commits = asyncio.run(main())
    click.echo(f"Records written: {len(result.records)}")
    click.echo(f"Commits: {commits}")
    for error in result.errors:
        click.echo(f"Error: {error}")


@cli.command()
@click.option("--config-file", default="agent_config.yaml", help="Config file path")
def status(config_file: str):
    """Show pending snapshot changes"""
    config = _load(config_file)
    _, store = build_components(config)
    if not store.is_initialized:
        click.echo(f"Data directory not initialised: {store.data_dir}")
        sys.exit(1)
    changes = store.pending_changes()
    if not changes:
        click.echo("No pending changes.")
        return
    for kind, paths in changes.by_kind().items():
        for path in paths:
            click.echo(f"{kind:10} {path}")


if __name__ == "__main__":
    cli()
