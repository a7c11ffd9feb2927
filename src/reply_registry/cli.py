"""
Command line interface for the reply session registry.

Used by shell hooks and for operating the registry by hand.
"""

import json
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .registry.cleaner import RegistryCleaner
from .registry.manager import SessionRegistry
from .registry.storage import Platform, SessionMapping
from .utils.config import load_config
from .utils.errors import RegistryError
from .utils.logging import setup_logging


class RegistryContext:
    """Objects shared by every command of one invocation."""

    def __init__(self, registry: SessionRegistry, sweep_interval: float):
        self.registry = registry
        self.sweep_interval = sweep_interval


def _fail(error: RegistryError) -> click.ClickException:
    return click.ClickException(error.message)


@click.group()
@click.option('--config', 'config_paths', multiple=True,
              type=click.Path(dir_okay=False, path_type=Path),
              help='Extra configuration file (repeatable)')
@click.option('--state-dir', type=click.Path(file_okay=False, path_type=Path),
              help='Directory holding the registry and its lock')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              help='Logging level')
@click.version_option(__version__, prog_name='reply-registry')
@click.pass_context
def cli(ctx: click.Context, config_paths: Tuple[Path, ...], state_dir: Optional[Path], log_level: Optional[str]):
    """Reply session registry - map chat messages to tmux panes."""
    overrides = {}
    if state_dir:
        overrides['registry'] = {'state_dir': str(state_dir)}
    if log_level:
        overrides['logging'] = {'level': log_level.upper()}

    try:
        config = load_config(list(config_paths), overrides)
    except RegistryError as e:
        raise _fail(e)

    setup_logging(
        app_name=config.app_name,
        log_level=config.logging.level,
        log_dir=config.logging.directory,
        enable_json=config.logging.format == 'json',
        enable_sentry=config.logging.enable_sentry,
        sentry_dsn=config.logging.sentry_dsn,
    )

    ctx.obj = RegistryContext(
        SessionRegistry(config.registry),
        config.registry.sweep_interval_seconds,
    )


@cli.command()
@click.option('--platform', required=True, type=click.Choice([p.value for p in Platform]))
@click.option('--message-id', required=True)
@click.option('--session-id', required=True)
@click.option('--pane', 'pane_id', required=True, help='tmux pane id, e.g. %0')
@click.option('--tmux-session', default='', help='tmux session name')
@click.option('--event', default='', help='Event tag, e.g. session-start')
@click.option('--project-path', default=None)
@click.pass_obj
def register(obj: RegistryContext, platform, message_id, session_id, pane_id, tmux_session, event, project_path):
    """Record which pane should receive replies to a message."""
    mapping = SessionMapping.create(
        platform=platform,
        message_id=message_id,
        session_id=session_id,
        tmux_pane_id=pane_id,
        tmux_session_name=tmux_session,
        event=event,
        project_path=project_path,
    )
    try:
        obj.registry.register_message(mapping)
    except RegistryError as e:
        raise _fail(e)


@cli.command(name='list')
@click.option('--json', 'as_json', is_flag=True, help='Print JSON Lines instead of a table')
@click.option('--session', 'session_id', default=None, help='Only this session')
@click.option('--pane', 'pane_id', default=None, help='Only this pane')
@click.pass_obj
def list_mappings(obj: RegistryContext, as_json: bool, session_id: Optional[str], pane_id: Optional[str]):
    """Show registered mappings, oldest first."""
    try:
        mappings = obj.registry.load_all_mappings()
    except RegistryError as e:
        raise _fail(e)

    if session_id:
        mappings = [m for m in mappings if m.session_id == session_id]
    if pane_id:
        mappings = [m for m in mappings if m.tmux_pane_id == pane_id]

    if as_json:
        for mapping in mappings:
            click.echo(json.dumps(mapping.to_dict()))
        return

    table = Table(title=f"Reply registry ({len(mappings)})")
    for column in ("Platform", "Message", "Session", "Pane", "tmux", "Event", "Created"):
        table.add_column(column)
    for m in mappings:
        table.add_row(
            m.platform.value, m.message_id, m.session_id, m.tmux_pane_id,
            m.tmux_session_name, m.event, m.created_at,
        )
    Console(file=sys.stdout).print(table)


@cli.command()
@click.argument('platform', type=click.Choice([p.value for p in Platform]))
@click.argument('message_id')
@click.pass_obj
def lookup(obj: RegistryContext, platform: str, message_id: str):
    """Print the mapping for a platform message id (exit 1 if unknown)."""
    try:
        mapping = obj.registry.lookup_by_message_id(platform, message_id)
    except RegistryError as e:
        raise _fail(e)

    if mapping is None:
        click.echo(f"No mapping for {platform} message {message_id}", err=True)
        sys.exit(1)
    click.echo(json.dumps(mapping.to_dict()))


@cli.command(name='remove-session')
@click.argument('session_id')
@click.pass_obj
def remove_session(obj: RegistryContext, session_id: str):
    """Forget every mapping of a session."""
    try:
        removed = obj.registry.remove_session(session_id)
    except RegistryError as e:
        raise _fail(e)
    click.echo(f"Removed {removed} mapping(s)")


@cli.command(name='remove-pane')
@click.argument('pane_id')
@click.pass_obj
def remove_pane(obj: RegistryContext, pane_id: str):
    """Forget every mapping targeting a pane."""
    try:
        removed = obj.registry.remove_messages_by_pane(pane_id)
    except RegistryError as e:
        raise _fail(e)
    click.echo(f"Removed {removed} mapping(s)")


@cli.command()
@click.pass_obj
def prune(obj: RegistryContext):
    """Drop mappings older than the retention window."""
    try:
        removed = obj.registry.prune_stale()
    except RegistryError as e:
        raise _fail(e)
    click.echo(f"Removed {removed} mapping(s)")


@cli.command()
@click.option('--interval', type=float, default=None, help='Seconds between passes')
@click.option('--once', is_flag=True, help='Run a single pass and exit')
@click.pass_obj
def sweep(obj: RegistryContext, interval: Optional[float], once: bool):
    """Periodically prune stale mappings until interrupted."""
    cleaner = RegistryCleaner(obj.registry)

    if once:
        stats = cleaner.run_once()
        click.echo(json.dumps(stats.to_dict()))
        if not stats.ok:
            sys.exit(1)
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    try:
        cleaner.run_forever(interval or obj.sweep_interval, stop_event=stop)
    except KeyboardInterrupt:
        stop.set()


def main():
    """Entry point for the ``reply-registry`` console script."""
    cli(prog_name='reply-registry')


if __name__ == "__main__":
    main()
